"""OSC intake for gameplay telemetry.

The game (or a plugin/overlay reading its memory) pushes one OSC message per
value change.  Handlers clamp whatever arrives and hand it to the
:class:`~software.toy_bridge.binding.BindingEngine`; they run on the OSC
server's threads and never wait on the Intiface link.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, Mapping, Optional

from pythonosc import dispatcher
from pythonosc.osc_server import ThreadingOSCUDPServer

from .audit import AuditLogger
from .binding import BindingEngine, clamp

DEFAULT_OSC_PORT = 9000


class TelemetryServer:
    """Map ``osc.address_space`` paths onto engine callbacks.

    ``subscribe()`` / ``unsubscribe()`` wire and unwire the handlers so a
    session that ends doesn't leave stale bindings behind; ``start()`` /
    ``stop()`` own the UDP server thread.
    """

    def __init__(
        self,
        engine: BindingEngine,
        address_space: Mapping[str, str],
        *,
        host: str = "0.0.0.0",
        port: int = DEFAULT_OSC_PORT,
        audit: Optional[AuditLogger] = None,
    ):
        self.engine = engine
        self.addresses = dict(address_space)
        self.host = host
        self.port = port
        self.audit = audit or AuditLogger()
        self.dispatcher = dispatcher.Dispatcher()
        self._subscribed: Dict[str, Callable] = {}
        self._server: Optional[ThreadingOSCUDPServer] = None
        self._thread: Optional[threading.Thread] = None

    # -------------------------------------------------------------- handlers

    def on_health(self, addr, *vals):
        """Health drains toward 0 as the player misses."""

        if vals:
            self.engine.on_health(float(clamp(vals[0], 0.0, 1.0)))

    def on_combo(self, addr, *vals):
        if vals:
            self.engine.on_combo(max(0, int(vals[0])))

    def on_accuracy(self, addr, *vals):
        if vals:
            self.engine.on_accuracy(float(clamp(vals[0], 0.0, 1.0)))

    def on_hit(self, addr, *vals):
        """Judgement weight of the latest hit: 300 -> 1.0, miss -> 0.0."""

        if vals:
            self.engine.on_hit(float(clamp(vals[0], 0.0, 1.0)))

    def on_playing(self, addr, *vals):
        """Play/pause toggle.

        Anything but ``1`` counts as not playing.  Track completion and
        failure arrive here as ``0`` too, which is what stops the toys.
        """

        if not vals:
            return
        prev = self.engine.is_playing
        playing = int(vals[0]) == 1
        stopped = self.engine.on_play_state_changed(playing)
        if playing != prev:
            self.audit.write(
                "play_state",
                status="playing" if playing else "stopped",
                details={"osc_addr": addr, "stop_all": stopped},
            )

    def on_beatmap_loaded(self, addr, *vals):
        if not vals:
            return
        self.engine.set_max_combo(int(vals[0]))
        self.audit.write(
            "beatmap_loaded",
            status="info",
            details={"max_combo": self.engine.max_combo, "osc_addr": addr},
        )

    def handlers(self) -> Dict[str, Callable]:
        return {
            "health": self.on_health,
            "combo": self.on_combo,
            "accuracy": self.on_accuracy,
            "hit": self.on_hit,
            "playing": self.on_playing,
            "beatmap_loaded": self.on_beatmap_loaded,
        }

    # --------------------------------------------------------- subscriptions

    def subscribe(self) -> None:
        if self._subscribed:
            return
        for name, handler in self.handlers().items():
            path = self.addresses.get(name)
            if not path:
                continue
            self.dispatcher.map(path, handler)
            self._subscribed[path] = handler

    def unsubscribe(self) -> None:
        for path, handler in self._subscribed.items():
            self.dispatcher.unmap(path, handler)
        self._subscribed = {}

    # ---------------------------------------------------------------- server

    def start(self) -> None:
        self.subscribe()
        self._server = ThreadingOSCUDPServer((self.host, self.port), self.dispatcher)
        self._server.daemon_threads = True
        # Port 0 binds an ephemeral port so tests don't clash with a live rig.
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="toy-bridge-osc",
            daemon=True,
        )
        self._thread.start()
        self.audit.write(
            "osc_listen",
            status="info",
            message=f"Telemetry OSC listening on {self.host}:{self.port}",
        )

    @property
    def listening_port(self) -> int:
        return self.port

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=1)
            self._thread = None
        self.unsubscribe()
