"""One bridge run: link, devices, dispatcher, engine, and OSC intake.

Build a :class:`BridgeSession` once at startup and use it as a context
manager; leaving the ``with`` block always stops the toys and closes the
link, even when the block raised.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from .audit import AuditLogger
from .binding import BindingEngine
from .config_validation import settings_from_config
from .connection import (
    DEFAULT_ADDRESS,
    DEFAULT_CLIENT_NAME,
    DEFAULT_SCAN_TIMEOUT,
    ConnectionManager,
)
from .devices import DeviceRegistry
from .dispatcher import CommandDispatcher
from .telemetry_osc import DEFAULT_OSC_PORT, TelemetryServer


class BridgeSession:
    def __init__(
        self,
        cfg: Mapping[str, Any],
        *,
        audit: Optional[AuditLogger] = None,
        open_transport=None,
        osc_host: str = "0.0.0.0",
        osc_port: Optional[int] = None,
    ):
        self.cfg = cfg
        self.audit = audit or AuditLogger()
        intiface = cfg.get("intiface") or {}
        osc_cfg = cfg.get("osc") or {}

        self.registry = DeviceRegistry()
        self.connection = ConnectionManager(
            self.registry,
            address=intiface.get("address", DEFAULT_ADDRESS),
            client_name=intiface.get("client_name", DEFAULT_CLIENT_NAME),
            scan_timeout=float(intiface.get("scan_timeout", DEFAULT_SCAN_TIMEOUT)),
            audit=self.audit,
            open_transport=open_transport,
        )
        self.dispatcher = CommandDispatcher(self.registry, self.connection, self.audit)
        self.engine = BindingEngine(self.dispatcher, settings_from_config(cfg))
        self.telemetry = TelemetryServer(
            self.engine,
            osc_cfg.get("address_space") or {},
            host=osc_host,
            port=osc_cfg.get("port", DEFAULT_OSC_PORT) if osc_port is None else osc_port,
            audit=self.audit,
        )
        self._started = False

    def start(self, *, listen: bool = True):
        """Connect (non-blocking) and start taking telemetry.

        Returns the connect future, or ``None`` if a link already existed.
        With ``listen=False`` the OSC handlers are wired but no UDP socket is
        opened, which is handy when the caller feeds the engine directly.
        """

        # close() must also tear down a half-finished start, e.g. a failed OSC bind.
        self._started = True
        self.connection.start()
        future = self.connection.ensure_connected()
        if listen:
            self.telemetry.start()
        else:
            self.telemetry.subscribe()
        self.audit.write(
            "session_start",
            status="info",
            details={
                "address": self.connection.address,
                "osc_port": self.telemetry.listening_port if listen else None,
                "bindings": [
                    {"motor": b.motor_index, "behavior": b.behavior.value, "invert": b.invert}
                    for b in self.engine.settings.bindings
                ],
            },
        )
        return future

    def reload(self, cfg: Mapping[str, Any]):
        """Apply a new, already validated config and retry the link if down."""

        self.cfg = cfg
        self.engine.configure(settings_from_config(cfg))
        intiface = cfg.get("intiface") or {}
        self.connection.client_name = intiface.get("client_name", DEFAULT_CLIENT_NAME)
        self.connection.scan_timeout = float(intiface.get("scan_timeout", DEFAULT_SCAN_TIMEOUT))
        self.connection.set_address(intiface.get("address", DEFAULT_ADDRESS))
        self.audit.write("session_reload", status="info", details={"address": self.connection.address})
        return self.connection.ensure_connected()

    def close(self) -> None:
        """Stop the toys, drop the link, stop listening.  Never raises."""

        if not self._started:
            return
        self._started = False
        try:
            self.telemetry.stop()
        except Exception as exc:  # noqa: BLE001
            self.audit.write(
                "session_end",
                status="error",
                message=f"Stopping OSC intake failed: {exc}",
            )
        self.connection.close()
        self.audit.write("session_end", status="closed")

    def __enter__(self) -> "BridgeSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
