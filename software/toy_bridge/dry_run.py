"""In-process stand-in for an Intiface server.

``DryRunTransport`` speaks just enough Buttplug v2 to let the bridge go
through its whole lifecycle without a real server or real toys: handshake,
device list, scanning, vibrate, stop-all, ping.  Every client message is kept
in ``sent`` so tests and ``scripts/check_stack.py`` can inspect what the bridge
would have put on the wire.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from . import protocol
from .errors import ConnectorError, DeviceError, HandshakeError, MessageError

_CLOSED = object()


@dataclass(frozen=True)
class VirtualDevice:
    index: int
    name: str
    motors: int = 1
    # Listed devices are already known when the client asks for the device
    # list; the others only show up once scanning starts.
    listed: bool = False

    def as_fields(self) -> Dict:
        return {
            "DeviceIndex": self.index,
            "DeviceName": self.name,
            "DeviceMessages": {protocol.VIBRATE_CMD: {"FeatureCount": self.motors}},
        }


class DryRunTransport:
    def __init__(
        self,
        devices: Optional[Iterable[VirtualDevice]] = None,
        *,
        server_name: str = "Dry Run Intiface",
        max_ping_time: int = 0,
        fail_devices: Iterable[int] = (),
        reject_handshake: bool = False,
        quiet: bool = False,
    ):
        if devices is None:
            devices = [VirtualDevice(0, "Dry Run Vibrator", motors=4)]
        self.devices: List[VirtualDevice] = list(devices)
        self.server_name = server_name
        self.max_ping_time = max_ping_time
        self.fail_devices = set(fail_devices)
        self.reject_handshake = reject_handshake
        self.quiet = quiet

        self.address: Optional[str] = None
        self.open_count = 0
        self.closed = True
        self.sent: List[protocol.Message] = []
        self.speeds: Dict[Tuple[int, int], float] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._inbox: Optional[asyncio.Queue] = None
        self._last_report = time.time()

    # ConnectionManager calls this as its ``open_transport`` hook.
    async def open(self, address: str) -> "DryRunTransport":
        self.address = address
        self.open_count += 1
        self.closed = False
        self._loop = asyncio.get_running_loop()
        self._inbox = asyncio.Queue()
        return self

    async def send(self, raw: str) -> None:
        if self.closed:
            raise ConnectorError("dry-run link is closed")
        for message in protocol.decode(raw):
            with self._lock:
                self.sent.append(message)
            self._answer(message)
        self._report()

    async def recv(self) -> str:
        if self.closed or self._inbox is None:
            raise ConnectorError("dry-run link is closed")
        item = await self._inbox.get()
        if item is _CLOSED:
            self.closed = True
            raise ConnectorError("dry-run link dropped")
        return item

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._inbox is not None:
            self._inbox.put_nowait(_CLOSED)
        if not self.quiet:
            print(f"[dry-run] link closed after {len(self.sent)} client messages")

    # ------------------------------------------------------------ inspection

    def commands(self, kind: Optional[str] = None) -> List[protocol.Message]:
        with self._lock:
            sent = list(self.sent)
        if kind is None:
            return sent
        return [message for message in sent if message.kind == kind]

    def vibrations(self) -> List[Tuple[int, int, float]]:
        """Flatten every ``VibrateCmd`` into ``(device, motor, speed)`` rows."""

        rows = []
        for message in self.commands(protocol.VIBRATE_CMD):
            for entry in message.fields.get("Speeds", []):
                rows.append((message.fields["DeviceIndex"], entry["Index"], entry["Speed"]))
        return rows

    # ------------------------------------------------------ server-side events

    def add_device(self, device: VirtualDevice) -> None:
        """Announce a new device as if it was just switched on."""

        self.devices.append(device)
        self._push_threadsafe(protocol.encode(protocol.DEVICE_ADDED, 0, **device.as_fields()))

    def remove_device(self, index: int) -> None:
        self.devices = [d for d in self.devices if d.index != index]
        self._push_threadsafe(protocol.encode(protocol.DEVICE_REMOVED, 0, DeviceIndex=index))

    def finish_scanning(self) -> None:
        self._push_threadsafe(protocol.encode(protocol.SCANNING_FINISHED, 0))

    def drop_link(self) -> None:
        """Simulate the server going away mid-session."""

        self._push_threadsafe(_CLOSED)

    # --------------------------------------------------------------- plumbing

    def _push(self, item) -> None:
        if self._inbox is not None:
            self._inbox.put_nowait(item)

    def _push_threadsafe(self, item) -> None:
        if self._loop is None:
            raise ConnectorError("dry-run link was never opened")
        self._loop.call_soon_threadsafe(self._push, item)

    def _reply(self, kind: str, msg_id: int, **fields) -> None:
        self._push(protocol.encode(kind, msg_id, **fields))

    def _error(self, msg_id: int, error) -> None:
        self._reply(
            protocol.ERROR,
            msg_id,
            ErrorMessage=str(error),
            ErrorCode=error.code,
        )

    def _answer(self, message: protocol.Message) -> None:
        kind, msg_id, fields = message.kind, message.id, message.fields
        if kind == protocol.REQUEST_SERVER_INFO:
            if self.reject_handshake:
                self._error(msg_id, HandshakeError("client rejected"))
                return
            self._reply(
                protocol.SERVER_INFO,
                msg_id,
                ServerName=self.server_name,
                MessageVersion=protocol.MESSAGE_VERSION,
                MaxPingTime=self.max_ping_time,
            )
        elif kind == protocol.REQUEST_DEVICE_LIST:
            listed = [d.as_fields() for d in self.devices if d.listed]
            self._reply(protocol.DEVICE_LIST, msg_id, Devices=listed)
        elif kind == protocol.START_SCANNING:
            self._reply(protocol.OK, msg_id)
            for device in self.devices:
                if not device.listed:
                    self._push(protocol.encode(protocol.DEVICE_ADDED, 0, **device.as_fields()))
        elif kind in (protocol.STOP_SCANNING, protocol.PING):
            self._reply(protocol.OK, msg_id)
        elif kind == protocol.VIBRATE_CMD:
            index = fields.get("DeviceIndex")
            if index in self.fail_devices:
                self._error(msg_id, DeviceError(f"device {index} stopped responding"))
                return
            for entry in fields.get("Speeds", []):
                self.speeds[(index, entry["Index"])] = entry["Speed"]
            self._reply(protocol.OK, msg_id)
        elif kind == protocol.STOP_ALL_DEVICES:
            for key in self.speeds:
                self.speeds[key] = 0.0
            self._reply(protocol.OK, msg_id)
        else:
            self._error(msg_id, MessageError(f"unsupported message {kind}"))

    def _report(self) -> None:
        if self.quiet:
            return
        now = time.time()
        if now - self._last_report < 1.0:
            return
        snapshot = json.dumps({f"{d}:{m}": round(s, 3) for (d, m), s in sorted(self.speeds.items())})
        print(f"[dry-run] speeds={snapshot} (messages so far={len(self.sent)})")
        self._last_report = now
