"""Single persistent link to an Intiface / Buttplug control server.

The manager owns a private asyncio loop running on one background thread.
Telemetry handlers never touch the socket: they hand coroutines to
:meth:`ConnectionManager.submit` and get a ``concurrent.futures.Future`` back,
so a slow or dead server can't stall gameplay.

State machine::

    DISCONNECTED --connect--> CONNECTING --handshake--> CONNECTED
    CONNECTED --start scanning--> SCANNING_FOR_DEVICES
    SCANNING_FOR_DEVICES --first device / timeout / ScanningFinished--> CONNECTED
    any --disconnect / link loss--> DISCONNECTED

There is no background reconnect loop.  ``ensure_connected()`` is the only
retry path and it is a no-op unless the link is fully down.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import enum
import itertools
import threading
from functools import partial
from typing import Dict, Mapping, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import WebSocketException

from . import protocol
from .audit import AuditLogger
from .devices import Device, DeviceRegistry
from .errors import (
    BridgeError,
    CommandSendError,
    ConnectorError,
    PingError,
    ProtocolError,
    ServerError,
)

DEFAULT_ADDRESS = "ws://127.0.0.1:12345"
DEFAULT_CLIENT_NAME = "OsuClient"
DEFAULT_SCAN_TIMEOUT = 10.0
DEFAULT_OPEN_TIMEOUT = 5.0
DEFAULT_TEARDOWN_TIMEOUT = 2.0

LINK_ERRORS = (OSError, WebSocketException, ConnectorError)


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SCANNING_FOR_DEVICES = "scanning"


async def open_websocket(address: str, open_timeout: float = DEFAULT_OPEN_TIMEOUT):
    """Default transport: a websockets client connection."""

    return await ws_connect(address, open_timeout=open_timeout)


class ConnectionManager:
    def __init__(
        self,
        registry: DeviceRegistry,
        *,
        address: str = DEFAULT_ADDRESS,
        client_name: str = DEFAULT_CLIENT_NAME,
        scan_timeout: float = DEFAULT_SCAN_TIMEOUT,
        teardown_timeout: float = DEFAULT_TEARDOWN_TIMEOUT,
        audit: Optional[AuditLogger] = None,
        open_transport=None,
    ):
        self.registry = registry
        self.address = address
        self.client_name = client_name
        self.scan_timeout = scan_timeout
        self.teardown_timeout = teardown_timeout
        self.audit = audit or AuditLogger()
        self._open_transport = open_transport or open_websocket

        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._attempt = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

        # Everything below is only touched from the loop thread.
        self._transport = None
        self._reader_task: Optional[asyncio.Task] = None
        self._ping_task: Optional[asyncio.Task] = None
        self._scan_handle: Optional[asyncio.TimerHandle] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self.server_name: Optional[str] = None
        self.max_ping_time = 0

    # ------------------------------------------------------------------ state

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state in (
            ConnectionState.CONNECTED,
            ConnectionState.SCANNING_FOR_DEVICES,
        )

    def _set_state(self, new_state: ConnectionState) -> ConnectionState:
        with self._state_lock:
            old_state, self._state = self._state, new_state
        return old_state

    # ------------------------------------------------------------------- loop

    def start(self) -> None:
        """Spin up the background loop thread if it isn't running yet."""

        if self._thread is not None:
            return
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="toy-bridge-link",
            daemon=True,
        )
        self._thread.start()

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def submit(self, coro) -> concurrent.futures.Future:
        """Schedule ``coro`` on the link loop without waiting for it.

        When the loop is gone the returned future already carries a
        :class:`ConnectorError`; callers handle both cases the same way.
        """

        loop = self._loop
        if loop is None or loop.is_closed():
            coro.close()
            future: concurrent.futures.Future = concurrent.futures.Future()
            future.set_exception(ConnectorError("bridge link loop is not running"))
            return future
        return asyncio.run_coroutine_threadsafe(coro, loop)

    def close(self, timeout: Optional[float] = None) -> None:
        """Disconnect best-effort, then stop the loop thread.  Never raises."""

        loop, thread = self._loop, self._thread
        if loop is None or thread is None:
            return
        timeout = self.teardown_timeout if timeout is None else timeout
        try:
            self.disconnect().result(timeout)
        except Exception as exc:  # noqa: BLE001
            self.audit.write(
                "intiface_shutdown",
                status="error",
                message=f"Disconnect during shutdown failed: {exc}",
            )
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout)
        if not thread.is_alive():
            loop.close()
        self._loop = None
        self._thread = None

    # ------------------------------------------------------------- connecting

    def set_address(self, address: str) -> None:
        """Point future connects at ``address``; never reconnects by itself."""

        if address == self.address:
            return
        self.address = address
        if self._state is not ConnectionState.DISCONNECTED:
            self.audit.write(
                "intiface_address",
                status="pending",
                message="Address changed; disconnect and reconnect to apply it.",
                details={"address": address},
            )

    def connect(self, address: Optional[str] = None) -> Optional[concurrent.futures.Future]:
        """Start connecting unless a link already exists or is being made.

        Returns ``None`` when ignored, otherwise a future that raises
        :class:`ConnectorError` if the transport or handshake fails.
        """

        with self._state_lock:
            if self._state is not ConnectionState.DISCONNECTED:
                return None
            self._state = ConnectionState.CONNECTING
            self._attempt += 1
            attempt = self._attempt
        if address is not None:
            self.address = address
        self.start()
        future = self.submit(self._connect(self.address))
        future.add_done_callback(partial(self._log_connect_result, attempt=attempt))
        return future

    def ensure_connected(self) -> Optional[concurrent.futures.Future]:
        if self._state is not ConnectionState.DISCONNECTED:
            return None
        return self.connect()

    def _log_connect_result(self, future: concurrent.futures.Future, *, attempt: int) -> None:
        if future.cancelled():
            exc: Optional[BaseException] = ConnectorError("connect attempt cancelled")
        else:
            exc = future.exception()
        if exc is None:
            return
        with self._state_lock:
            # A newer attempt may already be underway; leave its state alone.
            if self._attempt == attempt and self._state is ConnectionState.CONNECTING:
                self._state = ConnectionState.DISCONNECTED
        self.audit.write(
            "intiface_connect",
            status="error",
            message=f"Failed to connect: {exc}",
            details={"address": self.address, "error": type(exc).__name__},
        )

    async def _connect(self, address: str) -> None:
        self.audit.write(
            "intiface_connect",
            status="connecting",
            details={"address": address, "client_name": self.client_name},
        )
        try:
            try:
                transport = await self._open_transport(address)
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                raise ConnectorError(f"could not reach {address}: {exc}") from exc
            self._transport = transport
            self._reader_task = asyncio.ensure_future(self._read_loop(transport))
            reply = await self._request(
                partial(protocol.request_server_info, client_name=self.client_name)
            )
            if reply.kind != protocol.SERVER_INFO:
                raise ConnectorError(f"expected ServerInfo, got {reply.kind}")
        except BaseException as exc:
            await self._teardown_link()
            if isinstance(exc, BridgeError) and not isinstance(exc, ConnectorError):
                raise ConnectorError(f"handshake with {address} failed: {exc}") from exc
            raise

        self.server_name = reply.fields.get("ServerName")
        self.max_ping_time = int(reply.fields.get("MaxPingTime") or 0)
        self._set_state(ConnectionState.CONNECTED)
        self.audit.write(
            "intiface_connect",
            status="connected",
            message=f"Connected to {self.server_name or address}",
            details={"address": address, "max_ping_time": self.max_ping_time},
        )

        await self._load_device_list()
        self._check_link(transport, address)
        if self.max_ping_time > 0:
            self._ping_task = asyncio.ensure_future(
                self._ping_loop(self.max_ping_time / 2000.0)
            )
        await self._start_scanning()
        self._check_link(transport, address)

    def _check_link(self, transport, address: str) -> None:
        # Link loss while setting up has already torn everything down.
        if self._transport is not transport:
            raise ConnectorError(f"link to {address} dropped during setup")

    async def _load_device_list(self) -> None:
        try:
            reply = await self._request(protocol.request_device_list)
        except (ServerError, ConnectorError) as exc:
            self.audit.write(
                "intiface_devices",
                status="error",
                message=f"RequestDeviceList failed: {exc}",
            )
            return
        devices = reply.fields.get("Devices") or []
        if not isinstance(devices, list):
            self.audit.write(
                "intiface_protocol",
                status="error",
                message="DeviceList.Devices must be a list",
            )
            return
        for entry in devices:
            self._register_device(entry if isinstance(entry, dict) else {})

    # --------------------------------------------------------------- scanning

    async def _start_scanning(self) -> None:
        with self._state_lock:
            if self._transport is None or self._state is not ConnectionState.CONNECTED:
                return
            self._state = ConnectionState.SCANNING_FOR_DEVICES
        self.audit.write("intiface_scan", status="started")
        try:
            await self._request(protocol.start_scanning)
        except (ServerError, ConnectorError) as exc:
            self._end_scan("start failed")
            self.audit.write(
                "intiface_scan",
                status="error",
                message=f"StartScanning failed: {exc}",
            )
            return
        if self._state is ConnectionState.SCANNING_FOR_DEVICES:
            self._scan_handle = asyncio.get_running_loop().call_later(
                self.scan_timeout, self._on_scan_timeout
            )

    def _on_scan_timeout(self) -> None:
        self._scan_handle = None
        if self._state is ConnectionState.SCANNING_FOR_DEVICES:
            asyncio.ensure_future(self._stop_scanning("timeout"))

    def _end_scan(self, reason: str) -> bool:
        with self._state_lock:
            if self._state is not ConnectionState.SCANNING_FOR_DEVICES:
                return False
            self._state = ConnectionState.CONNECTED
        if self._scan_handle is not None:
            self._scan_handle.cancel()
            self._scan_handle = None
        self.audit.write("intiface_scan", status="stopped", details={"reason": reason})
        return True

    async def _stop_scanning(self, reason: str) -> None:
        if not self._end_scan(reason):
            return
        try:
            await self._request(protocol.stop_scanning)
        except (ServerError, ConnectorError) as exc:
            self.audit.write(
                "intiface_scan",
                status="error",
                message=f"StopScanning failed: {exc}",
            )

    # ----------------------------------------------------------------- wiring

    async def _request(self, build) -> protocol.Message:
        """Send one message and wait for the reply carrying the same Id."""

        transport = self._transport
        if transport is None:
            raise ConnectorError("not connected to a control server")
        msg_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        try:
            await transport.send(build(msg_id))
        except LINK_ERRORS as exc:
            self._pending.pop(msg_id, None)
            raise ConnectorError(f"send failed: {exc}") from exc
        return await future

    async def _read_loop(self, transport) -> None:
        try:
            while True:
                raw = await transport.recv()
                try:
                    messages = protocol.decode(raw)
                except ProtocolError as exc:
                    self.audit.write(
                        "intiface_protocol",
                        status="error",
                        message=str(exc),
                    )
                    continue
                for message in messages:
                    self._handle_message(message)
        except LINK_ERRORS as exc:
            if transport is self._transport:
                await self._on_link_lost(exc)

    def _handle_message(self, message: protocol.Message) -> None:
        if not message.is_event:
            future = self._pending.pop(message.id, None)
            if future is None or future.done():
                self.audit.write(
                    "intiface_protocol",
                    status="warning",
                    message=f"Reply {message.kind} for unknown Id {message.id}",
                )
                return
            if message.kind == protocol.ERROR:
                future.set_exception(
                    ServerError.from_error(
                        message.fields.get("ErrorCode"),
                        str(message.fields.get("ErrorMessage", "")),
                    )
                )
            else:
                future.set_result(message)
            return

        if message.kind == protocol.DEVICE_ADDED:
            device = self._register_device(message.fields)
            if device is not None and self._state is ConnectionState.SCANNING_FOR_DEVICES:
                asyncio.ensure_future(self._stop_scanning("device found"))
        elif message.kind == protocol.DEVICE_REMOVED:
            removed = self.registry.remove(message.fields.get("DeviceIndex"))
            if removed is not None:
                self.audit.write(
                    "device_removed",
                    status="info",
                    details={"index": removed.index, "name": removed.name},
                )
        elif message.kind == protocol.SCANNING_FINISHED:
            self._end_scan("server finished")
        elif message.kind == protocol.ERROR:
            error = ServerError.from_error(
                message.fields.get("ErrorCode"),
                str(message.fields.get("ErrorMessage", "")),
            )
            self.audit.write(
                "intiface_error",
                status="error",
                message=str(error),
                details={"kind": error.kind},
            )
        else:
            self.audit.write(
                "intiface_protocol",
                status="warning",
                message=f"Ignoring unexpected {message.kind} event",
            )

    def _register_device(self, fields) -> Optional[Device]:
        try:
            device = Device.from_message(fields)
        except ProtocolError as exc:
            self.audit.write("intiface_protocol", status="error", message=str(exc))
            return None
        if device is None:
            self.audit.write(
                "device_ignored",
                status="info",
                message="Device has no vibration motors",
                details={"index": fields.get("DeviceIndex"), "name": fields.get("DeviceName")},
            )
            return None
        self.registry.add(device)
        self.audit.write(
            "device_added",
            status="info",
            details={
                "index": device.index,
                "name": device.name,
                "max_vibrate_motor_index": device.max_vibrate_motor_index,
            },
        )
        return device

    async def _ping_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.wait_for(self._request(protocol.ping), interval)
            except (BridgeError, asyncio.TimeoutError) as exc:
                await self._on_link_lost(PingError(f"ping failed: {exc}"))
                return

    # ---------------------------------------------------------------- teardown

    async def _on_link_lost(self, exc: BaseException) -> None:
        self.audit.write(
            "intiface_link",
            status="lost",
            message=f"Control server link lost: {exc}",
            details={"address": self.address, "devices_dropped": len(self.registry)},
        )
        await self._teardown_link()

    async def _teardown_link(self) -> None:
        transport, self._transport = self._transport, None
        if self._scan_handle is not None:
            self._scan_handle.cancel()
            self._scan_handle = None
        current = asyncio.current_task()
        for task in (self._reader_task, self._ping_task):
            if task is not None and task is not current:
                task.cancel()
        self._reader_task = None
        self._ping_task = None
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(ConnectorError("control server link closed"))
        self.registry.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        if transport is not None:
            try:
                await transport.close()
            except LINK_ERRORS as exc:
                self.audit.write(
                    "intiface_disconnect",
                    status="error",
                    message=f"Closing the link failed: {exc}",
                )

    def disconnect(self) -> concurrent.futures.Future:
        """Stop every device, then close the link.  The future never raises."""

        return self.submit(self._disconnect())

    async def _disconnect(self) -> None:
        if self._transport is None:
            return
        if len(self.registry):
            try:
                await asyncio.wait_for(self.stop_all_devices(), self.teardown_timeout)
            except (BridgeError, asyncio.TimeoutError) as exc:
                self.audit.write(
                    "intiface_disconnect",
                    status="error",
                    message=f"Stop-all before disconnect failed: {exc}",
                )
        await self._teardown_link()
        self.audit.write(
            "intiface_disconnect",
            status="closed",
            details={"address": self.address},
        )

    # --------------------------------------------------------------- commands

    async def vibrate(self, device: Device, speeds: Mapping[int, float]) -> None:
        try:
            await self._request(
                partial(protocol.vibrate_cmd, device_index=device.index, speeds=speeds)
            )
        except (ServerError, ConnectorError) as exc:
            motor_index = next(iter(speeds)) if len(speeds) == 1 else None
            raise CommandSendError(
                f"VibrateCmd to {device.name} failed: {exc}",
                device=device,
                motor_index=motor_index,
                errors=[exc],
            ) from exc

    async def stop_all_devices(self) -> None:
        try:
            await self._request(protocol.stop_all_devices)
        except (ServerError, ConnectorError) as exc:
            raise CommandSendError(f"StopAllDevices failed: {exc}", errors=[exc]) from exc
