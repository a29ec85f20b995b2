"""Fan speed commands out to every device that has the requested motor."""

from __future__ import annotations

import concurrent.futures
from functools import partial
from typing import List, Optional

from .audit import AuditLogger
from .binding import clamp
from .connection import ConnectionManager
from .devices import Device, DeviceRegistry
from .errors import flatten_errors


class CommandDispatcher:
    """Fire-and-forget vibrate commands.

    Each device gets its own scheduled send, so one toy timing out or erroring
    never holds up the others.  Failures are written to the audit log and
    dropped; ``dispatch`` itself never raises.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        connection: ConnectionManager,
        audit: Optional[AuditLogger] = None,
    ):
        self.registry = registry
        self.connection = connection
        self.audit = audit or connection.audit

    def dispatch(self, motor_index: int, speed: float) -> List[concurrent.futures.Future]:
        speed = float(clamp(speed, 0.0, 1.0))
        futures = []
        for device in self.registry.list():
            # Motors a device doesn't have are skipped on purpose, not errors.
            if not device.supports_motor(motor_index):
                continue
            future = self.connection.submit(
                self.connection.vibrate(device, {motor_index: speed})
            )
            future.add_done_callback(
                partial(self._log_failure, device=device, motor_index=motor_index, speed=speed)
            )
            futures.append(future)
        return futures

    def stop_all(self) -> Optional[concurrent.futures.Future]:
        """Zero every motor on every device; skipped while offline."""

        if not self.connection.is_connected:
            return None
        future = self.connection.submit(self.connection.stop_all_devices())
        future.add_done_callback(partial(self._log_failure, device=None, motor_index=None, speed=0.0))
        return future

    def _log_failure(
        self,
        future: concurrent.futures.Future,
        *,
        device: Optional[Device],
        motor_index: Optional[int],
        speed: float,
    ) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is None:
            return
        command = "StopAllDevices" if device is None else "VibrateCmd"
        for error in flatten_errors(exc):
            self.audit.write(
                "command_failed",
                status="error",
                message=f"{command} failed: {error}",
                details={
                    "device": None if device is None else device.name,
                    "device_index": None if device is None else device.index,
                    "motor_index": motor_index,
                    "speed": speed,
                    "error": type(error).__name__,
                },
            )
