"""Live set of vibration devices the control server has announced."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from . import protocol
from .errors import ProtocolError


@dataclass(frozen=True)
class Device:
    index: int
    name: str
    max_vibrate_motor_index: int

    def supports_motor(self, motor_index: int) -> bool:
        return 0 <= motor_index <= self.max_vibrate_motor_index

    @classmethod
    def from_message(cls, fields: Dict[str, Any]) -> Optional["Device"]:
        """Build a device from ``DeviceAdded`` / ``DeviceList`` fields.

        Returns ``None`` for devices without vibration motors; the bridge
        only drives single-axis vibrators.
        """

        index = fields.get("DeviceIndex")
        if not isinstance(index, int) or isinstance(index, bool):
            raise ProtocolError("device entry is missing DeviceIndex")
        count = protocol.vibrate_feature_count(fields.get("DeviceMessages", {}))
        if count is None:
            return None
        name = str(fields.get("DeviceName") or f"device-{index}")
        return cls(index=index, name=name, max_vibrate_motor_index=count - 1)


class DeviceRegistry:
    """Copy-on-write device list.

    The connection loop is the only writer; the dispatcher reads from the
    telemetry threads.  Writers build a fresh tuple under the lock and swap it
    in, so ``list()`` always hands back a complete snapshot.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._devices: Tuple[Device, ...] = ()

    def add(self, device: Device) -> bool:
        """Register ``device``; returns ``True`` if it was not known yet.

        A device re-announced under an existing index replaces the old entry.
        """

        with self._lock:
            current = self._devices
            kept = tuple(d for d in current if d.index != device.index)
            self._devices = kept + (device,)
            return len(kept) == len(current)

    def remove(self, index: int) -> Optional[Device]:
        with self._lock:
            removed = None
            kept = []
            for device in self._devices:
                if device.index == index:
                    removed = device
                else:
                    kept.append(device)
            self._devices = tuple(kept)
            return removed

    def clear(self) -> None:
        with self._lock:
            self._devices = ()

    def get(self, index: int) -> Optional[Device]:
        for device in self._devices:
            if device.index == index:
                return device
        return None

    def list(self) -> Tuple[Device, ...]:
        return self._devices

    def __len__(self) -> int:
        return len(self._devices)
