import sys
import threading
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from software.toy_bridge.devices import Device, DeviceRegistry
from software.toy_bridge.errors import ProtocolError


def test_add_remove_list():
    registry = DeviceRegistry()
    assert registry.add(Device(0, "Quad", 3)) is True
    assert registry.add(Device(4, "Solo", 0)) is True
    assert [d.index for d in registry.list()] == [0, 4]

    removed = registry.remove(0)
    assert removed == Device(0, "Quad", 3)
    assert registry.remove(0) is None
    assert [d.name for d in registry.list()] == ["Solo"]


def test_readd_replaces_entry():
    registry = DeviceRegistry()
    registry.add(Device(2, "Old name", 0))
    assert registry.add(Device(2, "New name", 1)) is False
    assert registry.list() == (Device(2, "New name", 1),)
    assert registry.get(2).max_vibrate_motor_index == 1


def test_snapshot_is_unaffected_by_later_writes():
    registry = DeviceRegistry()
    registry.add(Device(0, "A", 0))
    snapshot = registry.list()
    registry.add(Device(1, "B", 0))
    registry.clear()
    assert snapshot == (Device(0, "A", 0),)
    assert len(registry) == 0


def test_concurrent_readers_see_whole_lists():
    registry = DeviceRegistry()
    stop = threading.Event()
    torn = []

    def reader():
        while not stop.is_set():
            indexes = [d.index for d in registry.list()]
            if len(indexes) != len(set(indexes)):
                torn.append(indexes)

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for thread in threads:
        thread.start()
    for n in range(300):
        registry.add(Device(n % 7, f"dev{n}", n % 4))
        registry.remove((n + 3) % 7)
    stop.set()
    for thread in threads:
        thread.join()
    assert torn == []


def test_device_from_message():
    device = Device.from_message(
        {
            "DeviceIndex": 3,
            "DeviceName": "Lovense Edge",
            "DeviceMessages": {"VibrateCmd": {"FeatureCount": 2}, "StopDeviceCmd": {}},
        }
    )
    assert device == Device(3, "Lovense Edge", 1)
    assert device.supports_motor(1)
    assert not device.supports_motor(2)


def test_device_without_vibration_is_skipped():
    assert Device.from_message({"DeviceIndex": 1, "DeviceMessages": {"LinearCmd": {"FeatureCount": 1}}}) is None


@pytest.mark.parametrize(
    "fields",
    [
        {"DeviceName": "no index", "DeviceMessages": {}},
        {"DeviceIndex": 1, "DeviceMessages": {"VibrateCmd": {"FeatureCount": 0}}},
        {"DeviceIndex": 1, "DeviceMessages": []},
    ],
)
def test_device_from_bad_message(fields):
    with pytest.raises(ProtocolError):
        Device.from_message(fields)
