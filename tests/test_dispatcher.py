import concurrent.futures
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from conftest import wait_until

from software.toy_bridge import protocol
from software.toy_bridge.connection import ConnectionManager, ConnectionState
from software.toy_bridge.devices import Device, DeviceRegistry
from software.toy_bridge.dispatcher import CommandDispatcher
from software.toy_bridge.dry_run import DryRunTransport, VirtualDevice
from software.toy_bridge.errors import CommandSendError, ConnectorError, DeviceError


def two_toys():
    return [VirtualDevice(0, "Quad", motors=4), VirtualDevice(1, "Solo", motors=1)]


@pytest.fixture
def live(audit):
    """A dispatcher wired to a connected dry-run link with two toys."""

    def build(**transport_kwargs):
        transport = DryRunTransport(two_toys(), quiet=True, **transport_kwargs)
        registry = DeviceRegistry()
        manager = ConnectionManager(
            registry,
            audit=audit,
            open_transport=transport.open,
            scan_timeout=0.5,
        )
        manager.connect().result(2)
        assert wait_until(
            lambda: manager.state is ConnectionState.CONNECTED and len(registry) == 2
        )
        built.append(manager)
        return CommandDispatcher(registry, manager, audit), transport

    built = []
    yield build
    for manager in built:
        manager.close()


def settle(futures):
    concurrent.futures.wait(futures, timeout=2)


def test_motor_filter_skips_small_devices(live):
    dispatcher, transport = live()
    settle(dispatcher.dispatch(2, 0.7))
    assert transport.vibrations() == [(0, 2, pytest.approx(0.7))]


def test_shared_motor_reaches_every_device(live):
    dispatcher, transport = live()
    settle(dispatcher.dispatch(0, 0.25))
    assert sorted(transport.vibrations()) == [(0, 0, 0.25), (1, 0, 0.25)]


def test_speed_is_clamped_before_sending(live):
    dispatcher, transport = live()
    settle(dispatcher.dispatch(0, 1.7))
    settle(dispatcher.dispatch(0, -0.2))
    speeds = sorted(speed for _, _, speed in transport.vibrations())
    assert speeds == [0.0, 0.0, 1.0, 1.0]


def test_one_failing_device_does_not_block_others(live, audit):
    dispatcher, transport = live(fail_devices=[0])
    futures = dispatcher.dispatch(0, 0.4)
    settle(futures)
    assert transport.speeds == {(1, 0): 0.4}

    # Failure logging runs in the future's done callback.
    assert wait_until(lambda: audit.events("command_failed"))
    (failure,) = audit.events("command_failed")
    assert failure["status"] == "error"
    assert failure["details"] == {
        "device": "Quad",
        "device_index": 0,
        "motor_index": 0,
        "speed": 0.4,
        "error": "DeviceError",
    }
    assert failure["message"].startswith("VibrateCmd failed:")


def test_stop_all_goes_out_once(live):
    dispatcher, transport = live()
    settle(dispatcher.dispatch(0, 0.9))
    dispatcher.stop_all().result(2)
    assert len(transport.commands(protocol.STOP_ALL_DEVICES)) == 1
    assert set(transport.speeds.values()) == {0.0}


def test_stop_all_is_skipped_while_offline(audit):
    registry = DeviceRegistry()
    manager = ConnectionManager(registry, audit=audit)
    dispatcher = CommandDispatcher(registry, manager)
    assert dispatcher.stop_all() is None


def test_dispatch_with_no_devices_is_a_no_op(audit):
    registry = DeviceRegistry()
    manager = ConnectionManager(registry, audit=audit)
    dispatcher = CommandDispatcher(registry, manager)
    assert dispatcher.dispatch(0, 0.5) == []


class FailingConnection:
    is_connected = True

    def __init__(self, audit, exc):
        self.audit = audit
        self.exc = exc

    async def vibrate(self, device, speeds):
        raise self.exc

    async def stop_all_devices(self):
        raise self.exc

    def submit(self, coro):
        coro.close()
        future = concurrent.futures.Future()
        future.set_exception(self.exc)
        return future


def test_aggregated_failures_are_logged_one_by_one(audit):
    registry = DeviceRegistry()
    registry.add(Device(3, "Flaky", 1))
    exc = CommandSendError(
        "VibrateCmd to Flaky failed",
        errors=[DeviceError("motor jammed"), ConnectorError("link hiccup")],
    )
    dispatcher = CommandDispatcher(registry, FailingConnection(audit, exc))

    futures = dispatcher.dispatch(1, 0.6)

    assert len(futures) == 1
    rows = audit.events("command_failed")
    assert [row["details"]["error"] for row in rows] == ["DeviceError", "ConnectorError"]
    assert {row["details"]["device_index"] for row in rows} == {3}
    assert {row["details"]["motor_index"] for row in rows} == {1}


def test_stop_all_failure_is_logged_not_raised(audit):
    registry = DeviceRegistry()
    exc = CommandSendError("StopAllDevices failed", errors=[ConnectorError("gone")])
    dispatcher = CommandDispatcher(registry, FailingConnection(audit, exc))

    dispatcher.stop_all()

    (row,) = audit.events("command_failed")
    assert row["message"].startswith("StopAllDevices failed:")
    assert row["details"]["device"] is None


class RecordingConnection:
    is_connected = True

    def __init__(self, audit):
        self.audit = audit
        self.sent = []

    def vibrate(self, device, speeds):
        self.sent.append((device.index, dict(speeds)))
        return "vibrate"

    def submit(self, job):
        future = concurrent.futures.Future()
        future.set_result(None)
        return future


def test_motor_beyond_device_capability_is_dropped(audit):
    registry = DeviceRegistry()
    registry.add(Device(0, "Dual", 1))
    registry.add(Device(1, "Quad", 3))
    connection = RecordingConnection(audit)
    dispatcher = CommandDispatcher(registry, connection)

    futures = dispatcher.dispatch(3, 0.5)

    assert len(futures) == 1
    assert connection.sent == [(1, {3: 0.5})]
    assert audit.events("command_failed") == []


def test_negative_motor_index_reaches_no_device(audit):
    registry = DeviceRegistry()
    registry.add(Device(0, "Quad", 3))
    connection = RecordingConnection(audit)
    dispatcher = CommandDispatcher(registry, connection)

    assert dispatcher.dispatch(-1, 0.5) == []
    assert connection.sent == []
