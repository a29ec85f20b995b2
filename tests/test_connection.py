import sys
import threading
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from conftest import wait_until

from software.toy_bridge import protocol
from software.toy_bridge.connection import ConnectionManager, ConnectionState
from software.toy_bridge.devices import DeviceRegistry
from software.toy_bridge.dry_run import DryRunTransport, VirtualDevice
from software.toy_bridge.errors import CommandSendError, ConnectorError, DeviceError


def make_manager(audit, transport=None, *, scan_timeout=0.5):
    transport = transport or DryRunTransport(quiet=True)
    manager = ConnectionManager(
        DeviceRegistry(),
        address="ws://dry-run:12345",
        client_name="TestClient",
        scan_timeout=scan_timeout,
        teardown_timeout=1.0,
        audit=audit,
        open_transport=transport.open,
    )
    return manager, transport


def settled(manager, devices=1):
    return wait_until(
        lambda: manager.state is ConnectionState.CONNECTED and len(manager.registry) >= devices
    )


def kinds(transport):
    return [message.kind for message in transport.commands()]


def test_connect_handshakes_lists_devices_then_scans(audit):
    transport = DryRunTransport(
        [
            VirtualDevice(0, "Already paired", motors=2, listed=True),
            VirtualDevice(5, "Switched on later", motors=1),
        ],
        quiet=True,
    )
    manager, _ = make_manager(audit, transport)
    try:
        manager.connect().result(2)
        assert settled(manager, devices=2)
        assert kinds(transport)[:4] == [
            protocol.REQUEST_SERVER_INFO,
            protocol.REQUEST_DEVICE_LIST,
            protocol.START_SCANNING,
            protocol.STOP_SCANNING,
        ]
        (hello,) = transport.commands(protocol.REQUEST_SERVER_INFO)
        assert hello.fields["ClientName"] == "TestClient"
        assert transport.address == "ws://dry-run:12345"
        assert [d.max_vibrate_motor_index for d in manager.registry.list()] == [1, 0]
        assert manager.server_name == "Dry Run Intiface"
    finally:
        manager.close()

    statuses = [event["status"] for event in audit.events("intiface_connect")]
    assert statuses == ["connecting", "connected"]
    (stopped,) = [e for e in audit.events("intiface_scan") if e["status"] == "stopped"]
    assert stopped["details"]["reason"] == "device found"


def test_scan_timeout_ends_scanning(audit):
    transport = DryRunTransport([VirtualDevice(0, "Listed", listed=True)], quiet=True)
    manager, _ = make_manager(audit, transport, scan_timeout=0.3)
    try:
        manager.connect().result(2)
        assert manager.state is ConnectionState.SCANNING_FOR_DEVICES
        assert manager.is_connected
        assert settled(manager)
        assert transport.commands(protocol.STOP_SCANNING)
    finally:
        manager.close()
    reasons = [
        e["details"]["reason"] for e in audit.events("intiface_scan") if e["status"] == "stopped"
    ]
    assert reasons == ["timeout"]


def test_scanning_finished_event_ends_scanning(audit):
    transport = DryRunTransport([], quiet=True)
    manager, _ = make_manager(audit, transport, scan_timeout=30)
    try:
        manager.connect().result(2)
        transport.finish_scanning()
        assert wait_until(lambda: manager.state is ConnectionState.CONNECTED)
        # The server already stopped on its own; nothing to send back.
        assert transport.commands(protocol.STOP_SCANNING) == []
    finally:
        manager.close()


def test_connect_is_ignored_while_a_link_exists(audit):
    manager, transport = make_manager(audit)
    try:
        first = manager.connect()
        assert manager.connect() is None
        assert manager.ensure_connected() is None
        first.result(2)
        assert settled(manager)
        assert manager.ensure_connected() is None
        assert transport.open_count == 1
    finally:
        manager.close()


def test_concurrent_ensure_connected_opens_one_link(audit):
    manager, transport = make_manager(audit)
    futures = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        futures.append(manager.ensure_connected())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    try:
        started = [future for future in futures if future is not None]
        assert len(started) == 1
        started[0].result(2)
        assert settled(manager)
        assert transport.open_count == 1
    finally:
        manager.close()


def test_unreachable_server_returns_to_disconnected(audit):
    async def refuse(address):
        raise ConnectionRefusedError(111, "Connection refused")

    manager = ConnectionManager(
        DeviceRegistry(),
        address="ws://127.0.0.1:1",
        audit=audit,
        open_transport=refuse,
    )
    try:
        with pytest.raises(ConnectorError):
            manager.connect().result(2)
        assert wait_until(lambda: manager.state is ConnectionState.DISCONNECTED)
        assert wait_until(
            lambda: any(e["status"] == "error" for e in audit.events("intiface_connect"))
        )
        (failure,) = [e for e in audit.events("intiface_connect") if e["status"] == "error"]
        assert failure["details"]["address"] == "ws://127.0.0.1:1"
        assert "Connection refused" in failure["message"]
    finally:
        manager.close()


def test_rejected_handshake_is_a_connector_error(audit):
    transport = DryRunTransport(reject_handshake=True, quiet=True)
    manager, _ = make_manager(audit, transport)
    try:
        with pytest.raises(ConnectorError):
            manager.connect().result(2)
        assert wait_until(lambda: manager.state is ConnectionState.DISCONNECTED)
        assert transport.closed
        assert len(manager.registry) == 0
    finally:
        manager.close()


def test_disconnect_stops_devices_before_closing(audit):
    manager, transport = make_manager(audit)
    try:
        manager.connect().result(2)
        assert settled(manager)
        manager.disconnect().result(2)
        assert kinds(transport)[-1] == protocol.STOP_ALL_DEVICES
        assert transport.closed
        assert manager.state is ConnectionState.DISCONNECTED
        assert len(manager.registry) == 0
    finally:
        manager.close()
    assert [e["status"] for e in audit.events("intiface_disconnect")] == ["closed"]


def test_disconnect_while_offline_is_quiet(audit):
    manager, transport = make_manager(audit)
    manager.start()
    try:
        manager.disconnect().result(2)
        assert transport.commands() == []
    finally:
        manager.close()
    assert audit.events("intiface_disconnect") == []


def test_link_loss_clears_devices_and_allows_reconnect(audit):
    manager, transport = make_manager(audit)
    try:
        manager.connect().result(2)
        assert settled(manager)
        transport.drop_link()
        assert wait_until(lambda: manager.state is ConnectionState.DISCONNECTED)
        assert len(manager.registry) == 0
        (lost,) = audit.events("intiface_link")
        assert lost["status"] == "lost"
        assert lost["details"]["devices_dropped"] == 1

        manager.ensure_connected().result(2)
        assert settled(manager)
        assert transport.open_count == 2
    finally:
        manager.close()


def test_device_removed_event_updates_registry(audit):
    transport = DryRunTransport(
        [VirtualDevice(0, "Stays", motors=4), VirtualDevice(1, "Leaves", motors=1, listed=True)],
        quiet=True,
    )
    manager, _ = make_manager(audit, transport)
    try:
        manager.connect().result(2)
        assert settled(manager, devices=2)
        transport.remove_device(1)
        assert wait_until(lambda: len(manager.registry) == 1)
        assert manager.registry.get(0).name == "Stays"
        assert manager.state is ConnectionState.CONNECTED
    finally:
        manager.close()
    (removed,) = audit.events("device_removed")
    assert removed["details"] == {"index": 1, "name": "Leaves"}


def test_new_address_waits_for_next_connect(audit):
    manager, transport = make_manager(audit)
    try:
        manager.connect().result(2)
        assert settled(manager)
        manager.set_address("ws://192.168.1.20:12345")
        assert manager.state is ConnectionState.CONNECTED
        assert transport.open_count == 1
        (pending,) = audit.events("intiface_address")
        assert pending["status"] == "pending"

        manager.disconnect().result(2)
        manager.ensure_connected().result(2)
        assert transport.address == "ws://192.168.1.20:12345"
    finally:
        manager.close()


class DropOnDeviceListTransport(DryRunTransport):
    def _answer(self, message):
        if message.kind == protocol.REQUEST_DEVICE_LIST:
            self.drop_link()
            return
        super()._answer(message)


def test_link_drop_during_setup_leaves_retry_path_open(audit):
    transport = DropOnDeviceListTransport(max_ping_time=100, quiet=True)
    manager, _ = make_manager(audit, transport)
    try:
        with pytest.raises(ConnectorError):
            manager.connect().result(2)
        assert wait_until(lambda: manager.state is ConnectionState.DISCONNECTED)
        assert not manager.is_connected
        assert transport.commands(protocol.START_SCANNING) == []
        assert transport.commands(protocol.PING) == []

        retry = manager.ensure_connected()
        assert retry is not None
        with pytest.raises(ConnectorError):
            retry.result(2)
        assert transport.open_count == 2
        assert wait_until(lambda: manager.state is ConnectionState.DISCONNECTED)
    finally:
        manager.close()
    assert wait_until(
        lambda: len([e for e in audit.events("intiface_connect") if e["status"] == "error"]) == 2
    )


class SilentPingTransport(DryRunTransport):
    def _answer(self, message):
        if message.kind == protocol.PING:
            return
        super()._answer(message)


def test_ping_keeps_link_alive(audit):
    transport = DryRunTransport(max_ping_time=100, quiet=True)
    manager, _ = make_manager(audit, transport)
    try:
        manager.connect().result(2)
        assert wait_until(lambda: len(transport.commands(protocol.PING)) >= 3)
        assert manager.is_connected
    finally:
        manager.close()


def test_unanswered_ping_drops_link(audit):
    transport = SilentPingTransport(max_ping_time=100, quiet=True)
    manager, _ = make_manager(audit, transport)
    try:
        manager.connect().result(2)
        assert wait_until(lambda: manager.state is ConnectionState.DISCONNECTED)
        (lost,) = audit.events("intiface_link")
        assert "ping failed" in lost["message"]
    finally:
        manager.close()


def test_vibrate_failure_carries_device_context(audit):
    transport = DryRunTransport(fail_devices=[0], quiet=True)
    manager, _ = make_manager(audit, transport)
    try:
        manager.connect().result(2)
        assert settled(manager)
        device = manager.registry.get(0)
        with pytest.raises(CommandSendError) as excinfo:
            manager.submit(manager.vibrate(device, {1: 0.5})).result(2)
        assert excinfo.value.device == device
        assert excinfo.value.motor_index == 1
        assert isinstance(excinfo.value.errors[0], DeviceError)
    finally:
        manager.close()


def test_submit_without_loop_fails_fast(audit):
    manager, _ = make_manager(audit)
    future = manager.submit(manager.stop_all_devices())
    with pytest.raises(ConnectorError):
        future.result(0)


def test_close_never_raises(audit):
    manager, _ = make_manager(audit)
    manager.close()
    manager.start()
    manager.close()
    manager.close()
