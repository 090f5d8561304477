"""Tests for MeshInterface, the application facade over the proxy link."""

import pytest
from conftest import drive_to_ready

from meshproxy.interfaces.ble.constants import (
    GATT_ERROR,
    GATT_SUCCESS,
    PROXY_DATA_IN_UUID,
    STATUS_LINK_LOST,
)
from meshproxy.interfaces.ble.exceptions import (
    ConnectionFailedError,
    LinkFailureError,
    PermissionDeniedError,
    SendResult,
    ServiceMissingError,
)
from meshproxy.interfaces.ble.policies import RetryBudget
from meshproxy.mesh_interface import (
    STATUS_NO_MESH_STACK,
    STATUS_NOT_CONNECTED,
    GenericLevelSetUnacknowledged,
    MeshInterface,
    SensorGet,
)
from meshproxy.sensor_decoder import SensorReading
from meshproxy.storage import MemoryAddressStore

ADDRESS = "AA:BB:CC:DD:EE:FF"


class FakeMeshStack:
    def __init__(self):
        self.callbacks = None
        self.notifications = []
        self.created = []
        self.create_error = None

    def set_callbacks(self, callbacks):
        self.callbacks = callbacks

    def handle_notifications(self, mtu, data):
        self.notifications.append((mtu, data))

    def create_mesh_pdu(self, dst, message):
        if self.create_error is not None:
            raise self.create_error
        self.created.append((dst, message))


@pytest.fixture
def stack():
    return FakeMeshStack()


@pytest.fixture
def iface(transport, stack, pub_recorder):  # pylint: disable=W0613
    interface = MeshInterface(
        transport, stack, store=MemoryAddressStore(), budget=RetryBudget(max_attempts=2)
    )
    yield interface
    interface.close()


def ready(iface, driver, mtu=247):
    iface.connect(ADDRESS)
    drive_to_ready(driver, mtu=mtu)


class TestConnection:
    def test_registers_with_mesh_stack(self, iface, stack):
        assert stack.callbacks is iface

    def test_wait_for_ready(self, iface, driver, pub_recorder):
        ready(iface, driver)
        iface.wait_for_connection(timeout=0)
        assert iface.isConnected.is_set()
        assert iface.failure is None
        assert "meshproxy.connection.established" in pub_recorder.topics()
        assert ("meshproxy.connection.status", {"interface": iface, "connected": True}) in (
            pub_recorder.messages
        )

    def test_status_text_is_published(self, iface, driver, pub_recorder):
        ready(iface, driver)
        assert pub_recorder.texts()[-1] == f"Connected to {ADDRESS}"

    def test_wait_times_out(self, iface):
        iface.connect(ADDRESS)
        with pytest.raises(LinkFailureError):
            iface.wait_for_connection(timeout=0)

    def test_terminal_link_failure(self, iface, driver, timers):
        iface.connect(ADDRESS)
        driver.callbacks.on_link_failed(GATT_ERROR)
        timers.fire_all()
        driver.callbacks.on_link_failed(GATT_ERROR)
        with pytest.raises(LinkFailureError):
            iface.wait_for_connection(timeout=0)

    def test_terminal_permission_failure(self, iface, driver):
        iface.connect(ADDRESS)
        driver.callbacks.on_link_failed(None, PermissionError("denied"))
        with pytest.raises(PermissionDeniedError) as excinfo:
            iface.wait_for_connection(timeout=0)
        assert isinstance(excinfo.value, ConnectionFailedError)

    def test_terminal_service_missing(self, iface, driver):
        iface.connect(ADDRESS)
        driver.callbacks.on_link_established()
        driver.callbacks.on_mtu_changed(247, GATT_SUCCESS)
        driver.callbacks.on_services_discovered(GATT_SUCCESS, [])
        with pytest.raises(ServiceMissingError):
            iface.wait_for_connection(timeout=0)

    def test_new_sequence_clears_previous_failure(self, iface, driver):
        iface.connect(ADDRESS)
        driver.callbacks.on_link_failed(None, PermissionError("denied"))
        iface.connect(ADDRESS)
        assert iface.failure is None
        drive_to_ready(driver)
        iface.wait_for_connection(timeout=0)

    def test_connect_again_while_ready(self, iface, driver, pub_recorder):
        ready(iface, driver)
        iface.connect(ADDRESS)
        iface.wait_for_connection(timeout=0)
        assert iface.transport.is_ready
        assert driver.call_names().count("open") == 1

        driver.callbacks.on_link_dropped(None)
        assert STATUS_LINK_LOST in pub_recorder.texts()
        assert not iface.transport.is_ready

    def test_no_saved_proxy(self, iface, driver):
        assert not iface.connect_to_saved_proxy()
        with pytest.raises(LinkFailureError):
            iface.wait_for_connection(timeout=0)
        assert driver.calls == []

    def test_saved_proxy_is_used(self, transport, driver, stack, pub_recorder):  # pylint: disable=W0613
        iface = MeshInterface(transport, stack, store=MemoryAddressStore(ADDRESS))
        try:
            assert iface.connect_to_saved_proxy()
            assert driver.calls[0] == ("open", ADDRESS)
        finally:
            iface.close()

    def test_auto_connect_without_scanner(self, iface):
        assert not iface.auto_connect()
        with pytest.raises(LinkFailureError):
            iface.wait_for_connection(timeout=0)

    def test_link_loss_is_published(self, iface, driver, pub_recorder):
        ready(iface, driver)
        driver.callbacks.on_link_dropped(None)
        assert not iface.isConnected.is_set()
        assert "meshproxy.connection.lost" in pub_recorder.topics()
        assert ("meshproxy.connection.status", {"interface": iface, "connected": False}) in (
            pub_recorder.messages
        )

    def test_connection_status_published_once_per_connection(self, iface, driver, pub_recorder):
        ready(iface, driver)
        iface.disconnect()
        iface.disconnect()
        statuses = [kw["connected"] for t, kw in pub_recorder.messages if t == "meshproxy.connection.status"]
        assert statuses == [True, False]

    def test_close_releases_link(self, transport, driver, stack, pub_recorder):  # pylint: disable=W0613
        with MeshInterface(transport, stack, store=MemoryAddressStore()) as iface:
            ready(iface, driver)
        assert driver.close_count == 1
        assert not transport.is_ready


class TestFrames:
    def test_frames_go_to_mesh_stack_with_mtu(self, iface, driver, stack):
        ready(iface, driver, mtu=185)
        driver.callbacks.on_notification(b"\x01\x02")
        assert stack.notifications == [(185, b"\x01\x02")]
        assert iface.get_mtu() == 185

    def test_pdu_sent_when_ready(self, iface, driver):
        ready(iface, driver)
        assert iface.on_mesh_pdu_created(b"\x00\x01\x02") is SendResult.ACCEPTED
        assert driver.writes == [(PROXY_DATA_IN_UUID, b"\x00\x01\x02")]

    def test_pdu_dropped_when_not_ready(self, iface, driver, pub_recorder):
        assert iface.on_mesh_pdu_created(b"\x00") is SendResult.NOT_READY
        assert driver.writes == []
        assert pub_recorder.texts() == [STATUS_NOT_CONNECTED]

    def test_pdu_write_rejected(self, iface, driver, pub_recorder):
        ready(iface, driver)
        driver.write_accepts = False
        assert iface.on_mesh_pdu_created(b"\x00") is SendResult.WRITE_REJECTED
        assert pub_recorder.texts()[-1] == "PDU send failed"

    def test_stack_errors_on_notifications_are_contained(self, iface, driver, stack):
        def broken(_mtu, _data):
            raise ValueError("bad pdu")

        stack.handle_notifications = broken
        ready(iface, driver)
        driver.callbacks.on_notification(b"\x01")
        assert iface.isConnected.is_set()


class TestMessages:
    @pytest.mark.parametrize(
        "brightness, level",
        [(0, -32767), (50, 0), (75, 16383), (100, 32767)],
    )
    def test_brightness_to_level(self, iface, stack, brightness, level):
        assert iface.send_brightness(0x0002, brightness)
        assert stack.created == [(0x0002, GenericLevelSetUnacknowledged(level=level, tid=0))]

    def test_tid_increments_and_wraps(self, iface, stack):
        iface.currentTid = 254
        for _ in range(3):
            iface.send_brightness(0x0002, 50)
        assert [m.tid for _, m in stack.created] == [254, 255, 0]

    @pytest.mark.parametrize("brightness", [-1, 101])
    def test_brightness_out_of_range(self, iface, stack, brightness):
        with pytest.raises(ValueError):
            iface.send_brightness(0x0002, brightness)
        assert stack.created == []

    def test_sent_status(self, iface, pub_recorder):
        iface.send_brightness(0x0002, 50)
        assert pub_recorder.texts() == ["Sent: Dst:0x0002 TID:0"]

    def test_stack_failure_is_reported(self, iface, stack, pub_recorder):
        stack.create_error = RuntimeError("no keys")
        assert not iface.send_brightness(0x0002, 50)
        assert pub_recorder.texts() == ["Send failed: no keys"]

    def test_no_mesh_stack(self, transport, pub_recorder):
        iface = MeshInterface(transport, store=MemoryAddressStore())
        try:
            assert not iface.send_brightness(0x0002, 50)
            assert not iface.read_temperature(0x0002)
            assert pub_recorder.texts() == [STATUS_NO_MESH_STACK, STATUS_NO_MESH_STACK]
        finally:
            iface.close()

    def test_read_temperature(self, iface, stack):
        assert iface.read_temperature(0x0003)
        assert stack.created == [(0x0003, SensorGet())]

    def test_sensor_status(self, iface, pub_recorder):
        readings = iface.on_sensor_status(0x0005, bytes.fromhex("00 4F 32"))
        assert readings == [SensorReading(0x0005, 0x004F, 25.0)]
        assert iface.temperatures == {0x0005: 25.0}
        assert ("meshproxy.sensor.reading", {"interface": iface, "reading": readings[0]}) in (
            pub_recorder.messages
        )

    def test_sensor_status_latest_value_wins(self, iface):
        iface.on_sensor_status(0x0005, bytes.fromhex("00 4F 32"))
        iface.on_sensor_status(0x0005, bytes.fromhex("02 13 FF 80"))
        assert iface.temperatures == {0x0005: -1.0}

    def test_sensor_status_without_temperature(self, iface, pub_recorder):
        assert iface.on_sensor_status(0x0005, b"\x02\x00\x3e\x80") == []
        assert iface.temperatures == {}
        assert "meshproxy.sensor.reading" not in pub_recorder.topics()
