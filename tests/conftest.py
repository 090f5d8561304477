"""
Shared pytest fixtures for the proxy link tests.
"""

from types import SimpleNamespace
from typing import List, Optional

import pytest  # type: ignore[import-untyped]  # pylint: disable=E0401

import meshproxy
import meshproxy.mesh_interface
from meshproxy.interfaces.ble.constants import (
    CLIENT_CHARACTERISTIC_CONFIG_UUID,
    GATT_SUCCESS,
    MESH_PROXY_SERVICE_UUID,
    PROXY_DATA_IN_UUID,
    PROXY_DATA_OUT_UUID,
)
from meshproxy.interfaces.ble.coordination import ThreadCoordinator
from meshproxy.interfaces.ble.driver import GattCharacteristic, GattService
from meshproxy.interfaces.ble.events import EventChannel
from meshproxy.interfaces.ble.transport import GattTransport


class ManualTimer:
    """threading.Timer stand-in that only fires when the test says so."""

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def is_alive(self):
        return False

    def join(self, timeout=None):  # pylint: disable=W0613
        return None

    def fire(self, force=False):
        """Run the timer body unless cancelled; ``force`` simulates a cancel that lost the race."""
        if self.fired or (self.cancelled and not force):
            return
        self.fired = True
        self.function()


class ManualTimerFactory:
    """Builds ManualTimers and remembers them so tests can fire them."""

    def __init__(self):
        self.created: List[ManualTimer] = []

    def __call__(self, interval, function):
        timer = ManualTimer(interval, function)
        self.created.append(timer)
        return timer

    def pending(self) -> List[ManualTimer]:
        return [t for t in self.created if t.started and not t.cancelled and not t.fired]

    def fire_all(self):
        """Fire every pending timer, including ones armed by the callbacks themselves."""
        while self.pending():
            self.pending()[0].fire()


class FakeLinkDriver:
    """LinkDriver that records requests; tests play the radio stack through ``callbacks``."""

    def __init__(self):
        self.calls = []
        self.opened = []
        self.callbacks = None
        self.open_error: Optional[BaseException] = None
        self.mtu_dispatch = True
        self.discovery_dispatch = True
        self.notify_dispatch = True
        self.write_accepts = True
        self.writes = []
        self.close_count = 0

    def open(self, address, callbacks):
        self.calls.append(("open", address))
        if self.open_error is not None:
            raise self.open_error
        self.opened.append((address, callbacks))
        self.callbacks = callbacks

    def request_mtu(self, size):
        self.calls.append(("request_mtu", size))
        return self.mtu_dispatch

    def discover_services(self):
        self.calls.append(("discover_services",))
        return self.discovery_dispatch

    def enable_notifications(self, char_uuid, descriptor_uuid):
        self.calls.append(("enable_notifications", char_uuid, descriptor_uuid))
        return self.notify_dispatch

    def write_without_response(self, char_uuid, data):
        self.writes.append((char_uuid, bytes(data)))
        return self.write_accepts

    def close(self):
        self.close_count += 1
        self.calls.append(("close",))

    def call_names(self):
        return [c[0] for c in self.calls]


def proxy_services(
    service_uuid=MESH_PROXY_SERVICE_UUID, data_in=True, data_out=True, cccd=True
) -> List[GattService]:
    """Build a discovered service list resembling a Mesh Proxy node."""
    characteristics = {}
    if data_in:
        characteristics[PROXY_DATA_IN_UUID] = GattCharacteristic(PROXY_DATA_IN_UUID)
    if data_out:
        descriptors = frozenset({CLIENT_CHARACTERISTIC_CONFIG_UUID}) if cccd else frozenset()
        characteristics[PROXY_DATA_OUT_UUID] = GattCharacteristic(PROXY_DATA_OUT_UUID, descriptors)
    generic_access = GattService("00001800-0000-1000-8000-00805f9b34fb")
    return [generic_access, GattService(service_uuid, characteristics)]


def drive_to_ready(driver: FakeLinkDriver, mtu: int = 247):
    """Play the success path of a connection attempt on the driver's live callbacks."""
    driver.callbacks.on_link_established()
    driver.callbacks.on_mtu_changed(mtu, GATT_SUCCESS)
    driver.callbacks.on_services_discovered(GATT_SUCCESS, proxy_services())


class EventRecorder:
    """Listener collecting every transport event in delivery order."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def of_type(self, cls):
        return [e for e in self.events if isinstance(e, cls)]

    def types(self):
        return [type(e).__name__ for e in self.events]


class PubRecorder:
    """Stand-in for pubsub.pub capturing sendMessage calls."""

    def __init__(self):
        self.messages = []

    def sendMessage(self, topic, **kwargs):  # pylint: disable=C0103
        self.messages.append((topic, kwargs))

    def topics(self):
        return [topic for topic, _ in self.messages]

    def texts(self):
        return [kw["text"] for topic, kw in self.messages if topic == "meshproxy.status.text"]


def sync_dispatch(work):
    work()


@pytest.fixture(autouse=True)
def mock_publishing_thread(monkeypatch):
    """
    Replace the shared publishing thread with one whose queueWork runs the callback immediately.

    Returns:
        SimpleNamespace: The stand-in installed as ``meshproxy.publishingThread``.
    """

    def queueWork(callback):  # pylint: disable=C0103
        if callback:
            callback()

    publishing_thread = SimpleNamespace(queueWork=queueWork)
    monkeypatch.setattr(meshproxy, "publishingThread", publishing_thread)
    monkeypatch.setattr(meshproxy.mesh_interface, "publishingThread", publishing_thread)
    return publishing_thread


@pytest.fixture
def pub_recorder(monkeypatch):
    recorder = PubRecorder()
    monkeypatch.setattr(meshproxy.mesh_interface, "pub", recorder)
    return recorder


@pytest.fixture
def timers():
    return ManualTimerFactory()


@pytest.fixture
def coordinator(timers):
    return ThreadCoordinator(timer_factory=timers)


@pytest.fixture
def driver():
    return FakeLinkDriver()


@pytest.fixture
def channel():
    return EventChannel(dispatcher=sync_dispatch)


@pytest.fixture
def recorder(channel):
    rec = EventRecorder()
    channel.subscribe(rec)
    return rec


@pytest.fixture
def transport(driver, channel, coordinator):
    """GattTransport over the fake driver, with synchronous events and no discovery pause."""
    return GattTransport(driver, channel, coordinator, service_discovery_delay=0)
