"""Tests for proxy node discovery."""

import asyncio
from concurrent.futures import Future
from types import SimpleNamespace

import pytest
from bleak.exc import BleakError

import meshproxy.interfaces.ble.discovery as discovery_module
from meshproxy.interfaces.ble.constants import (
    MESH_PROVISIONING_SERVICE_UUID,
    MESH_PROXY_SERVICE_UUID,
)
from meshproxy.interfaces.ble.discovery import ProxyScanner, parse_scan_response

HEART_RATE_UUID = "0000180d-0000-1000-8000-00805f9b34fb"


def device(address, name=None):
    return SimpleNamespace(address=address, name=name)


def adv(*uuids, rssi=-60):
    return SimpleNamespace(service_uuids=list(uuids), rssi=rssi)


class TestParseScanResponse:
    def test_filters_and_sorts_by_signal(self):
        weak = device("AA:00:00:00:00:01", "weak")
        strong = device("AA:00:00:00:00:02", "strong")
        unprovisioned = device("AA:00:00:00:00:03")
        other = device("AA:00:00:00:00:04")
        response = {
            "1": (weak, adv(MESH_PROXY_SERVICE_UUID, rssi=-90)),
            "2": (strong, adv(MESH_PROXY_SERVICE_UUID.upper(), rssi=-40)),
            "3": (unprovisioned, adv(MESH_PROVISIONING_SERVICE_UUID, rssi=-70)),
            "4": (other, adv(HEART_RATE_UUID, rssi=-30)),
        }
        assert parse_scan_response(response) == [strong, unprovisioned, weak]

    def test_missing_rssi_sorts_last(self):
        quiet = device("AA:00:00:00:00:01")
        loud = device("AA:00:00:00:00:02")
        response = {
            "1": (quiet, adv(MESH_PROXY_SERVICE_UUID, rssi=None)),
            "2": (loud, adv(MESH_PROXY_SERVICE_UUID, rssi=-80)),
        }
        assert parse_scan_response(response) == [loud, quiet]

    def test_restrict_to_proxy_service(self):
        unprovisioned = device("AA:00:00:00:00:03")
        response = {"3": (unprovisioned, adv(MESH_PROVISIONING_SERVICE_UUID))}
        assert parse_scan_response(response, [MESH_PROXY_SERVICE_UUID]) == []

    @pytest.mark.parametrize("response", [None, [], "nope"])
    def test_unexpected_response_types(self, response):
        assert parse_scan_response(response) == []

    def test_unexpected_values_are_skipped(self):
        good = device("AA:00:00:00:00:01")
        response = {"bad": device("x"), "good": (good, adv(MESH_PROXY_SERVICE_UUID))}
        assert parse_scan_response(response) == [good]

    def test_no_advertised_services(self):
        response = {"1": (device("AA"), SimpleNamespace(service_uuids=None, rssi=-50))}
        assert parse_scan_response(response) == []


class FakeBleakScanner:
    instances = []

    def __init__(self, detection_callback=None, service_uuids=None, scanning_mode=None):
        self.detection_callback = detection_callback
        self.service_uuids = service_uuids
        self.scanning_mode = scanning_mode
        self.started = False
        self.stopped = False
        FakeBleakScanner.instances.append(self)

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True


class FakeLoopClient:
    """BLEClient stand-in that runs coroutines to completion on the calling thread."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.discover_kwargs = None

    def discover(self, **kwargs):
        self.discover_kwargs = kwargs
        if self.error is not None:
            raise self.error
        return self.response

    def async_await(self, coro, timeout=None):  # pylint: disable=W0613
        return asyncio.run(coro)

    def async_run(self, coro):
        future = Future()
        future.set_result(asyncio.run(coro))
        return future


@pytest.fixture
def fake_scanner_cls(monkeypatch):
    FakeBleakScanner.instances = []
    monkeypatch.setattr(discovery_module, "BleakScanner", FakeBleakScanner)
    return FakeBleakScanner


class TestProxyScannerDiscover:
    def test_discover_passes_proxy_filter(self):
        node = device("AA:00:00:00:00:01")
        client = FakeLoopClient(response={"1": (node, adv(MESH_PROXY_SERVICE_UUID))})
        assert ProxyScanner(client).discover(timeout=3) == [node]
        assert client.discover_kwargs == {
            "timeout": 3,
            "return_adv": True,
            "service_uuids": [MESH_PROXY_SERVICE_UUID, MESH_PROVISIONING_SERVICE_UUID],
        }

    @pytest.mark.parametrize("error", [BleakError("adapter missing"), RuntimeError("loop gone")])
    def test_discover_errors_return_empty(self, error):
        assert ProxyScanner(FakeLoopClient(error=error)).discover(timeout=1) == []


class TestProxyScannerContinuous:
    def test_reports_each_proxy_once(self, fake_scanner_cls):
        found = []
        scanner = ProxyScanner(FakeLoopClient())
        assert scanner.start(found.append)
        assert scanner.is_scanning
        (bleak_scanner,) = fake_scanner_cls.instances
        assert bleak_scanner.started
        assert bleak_scanner.scanning_mode == "active"

        node = device("AA:BB:CC:DD:EE:FF")
        bleak_scanner.detection_callback(node, adv(MESH_PROXY_SERVICE_UUID))
        bleak_scanner.detection_callback(device("aa-bb-cc-dd-ee-ff"), adv(MESH_PROXY_SERVICE_UUID))
        bleak_scanner.detection_callback(device("11:22:33:44:55:66"), adv(HEART_RATE_UUID))
        assert found == [node]

    def test_second_start_is_refused(self, fake_scanner_cls):  # pylint: disable=W0613
        scanner = ProxyScanner(FakeLoopClient())
        assert scanner.start(lambda _d: None)
        assert not scanner.start(lambda _d: None)

    def test_stop(self, fake_scanner_cls):
        found = []
        scanner = ProxyScanner(FakeLoopClient())
        scanner.start(found.append)
        scanner.stop()
        (bleak_scanner,) = fake_scanner_cls.instances
        assert bleak_scanner.stopped
        assert not scanner.is_scanning
        bleak_scanner.detection_callback(device("AA"), adv(MESH_PROXY_SERVICE_UUID))
        assert found == []
        scanner.stop()

    def test_stop_from_callback_during_start(self, fake_scanner_cls, monkeypatch):
        scanner = ProxyScanner(FakeLoopClient())

        class StopOnStart(FakeBleakScanner):
            async def start(self):
                self.started = True
                scanner.stop()

        monkeypatch.setattr(discovery_module, "BleakScanner", StopOnStart)
        assert scanner.start(lambda _d: None)
        (bleak_scanner,) = fake_scanner_cls.instances
        assert bleak_scanner.stopped
        assert not scanner.is_scanning

    def test_start_failure_resets(self, monkeypatch):
        class Broken(FakeBleakScanner):
            async def start(self):
                raise BleakError("no adapter")

        monkeypatch.setattr(discovery_module, "BleakScanner", Broken)
        scanner = ProxyScanner(FakeLoopClient())
        with pytest.raises(BleakError):
            scanner.start(lambda _d: None)
        assert not scanner.is_scanning
