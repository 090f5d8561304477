"""Discovery of advertising Mesh Proxy nodes."""

import time
from threading import RLock
from typing import Any, Callable, Iterable, List, Optional, Set

from bleak import BleakScanner, BLEDevice
from bleak.exc import BleakDBusError, BleakError

from meshproxy.interfaces.ble.client import BLEClient
from meshproxy.interfaces.ble.constants import (
    PROXY_SCAN_SERVICE_UUIDS,
    BLEConfig,
    logger,
)
from meshproxy.interfaces.ble.utils import sanitize_address


def _advertises(uuids: Optional[Iterable[str]], wanted: Iterable[str]) -> bool:
    if not uuids:
        return False
    advertised = {str(u).lower() for u in uuids}
    return any(w in advertised for w in wanted)


def parse_scan_response(
    response: Any, service_uuids: Iterable[str] = PROXY_SCAN_SERVICE_UUIDS
) -> List[BLEDevice]:
    """
    Convert a BleakScanner.discover(return_adv=True) response into the BLEDevice instances advertising one of ``service_uuids``.

    Devices are returned strongest signal first.
    """
    devices: List[BLEDevice] = []
    if response is None:
        logger.warning("BleakScanner.discover returned None")
        return devices
    if not isinstance(response, dict):
        logger.warning(
            "BleakScanner.discover returned unexpected type: %s",
            type(response),
        )
        return devices
    wanted = [u.lower() for u in service_uuids]
    ranked = []
    for _, value in response.items():
        if isinstance(value, tuple):
            device, adv = value
        else:
            logger.warning(
                "Unexpected return type from BleakScanner.discover: %s",
                type(value),
            )
            continue
        if _advertises(getattr(adv, "service_uuids", None), wanted):
            ranked.append((getattr(adv, "rssi", None), device))
    ranked.sort(key=lambda item: item[0] if item[0] is not None else -999, reverse=True)
    devices.extend(device for _, device in ranked)
    return devices


class ProxyScanner:
    """
    Finds nodes advertising the Mesh Proxy (0x1828) or Mesh Provisioning (0x1827) service.

    discover() is a blocking one-shot scan used by the command line. start()/stop()
    run a continuous scan on the BLEClient's event loop and report each new device
    once through ``on_found``, which runs on that loop's thread.
    """

    def __init__(
        self,
        client: BLEClient,
        service_uuids: Iterable[str] = PROXY_SCAN_SERVICE_UUIDS,
    ):
        self.client = client
        self.service_uuids = [u.lower() for u in service_uuids]
        self._scanner: Optional[BleakScanner] = None
        self._active = False
        self._seen: Set[str] = set()
        self._lock = RLock()

    @property
    def is_scanning(self) -> bool:
        with self._lock:
            return self._active

    def discover(self, timeout: float = BLEConfig.BLE_SCAN_TIMEOUT) -> List[BLEDevice]:
        """Scan for ``timeout`` seconds and return the proxy nodes heard, strongest first."""
        try:
            scan_start = time.monotonic()
            logger.debug("Scanning for proxy nodes (takes %.0f seconds)...", timeout)
            response = self.client.discover(
                timeout=timeout,
                return_adv=True,
                service_uuids=list(self.service_uuids),
            )
            logger.debug("Scan completed in %.2f seconds", time.monotonic() - scan_start)
        except (BleakError, BleakDBusError, RuntimeError) as e:
            logger.warning("Device discovery failed: %s", e, exc_info=True)
            return []
        return parse_scan_response(response, self.service_uuids)

    def start(self, on_found: Callable[[BLEDevice], None]) -> bool:
        """
        Start a continuous scan. Must not be called from the client's event loop thread.

        Returns:
            bool: True once the scan has started; False if one was already running.
        """
        with self._lock:
            if self._active:
                logger.debug("Proxy scan already running")
                return False
            self._active = True
            self._seen.clear()
        try:
            scanner = self.client.async_await(
                self._start_scanner(on_found), timeout=BLEConfig.GATT_IO_TIMEOUT
            )
        except Exception:
            with self._lock:
                self._active = False
            raise
        with self._lock:
            if not self._active:
                # stop() ran while the scanner was starting, typically from on_found
                self.client.async_run(scanner.stop()).add_done_callback(self._log_stop_result)
                return True
            self._scanner = scanner
        logger.debug("Proxy scan started")
        return True

    def stop(self) -> None:
        """Stop the continuous scan without waiting; safe from any thread, including on_found."""
        with self._lock:
            scanner = self._scanner
            self._scanner = None
            self._active = False
        if scanner is None:
            return
        future = self.client.async_run(scanner.stop())
        future.add_done_callback(self._log_stop_result)

    async def _start_scanner(self, on_found: Callable[[BLEDevice], None]) -> BleakScanner:
        def _detected(device: BLEDevice, advertisement_data):
            if not _advertises(advertisement_data.service_uuids, self.service_uuids):
                return
            key = sanitize_address(device.address)
            with self._lock:
                if not self._active or key in self._seen:
                    return
                self._seen.add(key)
            logger.debug(
                "Proxy candidate %s (%s) rssi=%s",
                device.address,
                device.name,
                advertisement_data.rssi,
            )
            on_found(device)

        scanner = BleakScanner(
            detection_callback=_detected,
            service_uuids=list(self.service_uuids),
            scanning_mode="active",
        )
        await scanner.start()
        return scanner

    @staticmethod
    def _log_stop_result(future):
        if not future.cancelled() and future.exception() is not None:
            logger.debug("Error stopping proxy scan: %s", future.exception())


__all__ = ["ProxyScanner", "parse_scan_response"]
