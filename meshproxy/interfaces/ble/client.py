"""BLE client management and async operations."""

import asyncio
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from threading import Thread
from typing import List, Optional

from bleak import BleakClient as BleakRootClient
from bleak import BleakScanner

from meshproxy.interfaces.ble.constants import (
    BLECLIENT_ERROR_ASYNC_TIMEOUT,
    ERROR_TIMEOUT,
    GATT_ERROR,
    GATT_SUCCESS,
    BLEConfig,
    logger,
)
from meshproxy.interfaces.ble.driver import GattCharacteristic, GattService, LinkCallbacks
from meshproxy.interfaces.ble.errors import BLEErrorHandler
from meshproxy.interfaces.ble.exceptions import BLEError
from meshproxy.interfaces.ble.utils import hexstr


def _convert_services(services) -> List[GattService]:
    """Snapshot a bleak service collection into plain GattService records."""
    converted = []
    for service in services or ():
        characteristics = {}
        for characteristic in service.characteristics:
            uuid = str(characteristic.uuid).lower()
            characteristics[uuid] = GattCharacteristic(
                uuid,
                frozenset(str(d.uuid).lower() for d in characteristic.descriptors),
            )
        converted.append(GattService(str(service.uuid).lower(), characteristics))
    return converted


class BLEClient:
    """
    Bleak-backed LinkDriver with thread-safe async operations.

    Bleak is asyncio-only, so this class runs an internal event loop in a dedicated
    thread. Link requests (open, request_mtu, discover_services, enable_notifications,
    write_without_response, close) schedule a coroutine on that loop and return at
    once; outcomes are reported through the LinkCallbacks passed to open(). Only one
    link is live per client: a callback from a bleak client that has since been
    replaced or closed is dropped.
    """

    @staticmethod
    async def _with_timeout(awaitable, timeout: Optional[float], label: str):
        """
        Await an awaitable, applying an optional timeout.

        Raises:
            BLEError: If the awaitable does not complete before the timeout elapses.
        """
        if timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise BLEError(ERROR_TIMEOUT.format(label, timeout)) from exc

    def __init__(
        self,
        *,
        connect_timeout: float = BLEConfig.CONNECTION_TIMEOUT,
        io_timeout: float = BLEConfig.GATT_IO_TIMEOUT,
        **kwargs,
    ) -> None:
        """
        Create the client and start its background event loop thread.

        Parameters:
            connect_timeout (float): Seconds allowed for bleak's connect() before the attempt fails.
            io_timeout (float): Seconds allowed for MTU exchange and notification enablement.
            **kwargs: Forwarded to the BleakClient constructor for every opened link (for example ``adapter``).
        """
        self.error_handler = BLEErrorHandler()
        self.connect_timeout = connect_timeout
        self.io_timeout = io_timeout
        self._client_kwargs = kwargs

        self.bleak_client: Optional[BleakRootClient] = None
        self._callbacks: Optional[LinkCallbacks] = None
        # Create dedicated event loop for this client instance
        self._eventLoop = asyncio.new_event_loop()
        self._eventThread = Thread(
            target=self._run_event_loop, name="BLEClient", daemon=True
        )
        try:
            self._eventThread.start()
        except RuntimeError:
            self._eventLoop.close()
            raise

    def discover(self, **kwargs):  # pylint: disable=C0116
        """
        Scan for nearby BLE devices and wait for the result.

        Keyword arguments are forwarded to BleakScanner.discover (for example `timeout`,
        `return_adv` or `service_uuids`).
        """
        return self.async_await(BleakScanner.discover(**kwargs))

    def open(self, address: str, callbacks: LinkCallbacks) -> None:
        """Start connecting to ``address``; the outcome arrives via ``callbacks``."""
        self.close()
        client = BleakRootClient(
            address,
            disconnected_callback=lambda c: self._on_bleak_disconnect(c, callbacks),
            **self._client_kwargs,
        )
        self.bleak_client = client
        self._callbacks = callbacks
        if self._dispatch(self._connect(client, callbacks)) is None:
            raise BLEError("BLE event loop is not running")

    def request_mtu(self, size: int) -> bool:
        client, callbacks = self.bleak_client, self._callbacks
        if client is None or callbacks is None:
            return False
        return self._dispatch(self._negotiate_mtu(client, callbacks, size)) is not None

    def discover_services(self) -> bool:
        client, callbacks = self.bleak_client, self._callbacks
        if client is None or callbacks is None:
            return False
        return self._dispatch(self._discover_services(client, callbacks)) is not None

    def enable_notifications(self, char_uuid: str, descriptor_uuid: str) -> bool:
        """Subscribe to ``char_uuid``; bleak writes the CCCD (``descriptor_uuid``) itself."""
        client, callbacks = self.bleak_client, self._callbacks
        if client is None or callbacks is None:
            return False
        logger.debug("Enabling notifications on %s via %s", char_uuid, descriptor_uuid)
        return (
            self._dispatch(self._start_notify(client, callbacks, char_uuid)) is not None
        )

    def write_without_response(self, char_uuid: str, data: bytes) -> bool:
        """Queue a write-without-response; True means the write was handed to bleak."""
        client = self.bleak_client
        if client is None:
            return False
        future = self._dispatch(client.write_gatt_char(char_uuid, data, response=False))
        if future is None:
            return False
        future.add_done_callback(lambda f: self._log_write_result(f, data))
        return True

    def close(self) -> None:
        """Release the live link, if any, without reporting it as a drop."""
        client = self.bleak_client
        self.bleak_client = None
        self._callbacks = None
        if client is not None:
            self._dispatch(self._quiet_disconnect(client))

    def shutdown(self):  # pylint: disable=C0116
        """
        Release the link and stop the client's asyncio event loop and its background thread.

        Waits up to BLECLIENT_EVENT_THREAD_JOIN_TIMEOUT for the thread to exit and logs
        a warning if it does not.
        """
        self.close()
        if self._dispatch(self._stop_event_loop()) is None:
            return
        self._eventThread.join(timeout=BLEConfig.BLECLIENT_EVENT_THREAD_JOIN_TIMEOUT)
        if self._eventThread.is_alive():
            logger.warning(
                "BLE event thread did not exit within %.1fs",
                BLEConfig.BLECLIENT_EVENT_THREAD_JOIN_TIMEOUT,
            )

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.shutdown()

    def async_await(self, coro, timeout=None):  # pylint: disable=C0116
        """
        Wait for the given coroutine to complete on the client's event loop and return its result.

        If the coroutine does not finish within `timeout` seconds the pending task is
        cancelled and a BLEError is raised. Bleak exceptions propagate unchanged.
        """
        future = self.async_run(coro)
        try:
            return future.result(timeout)
        except (FutureTimeoutError, RuntimeError) as e:
            future.cancel()
            # Consume any late exceptions to avoid "Task exception was never retrieved"
            future.add_done_callback(
                lambda f: f.exception() if not f.cancelled() else None
            )
            raise BLEError(BLECLIENT_ERROR_ASYNC_TIMEOUT) from e

    def async_run(self, coro) -> Future:  # pylint: disable=C0116
        """Schedule a coroutine on the client's internal asyncio event loop."""
        return asyncio.run_coroutine_threadsafe(coro, self._eventLoop)

    def _dispatch(self, coro) -> Optional[Future]:
        """Schedule ``coro`` without waiting; returns None (and discards it) when the loop is gone."""
        if not self._eventThread.is_alive() or self._eventLoop.is_closed():
            coro.close()
            logger.debug("BLE event loop not running; request dropped")
            return None
        return self.async_run(coro)

    def _is_current(self, client) -> bool:
        return client is self.bleak_client

    async def _connect(self, client, callbacks: LinkCallbacks):
        try:
            await self._with_timeout(client.connect(), self.connect_timeout, "Connect")
        except Exception as e:  # noqa: BLE001 - reported to the transport as a link failure
            logger.debug("Connect to %s failed: %s", client.address, e)
            if self._is_current(client):
                callbacks.on_link_failed(None, e)
            return
        if self._is_current(client):
            callbacks.on_link_established()
        else:
            await self._quiet_disconnect(client)

    async def _negotiate_mtu(self, client, callbacks: LinkCallbacks, size: int):
        status = GATT_SUCCESS
        # BlueZ only learns the MTU after an explicit exchange
        acquire = getattr(getattr(client, "_backend", None), "_acquire_mtu", None)
        if acquire is not None:
            # TODO: Replace this private backend access if bleak adds a public MTU exchange API.
            try:
                await self._with_timeout(acquire(), self.io_timeout, "MTU exchange")
            except Exception as e:  # noqa: BLE001 - negotiation failure keeps the minimum MTU
                logger.debug("MTU exchange failed: %s", e)
                status = GATT_ERROR
        mtu = self.error_handler.safe_execute(
            lambda: client.mtu_size,
            default_return=BLEConfig.MTU_MINIMUM,
            error_msg="Unable to read negotiated MTU",
        )
        if self._is_current(client):
            callbacks.on_mtu_changed(min(mtu, size), status)

    async def _discover_services(self, client, callbacks: LinkCallbacks):
        # bleak resolves services during connect(); this only snapshots them
        try:
            services = _convert_services(client.services)
            status = GATT_SUCCESS
        except Exception as e:  # noqa: BLE001 - reported as a discovery error status
            logger.debug("Service discovery failed: %s", e)
            services, status = [], GATT_ERROR
        if self._is_current(client):
            callbacks.on_services_discovered(status, services)

    async def _start_notify(self, client, callbacks: LinkCallbacks, char_uuid: str):
        def _on_notify(_sender, data: bytearray):
            if self._is_current(client):
                callbacks.on_notification(bytes(data))

        status = GATT_SUCCESS
        try:
            await self._with_timeout(
                client.start_notify(char_uuid, _on_notify),
                self.io_timeout,
                "Notification enable",
            )
        except Exception as e:  # noqa: BLE001 - reported as a descriptor write status
            logger.warning("Enabling notifications on %s failed: %s", char_uuid, e)
            status = GATT_ERROR
        if self._is_current(client):
            callbacks.on_descriptor_written(status)

    async def _quiet_disconnect(self, client):
        try:
            await self._with_timeout(client.disconnect(), self.io_timeout, "Disconnect")
        except Exception as e:  # noqa: BLE001 - link is being discarded anyway
            logger.debug("Error disconnecting %s: %s", client.address, e)

    def _on_bleak_disconnect(self, client, callbacks: LinkCallbacks):
        if not self._is_current(client):
            return
        logger.debug("bleak reported disconnect from %s", client.address)
        self.bleak_client = None
        self._callbacks = None
        callbacks.on_link_dropped(None)

    @staticmethod
    def _log_write_result(future: Future, data: bytes):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning("Write of %s failed: %s", hexstr(data), error)

    def _run_event_loop(self):
        """Run the client's asyncio event loop in the background thread until it is stopped."""
        self.error_handler.safe_execute(
            self._eventLoop.run_forever, error_msg="Error in event loop", reraise=False
        )
        self._eventLoop.close()  # Clean up resources when loop stops

    async def _stop_event_loop(self):
        self._eventLoop.stop()


__all__ = ["BLEClient"]
