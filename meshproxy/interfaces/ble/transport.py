"""GATT transport state machine for a Mesh Proxy link."""

from typing import Optional

from meshproxy.interfaces.ble.constants import (
    CLIENT_CHARACTERISTIC_CONFIG_UUID,
    ERROR_CHARACTERISTIC_MISSING,
    ERROR_CONNECTION_EXCEPTION,
    ERROR_CONNECTION_FAILED,
    ERROR_LINK_DROPPED,
    ERROR_NOTIFICATIONS_FAILED,
    ERROR_NOTIFICATIONS_NOT_STARTED,
    ERROR_PERMISSION_DENIED,
    ERROR_SERVICE_DISCOVERY_FAILED,
    ERROR_SERVICE_DISCOVERY_NOT_STARTED,
    ERROR_SERVICE_MISSING,
    GATT_SUCCESS,
    MESH_PROXY_SERVICE_UUID,
    MTU_FALLBACK_TIMER,
    PROXY_DATA_IN_UUID,
    PROXY_DATA_OUT_UUID,
    SERVICE_DISCOVERY_TIMER,
    BLEConfig,
    logger,
)
from meshproxy.interfaces.ble.coordination import ThreadCoordinator
from meshproxy.interfaces.ble.driver import LinkDriver, find_service
from meshproxy.interfaces.ble.errors import (
    BLEErrorHandler,
    classify_exception,
    classify_status,
)
from meshproxy.interfaces.ble.events import (
    Connected,
    Disconnected,
    Error,
    EventChannel,
    FrameReceived,
    ServicesReady,
    StateChanged,
)
from meshproxy.interfaces.ble.exceptions import ErrorKind, SendResult
from meshproxy.interfaces.ble.state import (
    SETUP_STATES,
    BLEStateManager,
    ConnectionState,
    FailureReason,
    LinkHandle,
)
from meshproxy.interfaces.ble.utils import hexstr, same_address


class _LinkCallbacks:
    """Routes driver callbacks for one attempt back into the transport, tagged with its handle."""

    def __init__(self, transport: "GattTransport", handle: LinkHandle):
        self._transport = transport
        self._handle = handle

    def on_link_established(self):
        self._transport._on_link_established(self._handle)

    def on_link_failed(self, status, error=None):
        self._transport._on_link_failed(self._handle, status, error)

    def on_link_dropped(self, status):
        self._transport._on_link_dropped(self._handle, status)

    def on_mtu_changed(self, mtu, status):
        self._transport._on_mtu_changed(self._handle, mtu, status)

    def on_services_discovered(self, status, services):
        self._transport._on_services_discovered(self._handle, status, services)

    def on_descriptor_written(self, status):
        self._transport._on_descriptor_written(self._handle, status)

    def on_notification(self, data):
        self._transport._on_notification(self._handle, data)


class GattTransport:
    """
    Owns one proxy link and walks it from IDLE to READY.

    The sequence is connect, MTU negotiation, service discovery and notification
    enablement. Progress is driven entirely by driver callbacks; no public method
    blocks waiting for the radio. Every transition runs under the state manager's
    lock, and callbacks carrying a handle other than the live one are dropped, so a
    late event from a torn-down attempt can never move the current one.

    Events (Connected, ServicesReady, Disconnected, FrameReceived, Error and
    StateChanged) are published on ``events``.
    """

    def __init__(
        self,
        driver: LinkDriver,
        events: Optional[EventChannel] = None,
        coordinator: Optional[ThreadCoordinator] = None,
        *,
        strict_notification_ack: bool = False,
        mtu_request: int = BLEConfig.MTU_REQUEST_SIZE,
        mtu_fallback_delay: float = BLEConfig.MTU_DISPATCH_FALLBACK_DELAY,
        service_discovery_delay: float = BLEConfig.SERVICE_DISCOVERY_DELAY,
    ):
        self.driver = driver
        self.events = events if events is not None else EventChannel()
        self.coordinator = coordinator if coordinator is not None else ThreadCoordinator()
        self.strict_notification_ack = strict_notification_ack
        self.mtu_request = mtu_request
        self.mtu_fallback_delay = mtu_fallback_delay
        self.service_discovery_delay = service_discovery_delay

        self._state = BLEStateManager()
        self._serial = 0
        self._mtu = BLEConfig.MTU_MINIMUM
        self._mtu_recorded = False
        self._connected_emitted = False
        self._released = True
        self._frame_sink: Optional[str] = None
        self._notify_source: Optional[str] = None

    @property
    def state(self) -> ConnectionState:
        return self._state.state

    @property
    def is_ready(self) -> bool:
        return self._state.is_ready

    @property
    def address(self) -> Optional[str]:
        """Address of the live link, or None when idle."""
        handle = self._state.handle
        return handle.address if handle else None

    @property
    def last_serial(self) -> int:
        """Serial of the most recent connection attempt; 0 before the first."""
        with self._state.lock:
            return self._serial

    @property
    def failure_reason(self) -> Optional[FailureReason]:
        return self._state.failure_reason

    def current_mtu(self) -> int:
        """Last negotiated MTU, or the link minimum when none was negotiated."""
        with self._state.lock:
            return self._mtu

    def connect(self, device_id: str) -> None:
        """
        Begin connecting to ``device_id``. Returns immediately; progress is reported as events.

        A connect to the target already being set up (or already ready) is ignored.
        Any other live link is torn down first.

        Raises:
            ValueError: If ``device_id`` is empty.
        """
        address = device_id.strip() if device_id else ""
        if not address:
            raise ValueError("device_id must be a non-empty address")

        with self._state.lock:
            state, handle = self._state.snapshot()
            if (
                handle is not None
                and same_address(handle.address, address)
                and (state in SETUP_STATES or state == ConnectionState.READY)
            ):
                logger.debug(
                    "connect(%s) ignored: link already %s", address, state.value
                )
                return
            if handle is not None or state != ConnectionState.IDLE:
                logger.debug("Tearing down previous link before connecting to %s", address)
                self.disconnect()

            self._serial += 1
            handle = LinkHandle(address, self._serial)
            self._mtu = BLEConfig.MTU_MINIMUM
            self._mtu_recorded = False
            self._connected_emitted = False
            self._released = False
            self._frame_sink = None
            self._notify_source = None
            self._transition(ConnectionState.CONNECTING, handle)
            logger.info("Connecting to %s", address)
            try:
                self.driver.open(address, _LinkCallbacks(self, handle))
            except Exception as e:  # noqa: BLE001 - any driver error fails this attempt
                self._on_link_failed(handle, None, e)

    def send(self, data: bytes) -> SendResult:
        """
        Hand one frame to the radio stack as a write without response.

        Returns:
            SendResult: ACCEPTED when the stack took the write, NOT_READY outside READY,
            WRITE_REJECTED when the stack refused it. Peer delivery is never confirmed.
        """
        with self._state.lock:
            if not self._state.is_ready or self._frame_sink is None:
                logger.debug("Dropping %d byte frame: transport not ready", len(data))
                return SendResult.NOT_READY
            sink = self._frame_sink
            payload = bytes(data)
            accepted = BLEErrorHandler.safe_execute(
                lambda: self.driver.write_without_response(sink, payload),
                default_return=False,
                error_msg="Error writing to Data In",
            )
            if not accepted:
                logger.warning("Radio stack rejected a %d byte write", len(payload))
                return SendResult.WRITE_REJECTED
            logger.debug("Sent %d bytes: %s", len(payload), hexstr(payload))
            return SendResult.ACCEPTED

    def disconnect(self) -> None:
        """Tear the link down from any state. Safe to call repeatedly."""
        with self._state.lock:
            state, handle = self._state.snapshot()
            if state == ConnectionState.IDLE and handle is None:
                logger.debug("disconnect() ignored: already idle")
                return
            if state == ConnectionState.DISCONNECTING:
                return
            address = handle.address if handle else ""
            serial = handle.serial if handle else 0
            self._transition(ConnectionState.DISCONNECTING)
            self._release()
            was_connected = self._connected_emitted
            self._connected_emitted = False
            self._transition(ConnectionState.IDLE)
            logger.info("Disconnected from %s", address)
            if was_connected:
                self.events.emit(Disconnected(address, serial, requested=True))

    def close(self) -> None:
        """Disconnect and cancel anything still scheduled on the coordinator."""
        self.disconnect()
        self.coordinator.cancel_timers(MTU_FALLBACK_TIMER, SERVICE_DISCOVERY_TIMER)

    def _transition(self, new_state: ConnectionState, handle: Optional[LinkHandle] = None) -> bool:
        with self._state.lock:
            old_state, current = self._state.snapshot()
            if not self._state.transition_to(new_state, handle):
                return False
            bound = handle or current
            address = bound.address if bound else ""
            serial = bound.serial if bound else 0
            self.events.emit(StateChanged(address, serial, old=old_state, new=new_state))
            return True

    def _accept(self, handle: LinkHandle, *states: ConnectionState) -> bool:
        """True when ``handle`` is the live link and the machine is in one of ``states``."""
        state, current = self._state.snapshot()
        if current != handle:
            logger.debug("Ignoring callback for stale link %s#%d", handle.address, handle.serial)
            return False
        if state not in states:
            logger.debug("Ignoring callback in state %s", state.value)
            return False
        return True

    def _release(self) -> None:
        """Release the live link exactly once."""
        if self._released:
            return
        self._released = True
        self.coordinator.cancel_timers(MTU_FALLBACK_TIMER, SERVICE_DISCOVERY_TIMER)
        self._frame_sink = None
        self._notify_source = None
        BLEErrorHandler.safe_cleanup(self.driver.close, "link release")

    def _fail(
        self,
        handle: LinkHandle,
        kind: ErrorKind,
        message: str,
        status: Optional[int] = None,
    ) -> None:
        with self._state.lock:
            old_state = self._state.state
            if not self._state.fail(kind, message, status):
                return
            self.events.emit(
                StateChanged(handle.address, handle.serial, old=old_state, new=ConnectionState.FAILED)
            )
            self._release()
            self._connected_emitted = False
            self._transition(ConnectionState.IDLE)
            logger.warning("Connection to %s failed: %s", handle.address, message)
            self.events.emit(
                Error(handle.address, handle.serial, message=message, kind=kind, status=status)
            )

    def _record_mtu(self, mtu: Optional[int]) -> None:
        if self._mtu_recorded:
            return
        self._mtu_recorded = True
        # Never below the link minimum, never above what was requested
        self._mtu = max(min(mtu or 0, self.mtu_request), BLEConfig.MTU_MINIMUM)
        logger.debug("Using MTU %d", self._mtu)

    def _on_link_established(self, handle: LinkHandle) -> None:
        with self._state.lock:
            if not self._accept(handle, ConnectionState.CONNECTING):
                return
            self._transition(ConnectionState.NEGOTIATING_MTU)
            self._connected_emitted = True
            self.events.emit(Connected(handle.address, handle.serial))
            dispatched = BLEErrorHandler.safe_execute(
                lambda: self.driver.request_mtu(self.mtu_request),
                default_return=False,
                error_msg="Error requesting MTU",
            )
            if not dispatched:
                logger.debug(
                    "MTU request not dispatched; continuing in %.1fs",
                    self.mtu_fallback_delay,
                )
                self.coordinator.schedule_timer(
                    MTU_FALLBACK_TIMER,
                    self.mtu_fallback_delay,
                    lambda: self._on_mtu_fallback(handle),
                )

    def _on_mtu_fallback(self, handle: LinkHandle) -> None:
        with self._state.lock:
            if not self._accept(handle, ConnectionState.NEGOTIATING_MTU):
                return
            self._record_mtu(None)
            self._begin_discovery(handle)

    def _on_mtu_changed(self, handle: LinkHandle, mtu: int, status: int) -> None:
        with self._state.lock:
            if not self._accept(handle, ConnectionState.NEGOTIATING_MTU):
                return
            self.coordinator.cancel_timer(MTU_FALLBACK_TIMER)
            if status == GATT_SUCCESS:
                self._record_mtu(mtu)
            else:
                logger.warning("MTU negotiation failed (status %s), using minimum", status)
                self._record_mtu(None)
            self._begin_discovery(handle)

    def _begin_discovery(self, handle: LinkHandle) -> None:
        self._transition(ConnectionState.DISCOVERING_SERVICES)
        if self.service_discovery_delay > 0:
            self.coordinator.schedule_timer(
                SERVICE_DISCOVERY_TIMER,
                self.service_discovery_delay,
                lambda: self._dispatch_discovery(handle),
            )
        else:
            self._dispatch_discovery(handle)

    def _dispatch_discovery(self, handle: LinkHandle) -> None:
        with self._state.lock:
            if not self._accept(handle, ConnectionState.DISCOVERING_SERVICES):
                return
            started = BLEErrorHandler.safe_execute(
                self.driver.discover_services,
                default_return=False,
                error_msg="Error starting service discovery",
            )
            if not started:
                self._fail(handle, ErrorKind.LINK_FAILURE, ERROR_SERVICE_DISCOVERY_NOT_STARTED)

    def _on_services_discovered(self, handle: LinkHandle, status: int, services) -> None:
        with self._state.lock:
            if not self._accept(handle, ConnectionState.DISCOVERING_SERVICES):
                return
            self.coordinator.cancel_timer(SERVICE_DISCOVERY_TIMER)
            if status != GATT_SUCCESS:
                self._fail(
                    handle,
                    classify_status(status),
                    ERROR_SERVICE_DISCOVERY_FAILED.format(status),
                    status,
                )
                return
            service = find_service(services, MESH_PROXY_SERVICE_UUID)
            if service is None:
                self._fail(handle, ErrorKind.SERVICE_MISSING, ERROR_SERVICE_MISSING)
                return
            for uuid in (PROXY_DATA_IN_UUID, PROXY_DATA_OUT_UUID):
                if service.get_characteristic(uuid) is None:
                    self._fail(
                        handle,
                        ErrorKind.SERVICE_MISSING,
                        ERROR_CHARACTERISTIC_MISSING.format(uuid),
                    )
                    return
            data_out = service.get_characteristic(PROXY_DATA_OUT_UUID)
            if CLIENT_CHARACTERISTIC_CONFIG_UUID not in data_out.descriptors:
                # Some stacks hide the CCCD; the driver writes it implicitly
                logger.debug("Data Out CCCD not listed by the radio stack")

            self._notify_source = PROXY_DATA_OUT_UUID
            self._transition(ConnectionState.ENABLING_NOTIFICATIONS)
            dispatched = BLEErrorHandler.safe_execute(
                lambda: self.driver.enable_notifications(
                    PROXY_DATA_OUT_UUID, CLIENT_CHARACTERISTIC_CONFIG_UUID
                ),
                default_return=False,
                error_msg="Error enabling notifications",
            )
            if not dispatched:
                self._fail(handle, ErrorKind.LINK_FAILURE, ERROR_NOTIFICATIONS_NOT_STARTED)
                return
            if not self.strict_notification_ack:
                self._become_ready(handle)

    def _on_descriptor_written(self, handle: LinkHandle, status: int) -> None:
        with self._state.lock:
            state, current = self._state.snapshot()
            if current != handle:
                return
            if status != GATT_SUCCESS:
                if state == ConnectionState.ENABLING_NOTIFICATIONS:
                    self._fail(
                        handle,
                        classify_status(status),
                        ERROR_NOTIFICATIONS_FAILED.format(status),
                        status,
                    )
                elif state == ConnectionState.READY:
                    logger.warning("Enabling notifications failed after ready (status %s)", status)
                return
            if state == ConnectionState.ENABLING_NOTIFICATIONS:
                self._become_ready(handle)
            else:
                logger.debug("Notification enable acknowledged")

    def _become_ready(self, handle: LinkHandle) -> None:
        if not self._transition(ConnectionState.READY):
            return
        self._frame_sink = PROXY_DATA_IN_UUID
        self.coordinator.cancel_timers(MTU_FALLBACK_TIMER, SERVICE_DISCOVERY_TIMER)
        logger.info("Proxy link to %s ready (MTU %d)", handle.address, self._mtu)
        self.events.emit(ServicesReady(handle.address, handle.serial, mtu=self._mtu))

    def _on_notification(self, handle: LinkHandle, data) -> None:
        with self._state.lock:
            if not self._accept(
                handle, ConnectionState.ENABLING_NOTIFICATIONS, ConnectionState.READY
            ):
                return
            frame = bytes(data)
            logger.debug(
                "Received %d bytes on %s: %s", len(frame), self._notify_source, hexstr(frame)
            )
            self.events.emit(FrameReceived(handle.address, handle.serial, data=frame))

    def _on_link_failed(
        self,
        handle: LinkHandle,
        status: Optional[int],
        error: Optional[BaseException] = None,
    ) -> None:
        with self._state.lock:
            if not self._accept(handle, ConnectionState.CONNECTING):
                return
            if error is not None:
                kind = classify_exception(error)
                message = ERROR_CONNECTION_EXCEPTION.format(error)
            else:
                kind = classify_status(status)
                message = ERROR_CONNECTION_FAILED.format(status)
            if kind is ErrorKind.PERMISSION_DENIED:
                message = ERROR_PERMISSION_DENIED
            self._fail(handle, kind, message, status)

    def _on_link_dropped(self, handle: LinkHandle, status: Optional[int]) -> None:
        with self._state.lock:
            state, current = self._state.snapshot()
            if current != handle:
                return
            if state == ConnectionState.READY:
                self._release()
                self._connected_emitted = False
                self._transition(ConnectionState.IDLE)
                logger.info("Link to %s dropped (status %s)", handle.address, status)
                self.events.emit(Disconnected(handle.address, handle.serial, requested=False))
            elif state in SETUP_STATES:
                if self._connected_emitted:
                    self._connected_emitted = False
                    self.events.emit(Disconnected(handle.address, handle.serial, requested=False))
                self._fail(
                    handle,
                    classify_status(status),
                    ERROR_LINK_DROPPED.format(status),
                    status,
                )


__all__ = ["GattTransport"]
