"""Retry loop and saved-address policy on top of GattTransport."""

from threading import RLock
from typing import Callable, Optional

from meshproxy.interfaces.ble.constants import (
    PROXY_DISCOVERY_TIMER,
    RETRY_BACKOFF_TIMER,
    STATUS_CONNECTING,
    STATUS_CONNECTING_SAVED,
    STATUS_DISCONNECTED,
    STATUS_DISCOVERING,
    STATUS_ENABLING,
    STATUS_LINK_LOST,
    STATUS_LINK_UP,
    STATUS_NO_PROXY,
    STATUS_NO_SAVED_PROXY,
    STATUS_READY,
    STATUS_RETRYING,
    STATUS_SCAN_FAILED,
    STATUS_SEARCHING,
    STATUS_TERMINAL_FAILURE,
    BLEConfig,
    logger,
)
from meshproxy.interfaces.ble.coordination import ThreadCoordinator
from meshproxy.interfaces.ble.errors import BLEErrorHandler
from meshproxy.interfaces.ble.events import (
    Disconnected,
    Error,
    ServicesReady,
    StateChanged,
    TransportEvent,
)
from meshproxy.interfaces.ble.exceptions import ErrorKind
from meshproxy.interfaces.ble.policies import RetryBudget
from meshproxy.interfaces.ble.state import ConnectionState
from meshproxy.interfaces.ble.transport import GattTransport
from meshproxy.interfaces.ble.utils import same_address
from meshproxy.storage import AddressStore

_STATE_STATUS = {
    ConnectionState.NEGOTIATING_MTU: STATUS_LINK_UP,
    ConnectionState.DISCOVERING_SERVICES: STATUS_DISCOVERING,
    ConnectionState.ENABLING_NOTIFICATIONS: STATUS_ENABLING,
}


class ConnectionSupervisor:
    """
    Keeps trying to bring a GattTransport to READY for one target.

    A caller-initiated connect() starts a sequence with a fresh RetryBudget. Each
    retryable Error before READY schedules another attempt after the budget's
    backoff; once the budget is spent (or on a non-retryable error) exactly one
    terminal failure is reported. The first READY of a sequence saves the address
    to the AddressStore.
    """

    def __init__(
        self,
        transport: GattTransport,
        store: AddressStore,
        scanner=None,
        coordinator: Optional[ThreadCoordinator] = None,
        budget: Optional[RetryBudget] = None,
        on_status: Optional[Callable[[str], None]] = None,
        on_terminal_failure: Optional[Callable[[Error], None]] = None,
        on_ready: Optional[Callable[[ServicesReady], None]] = None,
        *,
        discovery_timeout: float = BLEConfig.PROXY_DISCOVERY_TIMEOUT,
    ):
        self.transport = transport
        self.store = store
        self.scanner = scanner
        self.coordinator = coordinator if coordinator is not None else transport.coordinator
        self.budget = budget if budget is not None else RetryBudget()
        self.on_status = on_status
        self.on_terminal_failure = on_terminal_failure
        self.on_ready = on_ready
        self.discovery_timeout = discovery_timeout

        self._lock = RLock()
        self._target: Optional[str] = None
        self._sequence = 0
        self._first_serial = 0
        self._address_saved = False
        self._terminal_reported = False
        self._ready = False
        self._subscription = transport.events.subscribe(self._on_event)

    @property
    def target(self) -> Optional[str]:
        """Address the current sequence is trying to reach, if any."""
        with self._lock:
            return self._target

    def connect(self, address: str) -> None:
        """
        Start a new connection sequence to ``address`` with a fresh retry budget.

        If the transport is already ready on ``address`` the sequence completes at once.
        Events from attempts made before this call are ignored.
        """
        address = address.strip() if address else ""
        if not address:
            raise ValueError("address must be a non-empty BLE address")
        with self._lock:
            self.coordinator.cancel_timers(RETRY_BACKOFF_TIMER, PROXY_DISCOVERY_TIMER)
            self._sequence += 1
            self._target = address
            self._address_saved = False
            self._terminal_reported = False
            self._ready = False
            self.budget.reset()
            live = self.transport.address
            # transport.connect() adopts a live link to the same target
            same_target = live is not None and same_address(live, address)
            self._first_serial = self.transport.last_serial + (0 if same_target else 1)
            if same_target and self.transport.is_ready:
                logger.debug("Link to %s already ready", address)
                self._on_ready(
                    ServicesReady(
                        live, self._first_serial, mtu=self.transport.current_mtu()
                    )
                )
                return
            self._attempt()

    def connect_to_saved_proxy(self) -> bool:
        """
        Connect straight to the last proxy that reached READY, skipping any scan.

        Returns:
            bool: False when no address has been saved yet.
        """
        address = BLEErrorHandler.safe_execute(
            self.store.get_proxy_address,
            error_msg="Error reading saved proxy address",
        )
        if not address:
            self._post_status(STATUS_NO_SAVED_PROXY)
            return False
        self._post_status(STATUS_CONNECTING_SAVED.format(address))
        self.connect(address)
        return True

    def auto_connect(self) -> bool:
        """
        Scan for advertising proxy nodes and connect to the first one found.

        The scan stops after ``discovery_timeout`` seconds; finding nothing is reported
        as a terminal failure.

        Returns:
            bool: False when no scanner is configured or the scan could not start.
        """
        if self.scanner is None:
            logger.warning("auto_connect() needs a scanner")
            return False
        with self._lock:
            self.coordinator.cancel_timers(RETRY_BACKOFF_TIMER, PROXY_DISCOVERY_TIMER)
            self._sequence += 1
            self._target = None
            self._terminal_reported = False
            sequence = self._sequence
        self._post_status(STATUS_SEARCHING)
        # Outside the lock: detections are delivered on the scanner thread while start() waits
        started = BLEErrorHandler.safe_execute(
            lambda: self.scanner.start(
                lambda device: self._on_proxy_found(sequence, device)
            ),
            default_return=False,
            error_msg="Error starting proxy scan",
        )
        with self._lock:
            if sequence != self._sequence:
                return True
            if not started:
                self._report_terminal(
                    Error(message=STATUS_SCAN_FAILED, kind=ErrorKind.LINK_FAILURE)
                )
                return False
            self.coordinator.schedule_timer(
                PROXY_DISCOVERY_TIMER,
                self.discovery_timeout,
                lambda: self._on_discovery_timeout(sequence),
            )
            return True

    def disconnect(self) -> None:
        """Abandon the current sequence and tear the link down."""
        with self._lock:
            self._sequence += 1
            self._target = None
            self._ready = False
            self.coordinator.cancel_timers(RETRY_BACKOFF_TIMER, PROXY_DISCOVERY_TIMER)
            self._stop_scan()
        self.transport.disconnect()
        self._post_status(STATUS_DISCONNECTED)

    def close(self) -> None:
        self.disconnect()
        self.transport.events.unsubscribe(self._subscription)

    def _attempt(self) -> None:
        attempt = self.budget.record_attempt()
        self._post_status(
            STATUS_CONNECTING.format(self._target, attempt, self.budget.max_attempts)
        )
        self.transport.connect(self._target)

    def _retry(self, sequence: int) -> None:
        with self._lock:
            if sequence != self._sequence or self._target is None:
                return
            logger.debug("Retrying %s", self._target)
            self._attempt()

    def _stop_scan(self) -> None:
        if self.scanner is not None and self.scanner.is_scanning:
            BLEErrorHandler.safe_cleanup(self.scanner.stop, "proxy scan stop")

    def _on_proxy_found(self, sequence: int, device) -> None:
        with self._lock:
            if sequence != self._sequence:
                return
            self.coordinator.cancel_timer(PROXY_DISCOVERY_TIMER)
            self._stop_scan()
            logger.info("Found proxy node %s", device.address)
            self.connect(device.address)

    def _on_discovery_timeout(self, sequence: int) -> None:
        with self._lock:
            if sequence != self._sequence:
                return
            self._stop_scan()
            self._report_terminal(Error(message=STATUS_NO_PROXY, kind=ErrorKind.LINK_FAILURE))

    def _on_event(self, event: TransportEvent) -> None:
        with self._lock:
            if self._target is None or not same_address(event.address, self._target):
                return
            if event.serial < self._first_serial:
                logger.debug(
                    "Ignoring %s from earlier attempt #%d", type(event).__name__, event.serial
                )
                return
            if isinstance(event, StateChanged):
                text = _STATE_STATUS.get(event.new)
                if text:
                    self._post_status(text)
            elif isinstance(event, ServicesReady):
                self._on_ready(event)
            elif isinstance(event, Error):
                self._on_error(event)
            elif isinstance(event, Disconnected):
                if self._ready and not event.requested:
                    self._post_status(STATUS_LINK_LOST)
                self._ready = False

    def _on_ready(self, event: ServicesReady) -> None:
        self._ready = True
        self.budget.reset()
        self.coordinator.cancel_timers(RETRY_BACKOFF_TIMER, PROXY_DISCOVERY_TIMER)
        if not self._address_saved:
            self._address_saved = True
            BLEErrorHandler.safe_execute(
                lambda: self.store.save_proxy_address(event.address),
                error_msg="Error saving proxy address",
            )
        self._post_status(STATUS_READY.format(event.address))
        if self.on_ready:
            BLEErrorHandler.safe_execute(
                lambda: self.on_ready(event), error_msg="Error in ready callback"
            )

    def _on_error(self, event: Error) -> None:
        if event.kind.retryable and self.budget.should_retry():
            delay = self.budget.get_delay()
            self._post_status(STATUS_RETRYING.format(delay))
            sequence = self._sequence
            self.coordinator.schedule_timer(
                RETRY_BACKOFF_TIMER, delay, lambda: self._retry(sequence)
            )
            return
        self._report_terminal(event)

    def _report_terminal(self, event: Error) -> None:
        if self._terminal_reported:
            return
        self._terminal_reported = True
        self._target = None
        self._post_status(STATUS_TERMINAL_FAILURE.format(event.message))
        if self.on_terminal_failure:
            BLEErrorHandler.safe_execute(
                lambda: self.on_terminal_failure(event),
                error_msg="Error in terminal failure callback",
            )

    def _post_status(self, text: str) -> None:
        logger.info("%s", text)
        if self.on_status:
            BLEErrorHandler.safe_execute(
                lambda: self.on_status(text), error_msg="Error in status callback"
            )


__all__ = ["ConnectionSupervisor"]
