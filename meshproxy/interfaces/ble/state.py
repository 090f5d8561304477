"""BLE connection state management."""

from dataclasses import dataclass
from enum import Enum
from threading import RLock
from typing import Optional, Tuple

from meshproxy.interfaces.ble.constants import logger
from meshproxy.interfaces.ble.exceptions import ErrorKind


class ConnectionState(Enum):
    """States of the proxy link, from idle through negotiation to ready."""

    IDLE = "idle"
    CONNECTING = "connecting"
    NEGOTIATING_MTU = "negotiating_mtu"
    DISCOVERING_SERVICES = "discovering_services"
    ENABLING_NOTIFICATIONS = "enabling_notifications"
    READY = "ready"
    DISCONNECTING = "disconnecting"
    FAILED = "failed"


# States in which a connection attempt is underway but not yet usable
SETUP_STATES = frozenset(
    {
        ConnectionState.CONNECTING,
        ConnectionState.NEGOTIATING_MTU,
        ConnectionState.DISCOVERING_SERVICES,
        ConnectionState.ENABLING_NOTIFICATIONS,
    }
)


@dataclass(frozen=True)
class LinkHandle:
    """Opaque token for one radio connection; a new one is minted per connect()."""

    address: str
    serial: int


@dataclass(frozen=True)
class FailureReason:
    """Why the last attempt ended in FAILED."""

    kind: ErrorKind
    message: str
    status: Optional[int] = None


class BLEStateManager:
    """Thread-safe state management for the proxy link.

    A single reentrant lock guards the state, the live LinkHandle and the last
    failure reason so that every transition is applied atomically.
    """

    _VALID_TRANSITIONS = {
        ConnectionState.IDLE: {
            ConnectionState.CONNECTING,
        },
        ConnectionState.CONNECTING: {
            ConnectionState.NEGOTIATING_MTU,
            ConnectionState.DISCONNECTING,
            ConnectionState.FAILED,
            ConnectionState.IDLE,
        },
        ConnectionState.NEGOTIATING_MTU: {
            ConnectionState.DISCOVERING_SERVICES,
            ConnectionState.DISCONNECTING,
            ConnectionState.FAILED,
            ConnectionState.IDLE,
        },
        ConnectionState.DISCOVERING_SERVICES: {
            ConnectionState.ENABLING_NOTIFICATIONS,
            ConnectionState.DISCONNECTING,
            ConnectionState.FAILED,
            ConnectionState.IDLE,
        },
        ConnectionState.ENABLING_NOTIFICATIONS: {
            ConnectionState.READY,
            ConnectionState.DISCONNECTING,
            ConnectionState.FAILED,
            ConnectionState.IDLE,
        },
        ConnectionState.READY: {
            ConnectionState.DISCONNECTING,
            ConnectionState.IDLE,
        },
        ConnectionState.DISCONNECTING: {
            ConnectionState.IDLE,
        },
        ConnectionState.FAILED: {
            ConnectionState.IDLE,
        },
    }

    def __init__(self):
        """Initialize state manager in the IDLE state with no link."""
        self._state_lock = RLock()
        self._state = ConnectionState.IDLE
        self._handle: Optional[LinkHandle] = None
        self._failure: Optional[FailureReason] = None

    @property
    def lock(self) -> RLock:
        """Expose the reentrant lock controlling state transitions."""
        return self._state_lock

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        with self._state_lock:
            return self._state

    @property
    def handle(self) -> Optional[LinkHandle]:
        """Get the live link handle, if any."""
        with self._state_lock:
            return self._handle

    @property
    def failure_reason(self) -> Optional[FailureReason]:
        """Reason recorded by the most recent fail() call."""
        with self._state_lock:
            return self._failure

    @property
    def is_ready(self) -> bool:
        return self.state == ConnectionState.READY

    @property
    def is_closing(self) -> bool:
        return self.state == ConnectionState.DISCONNECTING

    @property
    def is_connecting(self) -> bool:
        return self.state in SETUP_STATES

    @property
    def can_connect(self) -> bool:
        return self.state == ConnectionState.IDLE

    def snapshot(self) -> Tuple[ConnectionState, Optional[LinkHandle]]:
        """Return state and handle read under one lock acquisition."""
        with self._state_lock:
            return self._state, self._handle

    def transition_to(
        self, new_state: ConnectionState, handle: Optional[LinkHandle] = None
    ) -> bool:
        """Thread-safe state transition with validation.

        Args:
        ----
            new_state: Target state to transition to
            handle: Link handle bound by this transition (optional)

        Returns:
        -------
            True if transition was valid and applied, False otherwise

        """
        with self._state_lock:
            if not self._is_valid_transition(self._state, new_state):
                logger.warning(
                    "Invalid state transition: %s → %s",
                    self._state.value,
                    new_state.value,
                )
                return False
            old_state = self._state
            self._state = new_state
            if handle is not None:
                self._handle = handle
            elif new_state == ConnectionState.IDLE:
                self._handle = None
            if new_state == ConnectionState.CONNECTING:
                self._failure = None
            logger.debug("State transition: %s → %s", old_state.value, new_state.value)
            return True

    def fail(
        self, kind: ErrorKind, message: str, status: Optional[int] = None
    ) -> bool:
        """Record a failure reason and move to FAILED."""
        with self._state_lock:
            if not self.transition_to(ConnectionState.FAILED):
                return False
            self._failure = FailureReason(kind, message, status)
            return True

    def _is_valid_transition(
        self, from_state: ConnectionState, to_state: ConnectionState
    ) -> bool:
        return to_state in self._VALID_TRANSITIONS.get(from_state, set())


__all__ = [
    "BLEStateManager",
    "ConnectionState",
    "FailureReason",
    "LinkHandle",
    "SETUP_STATES",
]
