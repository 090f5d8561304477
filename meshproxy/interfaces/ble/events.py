"""Transport events and the channel that delivers them."""

from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict, Optional

from meshproxy.interfaces.ble.errors import BLEErrorHandler
from meshproxy.interfaces.ble.exceptions import ErrorKind
from meshproxy.interfaces.ble.state import ConnectionState


@dataclass(frozen=True)
class TransportEvent:
    """Base class; every event names the device and the connection attempt it concerns."""

    address: str = ""
    serial: int = 0


@dataclass(frozen=True)
class Connected(TransportEvent):
    """The radio link is up; setup continues."""


@dataclass(frozen=True)
class ServicesReady(TransportEvent):
    """Setup finished, frames may now be sent."""

    mtu: int = 23


@dataclass(frozen=True)
class Disconnected(TransportEvent):
    requested: bool = False


@dataclass(frozen=True)
class FrameReceived(TransportEvent):
    data: bytes = b""


@dataclass(frozen=True)
class Error(TransportEvent):
    message: str = ""
    kind: ErrorKind = ErrorKind.LINK_FAILURE
    status: Optional[int] = None


@dataclass(frozen=True)
class StateChanged(TransportEvent):
    old: ConnectionState = ConnectionState.IDLE
    new: ConnectionState = ConnectionState.IDLE


Listener = Callable[[TransportEvent], None]


def _publishing_dispatcher(work: Callable[[], None]) -> None:
    # Looked up per call so tests can swap the module-level thread
    import meshproxy  # pylint: disable=C0415

    meshproxy.publishingThread.queueWork(work)


class EventChannel:
    """
    Fan-out of transport events to registered listeners.

    Emission never runs listeners on the caller's thread: each delivery is handed to
    ``dispatcher`` (the shared deferred publishing thread by default), so the radio
    thread is never blocked by a slow subscriber. Deliveries keep emission order.
    """

    def __init__(self, dispatcher: Optional[Callable[[Callable[[], None]], None]] = None):
        self._dispatcher = dispatcher or _publishing_dispatcher
        self._listeners: Dict[int, Listener] = {}
        self._counter = 0
        self._lock = RLock()

    def subscribe(self, listener: Listener) -> int:
        """Register a listener and return a token for unsubscribe()."""
        with self._lock:
            token = self._counter
            self._counter += 1
            self._listeners[token] = listener
            return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._listeners.pop(token, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def emit(self, event: TransportEvent) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
        if not listeners:
            return

        def _deliver():
            for listener in listeners:
                BLEErrorHandler.safe_execute(
                    lambda listener=listener: listener(event),
                    error_msg=f"Error in listener for {type(event).__name__}",
                )

        self._dispatcher(_deliver)


__all__ = [
    "Connected",
    "Disconnected",
    "Error",
    "EventChannel",
    "FrameReceived",
    "ServicesReady",
    "StateChanged",
    "TransportEvent",
]
