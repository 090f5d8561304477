"""Mesh Interface class
"""
# pylint: disable=R0902,R0904

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from pubsub import pub

from meshproxy import publishingThread
from meshproxy.interfaces.ble.client import BLEClient
from meshproxy.interfaces.ble.constants import (
    ERROR_TIMEOUT,
    STATUS_NO_SAVED_PROXY,
    STATUS_SCAN_FAILED,
)
from meshproxy.interfaces.ble.coordination import ThreadCoordinator
from meshproxy.interfaces.ble.discovery import ProxyScanner
from meshproxy.interfaces.ble.events import (
    Disconnected,
    Error,
    EventChannel,
    FrameReceived,
    ServicesReady,
    TransportEvent,
)
from meshproxy.interfaces.ble.exceptions import (
    ConnectionFailedError,
    LinkFailureError,
    SendResult,
    connection_error_for,
)
from meshproxy.interfaces.ble.policies import RetryBudget
from meshproxy.interfaces.ble.supervisor import ConnectionSupervisor
from meshproxy.interfaces.ble.transport import GattTransport
from meshproxy.sensor_decoder import SensorReading, SensorTelemetryDecoder
from meshproxy.storage import AddressStore, JsonAddressStore

logger = logging.getLogger(__name__)

CONNECTION_SETTLED_EVENT = "connection_settled"

STATUS_NOT_CONNECTED = "Not connected to a proxy node"
STATUS_PDU_SEND_FAILED = "PDU send failed"
STATUS_SENT = "Sent: {0}"
STATUS_SEND_FAILED = "Send failed: {0}"
STATUS_READ_TEMPERATURE_FAILED = "Read temperature failed: {0}"
STATUS_NO_MESH_STACK = "No mesh stack configured"


@dataclass(frozen=True)
class GenericLevelSetUnacknowledged:
    """Generic Level Set Unacknowledged access message."""

    level: int
    tid: int


@dataclass(frozen=True)
class SensorGet:
    """Sensor Get access message; ``property_id`` None asks for every property."""

    property_id: Optional[int] = None


class MeshStack(Protocol):
    """
    The external mesh networking stack: network/transport layers, keys and segmentation.

    It is handed proxy PDUs from the link and asked to build PDUs for outgoing access
    messages. In return it calls the registered callbacks object's
    ``on_mesh_pdu_created(pdu)``, ``on_sensor_status(src, params)`` and ``get_mtu()``.
    """

    def set_callbacks(self, callbacks) -> None: ...

    def handle_notifications(self, mtu: int, data: bytes) -> None: ...

    def create_mesh_pdu(self, dst: int, message) -> None: ...


class MeshInterface:
    """Interface class for talking to a Bluetooth Mesh network through a proxy node.

    Owns the proxy link (GattTransport under a ConnectionSupervisor), relays PDUs
    between the link and the mesh stack, decodes sensor telemetry and publishes
    progress on pubsub.
    """

    def __init__(
        self,
        transport: GattTransport,
        mesh_stack: Optional[MeshStack] = None,
        store: Optional[AddressStore] = None,
        scanner: Optional[ProxyScanner] = None,
        decoder: Optional[SensorTelemetryDecoder] = None,
        budget: Optional[RetryBudget] = None,
    ) -> None:
        """
        Wire the transport, supervisor and mesh stack together.

        Parameters:
            transport (GattTransport): The proxy link.
            mesh_stack (Optional[MeshStack]): Stack that encodes and decodes mesh PDUs; without one only the link is managed.
            store (Optional[AddressStore]): Where the last good proxy address is kept; defaults to the JSON preferences file.
            scanner (Optional[ProxyScanner]): Needed for auto_connect().
            decoder (Optional[SensorTelemetryDecoder]): Sensor Status decoder.
            budget (Optional[RetryBudget]): Retry budget for connection sequences.
        """
        self.transport = transport
        self.mesh_stack = mesh_stack
        self.store: AddressStore = store if store is not None else JsonAddressStore()
        self.decoder = decoder if decoder is not None else SensorTelemetryDecoder()
        self.isConnected: threading.Event = threading.Event()
        self.failure: Optional[ConnectionFailedError] = None
        self.temperatures: Dict[int, float] = {}
        self.currentTid: int = 0
        self._client: Optional[BLEClient] = None
        self._lock = threading.RLock()
        self._coordinator: ThreadCoordinator = transport.coordinator
        self._coordinator.create_event(CONNECTION_SETTLED_EVENT)

        self.supervisor = ConnectionSupervisor(
            transport,
            self.store,
            scanner=scanner,
            budget=budget,
            on_status=self._post_status,
            on_terminal_failure=self._on_terminal_failure,
            on_ready=self._on_sequence_ready,
        )
        self._subscription = transport.events.subscribe(self._on_transport_event)
        if mesh_stack is not None:
            mesh_stack.set_callbacks(self)

    @classmethod
    def create(
        cls,
        mesh_stack: Optional[MeshStack] = None,
        store: Optional[AddressStore] = None,
        *,
        strict_notification_ack: bool = False,
        **client_kwargs,
    ) -> "MeshInterface":
        """Build an interface over a bleak BLEClient; extra keyword arguments go to the client."""
        client = BLEClient(**client_kwargs)
        transport = GattTransport(
            client,
            EventChannel(),
            ThreadCoordinator(),
            strict_notification_ack=strict_notification_ack,
        )
        iface = cls(transport, mesh_stack, store, scanner=ProxyScanner(client))
        iface._client = client
        return iface

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, trace):
        if exc_type is not None and exc_value is not None:
            logger.error(f"An exception of type {exc_type} with value {exc_value} has occurred")
        self.close()

    def close(self):
        """Shut down the link, the supervisor's timers and, when owned, the BLE client."""
        self.supervisor.close()
        self.transport.close()
        self.transport.events.unsubscribe(self._subscription)
        if self._client is not None:
            self._client.shutdown()
            self._client = None
        self._coordinator.cleanup()

    def connect(self, address: str) -> None:
        """Connect to the proxy node at ``address``, retrying link failures."""
        self._begin_sequence()
        self.supervisor.connect(address)

    def connect_to_saved_proxy(self) -> bool:
        """Connect to the last proxy that reached ready; False if none is saved."""
        self._begin_sequence()
        if self.supervisor.connect_to_saved_proxy():
            return True
        self.failure = LinkFailureError(STATUS_NO_SAVED_PROXY)
        self._coordinator.set_event(CONNECTION_SETTLED_EVENT)
        return False

    def auto_connect(self) -> bool:
        """Scan for the first advertising proxy node and connect to it."""
        self._begin_sequence()
        started = self.supervisor.auto_connect()
        if not started and self.failure is None:
            self.failure = LinkFailureError(STATUS_SCAN_FAILED)
            self._coordinator.set_event(CONNECTION_SETTLED_EVENT)
        return started

    def disconnect(self) -> None:
        self.supervisor.disconnect()

    def wait_for_connection(self, timeout: Optional[float] = None) -> None:
        """
        Block until the current connection sequence reaches ready or fails for good.

        Raises:
            ConnectionFailedError: The matching subclass (PermissionDeniedError,
                ServiceMissingError or LinkFailureError) on terminal failure, or
                LinkFailureError if nothing settled within ``timeout`` seconds.
        """
        if not self._coordinator.wait_for_event(CONNECTION_SETTLED_EVENT, timeout):
            raise LinkFailureError(ERROR_TIMEOUT.format("Connection", timeout or 0))
        if self.failure is not None:
            raise self.failure

    def send_brightness(self, address: int, brightness: int) -> bool:
        """
        Set the level of the element at ``address`` from a 0-100 brightness percentage.

        The percentage maps linearly onto the signed Generic Level range, 50% being 0.
        Each call uses the next transaction identifier.
        """
        if not 0 <= brightness <= 100:
            raise ValueError(f"brightness must be between 0 and 100, got {brightness}")
        level = int((brightness - 50) * 655.35)
        with self._lock:
            tid = self.currentTid
            self.currentTid = (self.currentTid + 1) % 256
        info = f"Dst:0x{address:04X} TID:{tid}"
        logger.debug("Sending brightness %d%% (level %d) %s", brightness, level, info)
        message = GenericLevelSetUnacknowledged(level=level, tid=tid)
        return self._create_pdu(address, message, STATUS_SENT.format(info), STATUS_SEND_FAILED)

    def read_temperature(self, address: int) -> bool:
        """Ask the element at ``address`` for its sensor values; results arrive as readings."""
        logger.debug("Reading temperature from 0x%04X", address)
        return self._create_pdu(address, SensorGet(), None, STATUS_READ_TEMPERATURE_FAILED)

    def get_mtu(self) -> int:
        return self.transport.current_mtu()

    def on_mesh_pdu_created(self, pdu: Optional[bytes]) -> SendResult:
        """Called by the mesh stack with a proxy PDU ready for the link."""
        if not pdu:
            return SendResult.NOT_READY
        logger.debug("Mesh PDU created, %d bytes", len(pdu))
        result = self.transport.send(pdu)
        if result is SendResult.NOT_READY:
            logger.warning("Not connected, dropping PDU")
            self._post_status(STATUS_NOT_CONNECTED)
        elif result is SendResult.WRITE_REJECTED:
            self._post_status(STATUS_PDU_SEND_FAILED)
        return result

    def on_sensor_status(self, src: int, params: bytes) -> List[SensorReading]:
        """Called by the mesh stack with the parameters of a Sensor Status message from ``src``."""
        readings = list(self.decoder.decode(params, src))
        for reading in readings:
            logger.info("Temperature from 0x%04X: %.2f C", src, reading.value)
            self.temperatures[src] = reading.value
            publishingThread.queueWork(
                lambda reading=reading: pub.sendMessage(
                    "meshproxy.sensor.reading", interface=self, reading=reading
                )
            )
        return readings

    def _create_pdu(self, address: int, message, sent_status: Optional[str], failed_status: str) -> bool:
        if self.mesh_stack is None:
            logger.warning("Cannot send %s: no mesh stack", type(message).__name__)
            self._post_status(STATUS_NO_MESH_STACK)
            return False
        try:
            self.mesh_stack.create_mesh_pdu(address, message)
        except Exception as e:  # noqa: BLE001 - the stack's failure is reported, not raised
            logger.error("Creating %s PDU failed: %s", type(message).__name__, e)
            self._post_status(failed_status.format(e))
            return False
        if sent_status:
            self._post_status(sent_status)
        return True

    def _begin_sequence(self):
        self.failure = None
        self._coordinator.clear_event(CONNECTION_SETTLED_EVENT)

    def _on_transport_event(self, event: TransportEvent):
        if isinstance(event, FrameReceived):
            self._on_data_received(event.data)
        elif isinstance(event, ServicesReady):
            self._connected()
        elif isinstance(event, Disconnected):
            self._disconnected()

    def _on_data_received(self, data: bytes):
        if self.mesh_stack is None:
            logger.debug("No mesh stack, dropping %d byte frame", len(data))
            return
        try:
            self.mesh_stack.handle_notifications(self.transport.current_mtu(), data)
        except Exception:
            logger.exception("Mesh stack failed to handle a notification")

    def _on_sequence_ready(self, event: ServicesReady):  # pylint: disable=W0613
        self.failure = None
        self._coordinator.set_event(CONNECTION_SETTLED_EVENT)

    def _on_terminal_failure(self, event: Error):
        self.failure = connection_error_for(event.kind, event.message, event.status)
        self._coordinator.set_event(CONNECTION_SETTLED_EVENT)

    def _post_status(self, text: str):
        publishingThread.queueWork(
            lambda: pub.sendMessage("meshproxy.status.text", interface=self, text=text)
        )

    def _connected(self):
        """
        Mark the interface as connected and notify subscribers.

        Publishes "meshproxy.connection.established" and "meshproxy.connection.status"
        (with connected=True) only on the transition from disconnected.
        """
        if not self.isConnected.is_set():
            self.isConnected.set()
            publishingThread.queueWork(
                lambda: pub.sendMessage(
                    "meshproxy.connection.established", interface=self
                )
            )
            publishingThread.queueWork(
                lambda: pub.sendMessage(
                    "meshproxy.connection.status", interface=self, connected=True
                )
            )

    def _disconnected(self):
        """
        Mark the interface as disconnected and notify subscribers.

        Publishes "meshproxy.connection.lost" and "meshproxy.connection.status" with
        connected=False, once per connection.
        """
        if self.isConnected.is_set():
            self.isConnected.clear()
            publishingThread.queueWork(
                lambda: pub.sendMessage("meshproxy.connection.lost", interface=self)
            )
            publishingThread.queueWork(
                lambda: pub.sendMessage(
                    "meshproxy.connection.status", interface=self, connected=False
                )
            )


__all__ = [
    "GenericLevelSetUnacknowledged",
    "MeshInterface",
    "MeshStack",
    "SensorGet",
]
