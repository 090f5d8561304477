"""BLE Mesh Proxy transport package."""

from bleak import BleakScanner, BLEDevice
from meshproxy.interfaces.ble.constants import (
    BLEConfig,
    CLIENT_CHARACTERISTIC_CONFIG_UUID,
    MESH_PROVISIONING_SERVICE_UUID,
    MESH_PROXY_SERVICE_UUID,
    PROXY_DATA_IN_UUID,
    PROXY_DATA_OUT_UUID,
    PROXY_SCAN_SERVICE_UUIDS,
    logger,
)
from meshproxy.interfaces.ble.exceptions import *
from meshproxy.interfaces.ble.state import *
from meshproxy.interfaces.ble.coordination import *
from meshproxy.interfaces.ble.errors import *
from meshproxy.interfaces.ble.policies import *
from meshproxy.interfaces.ble.events import *
from meshproxy.interfaces.ble.driver import *
from meshproxy.interfaces.ble.client import *
from meshproxy.interfaces.ble.discovery import *
from meshproxy.interfaces.ble.transport import *
from meshproxy.interfaces.ble.supervisor import *

__all__ = [
    # Core classes
    "BLEConfig",
    "ConnectionState",
    "BLEStateManager",
    "FailureReason",
    "LinkHandle",
    "ThreadCoordinator",
    "BLEErrorHandler",
    "RetryBudget",
    "EventChannel",
    "BLEClient",
    "ProxyScanner",
    "GattTransport",
    "ConnectionSupervisor",
    "LinkCallbacks",
    "LinkDriver",
    "GattService",
    "GattCharacteristic",
    "BleakScanner",
    "BLEDevice",
    # Events
    "Connected",
    "Disconnected",
    "Error",
    "FrameReceived",
    "ServicesReady",
    "StateChanged",
    "TransportEvent",
    # Errors
    "BLEError",
    "ConnectionFailedError",
    "ErrorKind",
    "LinkFailureError",
    "PermissionDeniedError",
    "SendResult",
    "ServiceMissingError",
    # Constants/helpers
    "CLIENT_CHARACTERISTIC_CONFIG_UUID",
    "MESH_PROVISIONING_SERVICE_UUID",
    "MESH_PROXY_SERVICE_UUID",
    "PROXY_DATA_IN_UUID",
    "PROXY_DATA_OUT_UUID",
    "PROXY_SCAN_SERVICE_UUIDS",
    "classify_exception",
    "classify_status",
    "connection_error_for",
    "parse_scan_response",
    "logger",
]
