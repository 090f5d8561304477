"""BLE constants and configuration."""

import logging

logger = logging.getLogger("meshproxy.ble")

# Bluetooth SIG assigned UUIDs for the Mesh Proxy GATT bearer
MESH_PROXY_SERVICE_UUID = "00001828-0000-1000-8000-00805f9b34fb"
MESH_PROVISIONING_SERVICE_UUID = "00001827-0000-1000-8000-00805f9b34fb"
PROXY_DATA_IN_UUID = "00002add-0000-1000-8000-00805f9b34fb"
PROXY_DATA_OUT_UUID = "00002ade-0000-1000-8000-00805f9b34fb"
CLIENT_CHARACTERISTIC_CONFIG_UUID = "00002902-0000-1000-8000-00805f9b34fb"

# Scanning accepts both proxy and unprovisioned beacons, as nodes may advertise either
PROXY_SCAN_SERVICE_UUIDS = (MESH_PROXY_SERVICE_UUID, MESH_PROVISIONING_SERVICE_UUID)

# ATT status codes reported through the link callbacks
GATT_SUCCESS = 0x00
GATT_INSUFFICIENT_AUTHENTICATION = 0x05
GATT_INSUFFICIENT_AUTHORIZATION = 0x08
GATT_INSUFFICIENT_ENCRYPTION = 0x0F
GATT_ERROR = 0x85
PERMISSION_STATUS_CODES = frozenset(
    {
        GATT_INSUFFICIENT_AUTHENTICATION,
        GATT_INSUFFICIENT_AUTHORIZATION,
        GATT_INSUFFICIENT_ENCRYPTION,
    }
)


class BLEConfig:
    """Configuration constants for BLE operations."""

    BLE_SCAN_TIMEOUT = 10.0
    PROXY_DISCOVERY_TIMEOUT = 10.0
    CONNECTION_TIMEOUT = 30.0
    GATT_IO_TIMEOUT = 10.0
    MTU_REQUEST_SIZE = 517
    MTU_MINIMUM = 23
    MTU_DISPATCH_FALLBACK_DELAY = 0.6
    SERVICE_DISCOVERY_DELAY = 0.3
    RETRY_MAX_ATTEMPTS = 3
    RETRY_BACKOFF = 2.0
    BLECLIENT_EVENT_THREAD_JOIN_TIMEOUT = 2.0
    TIMER_THREAD_JOIN_TIMEOUT = 2.0


# Named single-shot timers owned by the transport and supervisor
MTU_FALLBACK_TIMER = "mtu_fallback"
SERVICE_DISCOVERY_TIMER = "service_discovery"
RETRY_BACKOFF_TIMER = "retry_backoff"
PROXY_DISCOVERY_TIMER = "proxy_discovery"

ERROR_TIMEOUT = "{0} timed out after {1:.1f} seconds"
ERROR_CONNECTION_FAILED = "Connection failed (status: {0})"
ERROR_CONNECTION_EXCEPTION = "Connection error: {0}"
ERROR_LINK_DROPPED = "Link dropped during setup (status: {0})"
ERROR_SERVICE_DISCOVERY_FAILED = "Service discovery failed (status: {0})"
ERROR_SERVICE_DISCOVERY_NOT_STARTED = "Service discovery could not be started"
ERROR_SERVICE_MISSING = "Mesh Proxy Service not found"
ERROR_CHARACTERISTIC_MISSING = "Mesh Proxy characteristic {0} not found"
ERROR_NOTIFICATIONS_NOT_STARTED = "Could not enable Data Out notifications"
ERROR_NOTIFICATIONS_FAILED = "Enabling notifications failed (status: {0})"
ERROR_PERMISSION_DENIED = (
    "Bluetooth permission denied. Grant Bluetooth access (e.g. membership of the "
    "'bluetooth' group or pairing) and try again."
)
BLECLIENT_ERROR_ASYNC_TIMEOUT = "Async operation timed out"

STATUS_CONNECTING = "Connecting to {0}... ({1}/{2})"
STATUS_CONNECTING_SAVED = "Connecting to saved proxy {0}..."
STATUS_LINK_UP = "Device connected, discovering services..."
STATUS_DISCOVERING = "Discovering services..."
STATUS_ENABLING = "Enabling notifications..."
STATUS_READY = "Connected to {0}"
STATUS_DISCONNECTED = "Disconnected"
STATUS_LINK_LOST = "Device disconnected, please reconnect"
STATUS_RETRYING = "Connection failed, retrying in {0:g} seconds..."
STATUS_TERMINAL_FAILURE = "Connection failed: {0}"
STATUS_SEARCHING = "Searching for proxy nodes..."
STATUS_SCAN_FAILED = "Scan for proxy nodes failed"
STATUS_NO_PROXY = "No proxy node found"
STATUS_NO_SAVED_PROXY = "No saved proxy address"

__all__ = [
    "BLEConfig",
    "BLECLIENT_ERROR_ASYNC_TIMEOUT",
    "CLIENT_CHARACTERISTIC_CONFIG_UUID",
    "ERROR_TIMEOUT",
    "GATT_ERROR",
    "GATT_SUCCESS",
    "MESH_PROVISIONING_SERVICE_UUID",
    "MESH_PROXY_SERVICE_UUID",
    "PERMISSION_STATUS_CODES",
    "PROXY_DATA_IN_UUID",
    "PROXY_DATA_OUT_UUID",
    "PROXY_SCAN_SERVICE_UUIDS",
    "logger",
]
