"""Boundary between the transport state machine and a radio stack."""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Protocol


@dataclass(frozen=True)
class GattCharacteristic:
    uuid: str
    descriptors: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class GattService:
    """A discovered GATT service and its characteristics keyed by lower-case UUID."""

    uuid: str
    characteristics: Dict[str, GattCharacteristic] = field(default_factory=dict)

    def get_characteristic(self, uuid: str) -> Optional[GattCharacteristic]:
        return self.characteristics.get(uuid.lower())


def find_service(services, uuid: str) -> Optional[GattService]:
    """Return the service with ``uuid`` from a discovered service list, if present."""
    wanted = uuid.lower()
    for service in services or ():
        if service.uuid.lower() == wanted:
            return service
    return None


class LinkCallbacks(Protocol):
    """
    Radio stack events, delivered by a LinkDriver in the order the stack reports them.

    Callbacks may arrive on any thread. ``status`` values are ATT status codes
    (0 means success); ``None`` means the stack did not report one.
    """

    def on_link_established(self) -> None: ...

    def on_link_failed(
        self, status: Optional[int], error: Optional[BaseException] = None
    ) -> None: ...

    def on_link_dropped(self, status: Optional[int]) -> None: ...

    def on_mtu_changed(self, mtu: int, status: int) -> None: ...

    def on_services_discovered(self, status: int, services) -> None: ...

    def on_descriptor_written(self, status: int) -> None: ...

    def on_notification(self, data: bytes) -> None: ...


class LinkDriver(Protocol):
    """
    Non-blocking requests the transport issues to a radio stack.

    Each request returns True when it was dispatched; the outcome arrives later
    through the LinkCallbacks given to open().
    """

    def open(self, address: str, callbacks: LinkCallbacks) -> None: ...

    def request_mtu(self, size: int) -> bool: ...

    def discover_services(self) -> bool: ...

    def enable_notifications(self, char_uuid: str, descriptor_uuid: str) -> bool: ...

    def write_without_response(self, char_uuid: str, data: bytes) -> bool: ...

    def close(self) -> None: ...


__all__ = [
    "GattCharacteristic",
    "GattService",
    "LinkCallbacks",
    "LinkDriver",
    "find_service",
]
