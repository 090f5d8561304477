"""Error taxonomy for the BLE proxy transport."""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Classification attached to every surfaced transport or decoder error."""

    PERMISSION_DENIED = "permission_denied"
    LINK_FAILURE = "link_failure"
    SERVICE_MISSING = "service_missing"
    WRITE_REJECTED = "write_rejected"
    DECODE_SKIPPED = "decode_skipped"
    MALFORMED_TRAILING = "malformed_trailing"

    @property
    def retryable(self) -> bool:
        """Only link level failures are worth another connection attempt."""
        return self is ErrorKind.LINK_FAILURE


class SendResult(Enum):
    """Outcome of handing one frame to the radio stack."""

    ACCEPTED = "accepted"
    NOT_READY = "not_ready"
    WRITE_REJECTED = "write_rejected"

    def __bool__(self) -> bool:
        return self is SendResult.ACCEPTED


class BLEError(Exception):
    """An exception class for BLE errors."""


class ConnectionFailedError(BLEError):
    """Raised by blocking helpers when a connection sequence ends in terminal failure."""

    kind = ErrorKind.LINK_FAILURE

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(message)


class LinkFailureError(ConnectionFailedError):
    """The radio link could not be established, or dropped during setup."""

    kind = ErrorKind.LINK_FAILURE


class PermissionDeniedError(ConnectionFailedError):
    """The OS or the remote node refused Bluetooth access."""

    kind = ErrorKind.PERMISSION_DENIED


class ServiceMissingError(ConnectionFailedError):
    """The remote node does not expose the Mesh Proxy service."""

    kind = ErrorKind.SERVICE_MISSING


_ERRORS_BY_KIND = {
    ErrorKind.LINK_FAILURE: LinkFailureError,
    ErrorKind.PERMISSION_DENIED: PermissionDeniedError,
    ErrorKind.SERVICE_MISSING: ServiceMissingError,
}


def connection_error_for(
    kind: ErrorKind, message: str, status: Optional[int] = None
) -> ConnectionFailedError:
    """Build the ConnectionFailedError subclass matching a terminal failure kind."""
    return _ERRORS_BY_KIND.get(kind, ConnectionFailedError)(message, status)


__all__ = [
    "BLEError",
    "ConnectionFailedError",
    "ErrorKind",
    "LinkFailureError",
    "PermissionDeniedError",
    "SendResult",
    "ServiceMissingError",
    "connection_error_for",
]
