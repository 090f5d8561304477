"""Error handling utilities for BLE operations."""

from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Optional

from bleak.exc import BleakDBusError, BleakError

from meshproxy.interfaces.ble.constants import (
    GATT_SUCCESS,
    PERMISSION_STATUS_CODES,
    logger,
)
from meshproxy.interfaces.ble.exceptions import ErrorKind

__all__ = ["BLEErrorHandler", "classify_exception", "classify_status"]

# BlueZ D-Bus error names that mean the user or the OS refused access
_PERMISSION_DBUS_ERRORS = frozenset(
    {
        "org.bluez.Error.NotAuthorized",
        "org.bluez.Error.NotPermitted",
        "org.bluez.Error.AuthenticationFailed",
        "org.freedesktop.DBus.Error.AccessDenied",
    }
)


def classify_status(status: Optional[int]) -> ErrorKind:
    """
    Map an ATT status code reported by the radio stack to an ErrorKind.

    Authentication, authorization and encryption failures are permission problems;
    every other non-zero (or unknown) status is a link failure.
    """
    if status is not None and status != GATT_SUCCESS and status in PERMISSION_STATUS_CODES:
        return ErrorKind.PERMISSION_DENIED
    return ErrorKind.LINK_FAILURE


def classify_exception(error: BaseException) -> ErrorKind:
    """
    Map an exception raised by the radio stack to an ErrorKind.

    Parameters:
        error (BaseException): Exception raised while opening or driving the link.

    Returns:
        ErrorKind: PERMISSION_DENIED for OS level access refusals, LINK_FAILURE otherwise.
    """
    if isinstance(error, PermissionError):
        return ErrorKind.PERMISSION_DENIED
    if isinstance(error, BleakDBusError):
        if getattr(error, "dbus_error", None) in _PERMISSION_DBUS_ERRORS:
            return ErrorKind.PERMISSION_DENIED
    return ErrorKind.LINK_FAILURE


class BLEErrorHandler:
    """
    Helper class for consistent error handling in BLE operations.

    Features:
        - Safe execution with fallback return values
        - Consistent error logging and classification
        - Cleanup operations that never raise exceptions
    """

    @staticmethod
    def safe_execute(
        func,
        default_return=None,
        log_error: bool = True,
        error_msg: str = "Error in operation",
        reraise: bool = False,
    ):
        """
        Execute a zero-argument callable and return its result, falling back to a provided default on failure.

        Bleak errors and future timeouts are expected on a flaky radio link and are
        logged at debug level; anything else is logged with a traceback.

        Parameters:
            func (callable): A zero-argument callable to execute.
            default_return: Value to return if execution fails.
            log_error (bool): If True, log caught exceptions.
            error_msg (str): Message prefix used when logging errors.
            reraise (bool): If True, re-raise any caught exception instead of returning default_return.

        Returns:
            The value returned by `func()` on success, or `default_return` if execution failed.
        """
        try:
            return func()
        except (BleakError, BleakDBusError, FutureTimeoutError) as e:
            if log_error:
                logger.debug("%s: %s", error_msg, e)
            if reraise:
                raise
            return default_return
        except Exception:
            if log_error:
                logger.exception("%s", error_msg)
            if reraise:
                raise
            return default_return

    @staticmethod
    def safe_cleanup(func, cleanup_name: str = "cleanup operation"):
        """
        Execute a cleanup callable and suppress any exceptions raised during its execution.

        Parameters:
            func (Callable[[], Any]): Zero-argument cleanup function to execute.
            cleanup_name (str): Human-readable name for the cleanup operation used in the log message.
        """
        try:
            func()
        except Exception as e:  # noqa: BLE001 - cleanup paths must not raise
            logger.debug("Error during %s: %s", cleanup_name, e)
