"""Utility functions for BLE operations."""

import re
from typing import Optional, Union

_ADDRESS_SEPARATORS = re.compile(r"[-_:\s]")


def sanitize_address(address: Optional[str]) -> Optional[str]:
    """
    Normalize a BLE address or identifier by removing common separators and lowercasing.

    Parameters:
        address (Optional[str]): Address or identifier to normalize; may be None or whitespace only.

    Returns:
        Optional[str]: The normalized address, or None if the input is None or only whitespace.
    """
    if address is None:
        return None
    stripped = address.strip()
    if not stripped:
        return None
    return _ADDRESS_SEPARATORS.sub("", stripped).lower()


def same_address(first: Optional[str], second: Optional[str]) -> bool:
    """Return True when both identifiers normalize to the same non-empty address."""
    left = sanitize_address(first)
    return left is not None and left == sanitize_address(second)


def hexstr(data: Union[bytes, bytearray, memoryview]) -> str:
    """Render a byte buffer as space separated upper-case hex pairs for log output."""
    return " ".join(f"{b:02X}" for b in bytes(data))
