"""Persistence of the last proxy node that reached READY."""

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import RLock
from typing import Dict, Optional, Protocol, Union

logger = logging.getLogger(__name__)

PROXY_ADDRESS_KEY = "last_proxy_address"
DEFAULT_PREFS_PATH = Path("~/.config/meshproxy/prefs.json")


class AddressStore(Protocol):
    """Key-value hook used to remember one proxy address between runs."""

    def get_proxy_address(self) -> Optional[str]: ...

    def save_proxy_address(self, address: str) -> None: ...


class MemoryAddressStore:
    """In-process store; counts writes so callers can check persistence happened once."""

    def __init__(self, address: Optional[str] = None):
        self._address = address
        self.save_count = 0

    def get_proxy_address(self) -> Optional[str]:
        return self._address

    def save_proxy_address(self, address: str) -> None:
        self._address = address
        self.save_count += 1


class JsonAddressStore:
    """
    File-backed store holding a small JSON object of preferences.

    Unknown keys already in the file are preserved on save. A missing or unreadable
    file reads as "no saved address"; writes go through a temporary file and an
    atomic rename so a crash never leaves a truncated file behind.
    """

    def __init__(self, path: Union[str, Path, None] = None):
        self.path = Path(path or DEFAULT_PREFS_PATH).expanduser()
        self._lock = RLock()

    def _load(self) -> Dict[str, str]:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable preferences file %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed preferences file %s", self.path)
            return {}
        return data

    def get_proxy_address(self) -> Optional[str]:
        with self._lock:
            value = self._load().get(PROXY_ADDRESS_KEY)
        return value if isinstance(value, str) and value.strip() else None

    def save_proxy_address(self, address: str) -> None:
        with self._lock:
            data = self._load()
            data[PROXY_ADDRESS_KEY] = address
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".prefs-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, sort_keys=True)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        logger.debug("Saved proxy address %s to %s", address, self.path)


__all__ = [
    "AddressStore",
    "DEFAULT_PREFS_PATH",
    "JsonAddressStore",
    "MemoryAddressStore",
    "PROXY_ADDRESS_KEY",
]
