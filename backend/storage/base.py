"""Async key/value storage interface shared by sessions, drafts and locks.

Values are opaque strings (callers serialize JSON themselves). Backends that
run out of space raise StorageQuotaExceededError so writers can tell a full
store apart from other failures.
"""

import abc
from typing import List, Optional


class StorageError(Exception):
    """Base class for storage backend failures."""
    pass


class StorageQuotaExceededError(StorageError):
    """Raised when a write would exceed the backend's capacity."""
    pass


class StorageUnavailableError(StorageError):
    """Raised when the backend cannot be reached or read."""
    pass


class StoragePermissionError(StorageError):
    """Raised when the backend refuses access."""
    pass


class KeyValueStorage(abc.ABC):
    """Async string key/value store.

    ``shared`` is True when other processes observe the same data, which is
    what decides whether a storage lock can coordinate across instances.
    """

    shared: bool = False

    @abc.abstractmethod
    async def get_item(self, key: str) -> Optional[str]:
        """Return the stored value or None when the key is absent."""

    @abc.abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        """Store a value. Raises StorageQuotaExceededError when full."""

    @abc.abstractmethod
    async def remove_item(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""

    @abc.abstractmethod
    async def keys(self, prefix: Optional[str] = None) -> List[str]:
        """List keys, optionally restricted to a prefix."""

    async def clear(self, prefix: Optional[str] = None) -> int:
        """Remove every key (or every key under ``prefix``). Returns the count."""
        removed = 0
        for key in await self.keys(prefix):
            await self.remove_item(key)
            removed += 1
        return removed
