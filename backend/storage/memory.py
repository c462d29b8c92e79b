"""Process-local storage backend with an optional byte quota."""

import asyncio
from typing import Dict, List, Optional

from backend.storage.base import KeyValueStorage, StorageQuotaExceededError


class InMemoryStorage(KeyValueStorage):
    """Dict-backed storage. Not visible to other processes."""

    shared = False

    def __init__(self, quota_bytes: Optional[int] = None):
        self._quota = quota_bytes
        self._data: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        async with self._lock:
            if self._quota is not None:
                used = self._used_bytes() - self._entry_size(key, self._data.get(key))
                needed = self._entry_size(key, value)
                if used + needed > self._quota:
                    raise StorageQuotaExceededError(
                        f"Storage quota exceeded writing '{key}' "
                        f"({used + needed} > {self._quota} bytes)"
                    )
            self._data[key] = value

    async def remove_item(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def keys(self, prefix: Optional[str] = None) -> List[str]:
        return sorted(k for k in self._data if prefix is None or k.startswith(prefix))

    @property
    def used_bytes(self) -> int:
        return self._used_bytes()

    def _used_bytes(self) -> int:
        return sum(self._entry_size(k, v) for k, v in self._data.items())

    @staticmethod
    def _entry_size(key: str, value: Optional[str]) -> int:
        if value is None:
            return 0
        return len(key.encode("utf-8")) + len(value.encode("utf-8"))
