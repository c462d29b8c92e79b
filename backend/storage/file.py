"""Directory-backed storage: one file per key, atomic replace on write.

Shared across processes on the same host, so it can back the storage-lock
coordinator. File I/O runs in a worker thread to keep the event loop free.
"""

import asyncio
import errno
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote, unquote

from backend.storage.base import (
    KeyValueStorage,
    StorageError,
    StoragePermissionError,
    StorageQuotaExceededError,
    StorageUnavailableError,
)

logger = logging.getLogger(__name__)

_SUFFIX = ".json"


def _map_os_error(e: OSError, key: str) -> StorageError:
    if e.errno in (errno.ENOSPC, errno.EDQUOT):
        return StorageQuotaExceededError(f"No space left writing '{key}': {e}")
    if e.errno in (errno.EACCES, errno.EPERM, errno.EROFS):
        return StoragePermissionError(f"Permission denied for '{key}': {e}")
    return StorageUnavailableError(f"Storage failure for '{key}': {e}")


class FileStorage(KeyValueStorage):
    """Stores each key as ``<root>/<quoted key>.json``."""

    shared = True

    def __init__(self, root: str, quota_bytes: Optional[int] = None):
        self._root = Path(root)
        self._quota = quota_bytes

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        return self._root / (quote(key, safe="") + _SUFFIX)

    async def get_item(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._read, key)

    async def set_item(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._write, key, value)

    async def remove_item(self, key: str) -> None:
        await asyncio.to_thread(self._remove, key)

    async def keys(self, prefix: Optional[str] = None) -> List[str]:
        return await asyncio.to_thread(self._list, prefix)

    # -- sync helpers (run in a worker thread) --------------------------------

    def _read(self, key: str) -> Optional[str]:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise _map_os_error(e, key) from e

    def _write(self, key: str, value: str) -> None:
        data = value.encode("utf-8")
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            if self._quota is not None:
                used = self._used_bytes(exclude=key)
                if used + len(data) > self._quota:
                    raise StorageQuotaExceededError(
                        f"Storage quota exceeded writing '{key}' "
                        f"({used + len(data)} > {self._quota} bytes)"
                    )
            fd, tmp = tempfile.mkstemp(dir=self._root, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                os.replace(tmp, self._path(key))
            except BaseException:
                try:
                    os.unlink(tmp)
                except OSError:
                    pass
                raise
        except StorageError:
            raise
        except OSError as e:
            raise _map_os_error(e, key) from e

    def _remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise _map_os_error(e, key) from e

    def _list(self, prefix: Optional[str]) -> List[str]:
        if not self._root.exists():
            return []
        keys = []
        for entry in self._root.iterdir():
            if not entry.name.endswith(_SUFFIX) or entry.name.startswith(".tmp-"):
                continue
            key = unquote(entry.name[: -len(_SUFFIX)])
            if prefix is None or key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def _used_bytes(self, exclude: Optional[str] = None) -> int:
        if not self._root.exists():
            return 0
        skip = self._path(exclude).name if exclude is not None else None
        total = 0
        for entry in self._root.iterdir():
            if entry.name == skip or not entry.name.endswith(_SUFFIX):
                continue
            try:
                total += entry.stat().st_size
            except FileNotFoundError:
                logger.debug("Storage entry vanished during size scan: %s", entry)
        return total
