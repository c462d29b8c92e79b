"""Async Supabase implementation of KeyValueStorage.

Rows live in a single table keyed by (namespace, key) so several
deployments can share one project without seeing each other's data.
"""

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient

from backend.storage.base import (
    KeyValueStorage,
    StorageError,
    StoragePermissionError,
    StorageQuotaExceededError,
    StorageUnavailableError,
)

logger = logging.getLogger(__name__)

# Postgres SQLSTATEs surfaced through PostgREST.
_QUOTA_CODES = {"53100", "53200", "54000"}  # disk_full, out_of_memory, program_limit_exceeded
_PERMISSION_CODES = {"42501", "PGRST301", "PGRST302"}


def _map_api_error(e: APIError, key: str) -> StorageError:
    code = str(getattr(e, "code", "") or "")
    if code in _QUOTA_CODES:
        return StorageQuotaExceededError(f"Supabase storage full writing '{key}': {e}")
    if code in _PERMISSION_CODES:
        return StoragePermissionError(f"Supabase refused access to '{key}': {e}")
    return StorageUnavailableError(f"Supabase storage error for '{key}': {e}")


class AsyncClientStorageRepository(KeyValueStorage):
    """Async Supabase-backed key/value store."""

    TABLE = "client_storage"
    shared = True

    def __init__(
        self,
        client: AsyncClient,
        namespace: str = "default",
        table: Optional[str] = None,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._table = table or self.TABLE

    async def get_item(self, key: str) -> Optional[str]:
        result = await self._execute(
            key,
            self._client.table(self._table)
            .select("value")
            .eq("namespace", self._namespace)
            .eq("key", key)
            .limit(1),
        )
        return result.data[0]["value"] if result.data else None

    async def set_item(self, key: str, value: str) -> None:
        row = {
            "namespace": self._namespace,
            "key": key,
            "value": value,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        await self._execute(
            key,
            self._client.table(self._table).upsert(row, on_conflict="namespace,key"),
        )

    async def remove_item(self, key: str) -> None:
        await self._execute(
            key,
            self._client.table(self._table)
            .delete()
            .eq("namespace", self._namespace)
            .eq("key", key),
        )

    async def keys(self, prefix: Optional[str] = None) -> List[str]:
        query = (
            self._client.table(self._table)
            .select("key")
            .eq("namespace", self._namespace)
        )
        if prefix:
            query = query.like("key", f"{prefix}%")
        result = await self._execute(prefix or "*", query)
        return sorted(row["key"] for row in (result.data or []))

    async def _execute(self, key: str, query: Any) -> Any:
        try:
            return await query.execute()
        except APIError as e:
            logger.warning("Supabase storage query failed for %s: %s", key, e)
            raise _map_api_error(e, key) from e
        except httpx.HTTPError as e:
            logger.warning("Supabase storage unreachable for %s: %s", key, e)
            raise StorageUnavailableError(f"Supabase unreachable for '{key}': {e}") from e
