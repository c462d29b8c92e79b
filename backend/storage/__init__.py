"""Key/value storage backends for sessions, drafts and generation locks."""

from typing import Optional

from backend.settings import Settings
from backend.storage.base import (
    KeyValueStorage,
    StorageError,
    StoragePermissionError,
    StorageQuotaExceededError,
    StorageUnavailableError,
)
from backend.storage.file import FileStorage
from backend.storage.memory import InMemoryStorage


def build_storage(settings: Settings, supabase_client=None) -> KeyValueStorage:
    """Create the storage backend selected by ``settings.storage_backend``."""
    if settings.storage_backend == "file":
        return FileStorage(settings.storage_dir, quota_bytes=settings.storage_quota_bytes)
    if settings.storage_backend == "supabase":
        if supabase_client is None:
            raise StorageUnavailableError(
                "storage_backend=supabase requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY"
            )
        from infrastructure.db.async_client_storage_repository import (
            AsyncClientStorageRepository,
        )

        return AsyncClientStorageRepository(
            supabase_client,
            namespace=settings.environment,
            table=settings.supabase_storage_table,
        )
    return InMemoryStorage(quota_bytes=settings.storage_quota_bytes)


__all__ = [
    "FileStorage",
    "InMemoryStorage",
    "KeyValueStorage",
    "StorageError",
    "StoragePermissionError",
    "StorageQuotaExceededError",
    "StorageUnavailableError",
    "build_storage",
]
