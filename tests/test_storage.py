"""Tests for the in-memory and file key/value storage backends."""

import errno
from unittest.mock import patch

import pytest

from backend.settings import Settings
from backend.storage import (
    FileStorage,
    InMemoryStorage,
    StoragePermissionError,
    StorageQuotaExceededError,
    StorageUnavailableError,
    build_storage,
)


class TestInMemoryStorage:
    @pytest.mark.asyncio
    async def test_set_get_remove(self):
        storage = InMemoryStorage()
        await storage.set_item("k", "v")
        assert await storage.get_item("k") == "v"
        await storage.remove_item("k")
        assert await storage.get_item("k") is None

    @pytest.mark.asyncio
    async def test_remove_missing_key_is_noop(self):
        await InMemoryStorage().remove_item("nope")

    @pytest.mark.asyncio
    async def test_keys_filtered_by_prefix(self):
        storage = InMemoryStorage()
        await storage.set_item("fitjourney:a", "1")
        await storage.set_item("fitjourney:b", "2")
        await storage.set_item("other:c", "3")
        assert await storage.keys("fitjourney:") == ["fitjourney:a", "fitjourney:b"]
        assert len(await storage.keys()) == 3

    @pytest.mark.asyncio
    async def test_clear_with_prefix(self):
        storage = InMemoryStorage()
        await storage.set_item("fitjourney:a", "1")
        await storage.set_item("other:c", "3")
        assert await storage.clear("fitjourney:") == 1
        assert await storage.keys() == ["other:c"]

    @pytest.mark.asyncio
    async def test_quota_exceeded_raises_and_keeps_old_value(self):
        storage = InMemoryStorage(quota_bytes=10)
        await storage.set_item("k", "12345")
        with pytest.raises(StorageQuotaExceededError):
            await storage.set_item("k", "x" * 20)
        assert await storage.get_item("k") == "12345"

    @pytest.mark.asyncio
    async def test_overwrite_counts_only_new_size(self):
        storage = InMemoryStorage(quota_bytes=10)
        await storage.set_item("k", "12345678")
        await storage.set_item("k", "abcdefgh")
        assert storage.used_bytes == 9

    def test_not_shared(self):
        assert InMemoryStorage.shared is False


class TestFileStorage:
    @pytest.mark.asyncio
    async def test_round_trip_and_key_quoting(self, tmp_path):
        storage = FileStorage(str(tmp_path))
        await storage.set_item("fitjourney:planSession:device-1", '{"a": 1}')
        assert await storage.get_item("fitjourney:planSession:device-1") == '{"a": 1}'
        assert await storage.keys("fitjourney:") == ["fitjourney:planSession:device-1"]
        assert not any(p.name.startswith(".tmp-") for p in tmp_path.iterdir())

    @pytest.mark.asyncio
    async def test_missing_root_reads_as_empty(self, tmp_path):
        storage = FileStorage(str(tmp_path / "absent"))
        assert await storage.get_item("k") is None
        assert await storage.keys() == []

    @pytest.mark.asyncio
    async def test_visible_to_second_instance(self, tmp_path):
        await FileStorage(str(tmp_path)).set_item("k", "v")
        assert await FileStorage(str(tmp_path)).get_item("k") == "v"

    @pytest.mark.asyncio
    async def test_quota(self, tmp_path):
        storage = FileStorage(str(tmp_path), quota_bytes=8)
        await storage.set_item("a", "1234")
        with pytest.raises(StorageQuotaExceededError):
            await storage.set_item("b", "123456")

    @pytest.mark.asyncio
    async def test_enospc_maps_to_quota(self, tmp_path):
        storage = FileStorage(str(tmp_path))
        with patch("backend.storage.file.tempfile.mkstemp", side_effect=OSError(errno.ENOSPC, "full")):
            with pytest.raises(StorageQuotaExceededError):
                await storage.set_item("k", "v")

    @pytest.mark.asyncio
    async def test_eacces_maps_to_permission(self, tmp_path):
        storage = FileStorage(str(tmp_path))
        with patch("backend.storage.file.tempfile.mkstemp", side_effect=OSError(errno.EACCES, "denied")):
            with pytest.raises(StoragePermissionError):
                await storage.set_item("k", "v")

    def test_shared(self):
        assert FileStorage.shared is True


class TestBuildStorage:
    def test_memory_default(self):
        settings = Settings(environment="test", _env_file=None)
        assert isinstance(build_storage(settings), InMemoryStorage)

    def test_file_backend(self, tmp_path):
        settings = Settings(
            environment="test", storage_backend="file", storage_dir=str(tmp_path), _env_file=None
        )
        storage = build_storage(settings)
        assert isinstance(storage, FileStorage)
        assert storage.root == tmp_path

    def test_supabase_without_client_is_unavailable(self):
        settings = Settings(environment="test", storage_backend="supabase", _env_file=None)
        with pytest.raises(StorageUnavailableError):
            build_storage(settings)
