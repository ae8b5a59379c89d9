"""
Unit tests for the key/value stores.
"""

import pytest

from branchgate.config import Config
from branchgate.errors import StoreError
from branchgate.store import FileStore, MemoryStore, StorageKeys, create_store


class TestStorageKeys:
    def test_default_keys(self):
        keys = StorageKeys()
        assert keys.session_data == "multi_channel_session"
        assert keys.last_activity == "multi_channel_last_activity"

    def test_namespaced_keys(self):
        keys = StorageKeys("tablet-7")
        assert keys.session_data == "tablet-7:multi_channel_session"
        assert keys.last_activity == "tablet-7:multi_channel_last_activity"


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_get_set_delete(self):
        store = MemoryStore()
        assert await store.get("k") is None
        await store.set("k", "v")
        assert await store.get("k") == "v"
        await store.delete("k")
        await store.delete("k")
        assert len(store) == 0


class TestFileStore:
    @pytest.mark.asyncio
    async def test_values_survive_new_instance(self, tmp_path):
        await FileStore(tmp_path).set("ns:multi_channel_session", '{"a": 1}')
        assert await FileStore(tmp_path).get("ns:multi_channel_session") == '{"a": 1}'

    @pytest.mark.asyncio
    async def test_missing_and_delete(self, tmp_path):
        store = FileStore(tmp_path)
        assert await store.get("absent") is None
        await store.set("k", "v")
        await store.delete("k")
        await store.delete("k")
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_key_is_sanitized(self, tmp_path):
        store = FileStore(tmp_path)
        await store.set("../escape", "v")
        assert [p.parent for p in tmp_path.iterdir()] == [tmp_path]

    @pytest.mark.asyncio
    async def test_empty_key_rejected(self, tmp_path):
        with pytest.raises(StoreError):
            await FileStore(tmp_path).get("")


class TestCreateStore:
    def test_memory_backend(self):
        assert isinstance(create_store(Config(store_backend="memory")), MemoryStore)

    def test_file_backend(self, tmp_path):
        store = create_store(Config(store_backend="file", store_path=str(tmp_path / "s")))
        assert isinstance(store, FileStore)
        assert (tmp_path / "s").is_dir()
