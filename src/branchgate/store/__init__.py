"""
Persistence adapters for session state.

- base: KeyValueStore contract and the storage key names
- memory: dict-backed store
- file_store: one-file-per-key store on local disk
"""

from branchgate.store.base import KeyValueStore, StorageKeys
from branchgate.store.file_store import FileStore
from branchgate.store.memory import MemoryStore


def create_store(config) -> KeyValueStore:
    """Build the store selected by ``config.store_backend``."""
    if config.store_backend == "file":
        return FileStore(config.store_path)
    return MemoryStore()


__all__ = [
    "FileStore",
    "KeyValueStore",
    "MemoryStore",
    "StorageKeys",
    "create_store",
]
