"""In-process dict-backed store."""

from typing import Dict, Optional

from branchgate.store.base import KeyValueStore


class MemoryStore(KeyValueStore):
    """Keeps values in a dict. Lost when the process exits."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return sorted(self._data)

    def __len__(self) -> int:
        return len(self._data)
