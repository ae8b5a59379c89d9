"""
Key/value persistence contract used by the session manager.

The manager only needs get/set/delete on string values, so the same logic can
sit on an in-process dict, files on disk, or a remote cache. Backends raise
StoreError for any failure they cannot handle themselves.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

SESSION_DATA = "multi_channel_session"
LAST_ACTIVITY = "multi_channel_last_activity"


@dataclass(frozen=True)
class StorageKeys:
    """The two logical keys owned by one manager instance."""

    namespace: Optional[str] = None

    def _key(self, name: str) -> str:
        return f"{self.namespace}:{name}" if self.namespace else name

    @property
    def session_data(self) -> str:
        return self._key(SESSION_DATA)

    @property
    def last_activity(self) -> str:
        return self._key(LAST_ACTIVITY)


class KeyValueStore(ABC):
    """Abstract async key/value store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if the key is absent."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key. Deleting a missing key is not an error."""
