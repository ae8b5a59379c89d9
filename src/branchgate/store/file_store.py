"""
File-backed store.

Each key lives in its own file under ``base_dir``. Writes go to a temporary
file that is then renamed over the target, so a reader never sees a partial
value.
"""

import asyncio
import os
import re
from pathlib import Path
from typing import Optional, Union

from branchgate.errors import StoreError
from branchgate.logger import get_logger
from branchgate.store.base import KeyValueStore

logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.\-]")


class FileStore(KeyValueStore):
    """Stores one value per file."""

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create store directory {self.base_dir}: {e}") from e
        self._write_lock = asyncio.Lock()
        logger.debug(f"FileStore initialized at {self.base_dir}")

    def _path(self, key: str) -> Path:
        if not key:
            raise StoreError("Store key cannot be empty")
        return self.base_dir / f"{_UNSAFE_CHARS.sub('_', key)}.val"

    async def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreError(f"Failed to read '{key}': {e}", cause=e) from e

    async def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        async with self._write_lock:
            try:
                tmp.write_text(value, encoding="utf-8")
                os.replace(tmp, path)
            except OSError as e:
                raise StoreError(f"Failed to write '{key}': {e}", cause=e) from e

    async def delete(self, key: str) -> None:
        path = self._path(key)
        async with self._write_lock:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise StoreError(f"Failed to delete '{key}': {e}", cause=e) from e
