"""
Nalid24 - Local persistent key-value store.

A string-keyed map of JSON-serializable values persisted as a single JSON
document. Used for the identity, the contact list, per-contact message
caches, the PIN hash and token caches.

Writes are atomic (temporary file + rename) and go through aiofiles so the
event loop is never blocked on disk I/O. Callers that need an atomic
read-modify-write of one key hold ``lock(key)`` around it.
"""

import asyncio
import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiofiles

from .errors import ErrorCode, StorageError

logger = logging.getLogger(__name__)


class LocalStore:
    """JSON-file backed persistent map with per-key locking."""

    def __init__(self, store_file: str):
        self.store_file = str(store_file)
        self._data: Optional[Dict[str, Any]] = None
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._write_lock = asyncio.Lock()

    def lock(self, key: str) -> asyncio.Lock:
        """Return the mutex guarding read-modify-write sequences on ``key``."""
        if key not in self._key_locks:
            self._key_locks[key] = asyncio.Lock()
        return self._key_locks[key]

    async def _load(self) -> Dict[str, Any]:
        """Load the document from disk on first access."""
        if self._data is not None:
            return self._data

        if not os.path.exists(self.store_file):
            self._data = {}
            return self._data

        try:
            async with aiofiles.open(self.store_file, "r", encoding="utf-8") as f:
                raw = await f.read()
        except OSError as e:
            logger.error(f"Failed to read local store {self.store_file}: {e}")
            raise StorageError(
                ErrorCode.E501_STORAGE_READ_FAILED,
                f"Cannot load local store: {e}",
                {"path": self.store_file},
            ) from e

        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            logger.error(f"Corrupted local store {self.store_file}: {e}")
            raise StorageError(
                ErrorCode.E503_STORAGE_CORRUPTED,
                f"Local store is corrupted: {e}",
                {"path": self.store_file},
            ) from e

        if not isinstance(data, dict):
            raise StorageError(
                ErrorCode.E503_STORAGE_CORRUPTED,
                "Local store root is not an object",
                {"path": self.store_file},
            )

        # Another coroutine may have loaded or written while we were reading
        if self._data is None:
            self._data = data
            logger.debug(f"Loaded {len(data)} keys from {self.store_file}")
        return self._data

    async def _write(self, data: Dict[str, Any]) -> None:
        """Persist ``data`` atomically. Caller holds the write lock."""
        try:
            json_data = json.dumps(data, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StorageError(
                ErrorCode.E502_STORAGE_WRITE_FAILED,
                f"Value is not JSON-serializable: {e}",
            ) from e

        try:
            Path(self.store_file).parent.mkdir(parents=True, exist_ok=True)
            temp_file = f"{self.store_file}.tmp"
            async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                await f.write(json_data)
            os.replace(temp_file, self.store_file)
        except OSError as e:
            logger.error(f"Failed to save local store: {e}")
            raise StorageError(
                ErrorCode.E502_STORAGE_WRITE_FAILED,
                f"Cannot save local store: {e}",
                {"path": self.store_file},
            ) from e

        self._data = data

    async def get_item(self, key: str, default: Any = None) -> Any:
        """Return a deep copy of the value stored under ``key``."""
        data = await self._load()
        if key not in data:
            return default
        return copy.deepcopy(data[key])

    async def set_item(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``."""
        async with self._write_lock:
            data = dict(await self._load())
            data[key] = copy.deepcopy(value)
            await self._write(data)

    async def remove_item(self, key: str) -> None:
        """Remove ``key``; removing a missing key is a no-op."""
        async with self._write_lock:
            data = await self._load()
            if key not in data:
                return
            data = dict(data)
            del data[key]
            await self._write(data)

    async def get_all_keys(self) -> List[str]:
        """Return every stored key."""
        return list((await self._load()).keys())

    async def multi_remove(self, keys: Iterable[str]) -> int:
        """Remove several keys in one write. Returns how many existed."""
        async with self._write_lock:
            data = dict(await self._load())
            removed = 0
            for key in keys:
                if key in data:
                    del data[key]
                    removed += 1
            if removed:
                await self._write(data)
        return removed

    async def clear(self) -> None:
        """Remove every key and the backing file."""
        async with self._write_lock:
            self._data = {}
            if os.path.exists(self.store_file):
                try:
                    os.remove(self.store_file)
                except OSError as e:
                    logger.error(f"Failed to delete local store file: {e}")
                    raise StorageError(
                        ErrorCode.E502_STORAGE_WRITE_FAILED,
                        f"Cannot delete local store: {e}",
                        {"path": self.store_file},
                    ) from e
        logger.info("Local store cleared")
