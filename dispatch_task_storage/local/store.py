"""
Local key-value stores.

The local store is the durable on-device copy of users, tasks and sync
metadata. It behaves like browser ``localStorage``: named keys holding
JSON values, with a fixed capacity.

Contract:
- ``read`` never raises; missing or corrupt data reads as ``None``
- ``write`` raises ``StorageCapacityError`` when the quota would be exceeded
- ``clear`` removes a set of keys (scoped reset)
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..exceptions import StorageCapacityError, StorageIOError
from .file_ops import file_size, read_json, remove_file, write_text_atomic

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass(frozen=True)
class StorageKeys:
    """Names of the logical keys, namespaced by a prefix."""

    prefix: str = "tasksync"

    @property
    def users(self) -> str:
        return f"{self.prefix}_users"

    @property
    def tasks(self) -> str:
        return f"{self.prefix}_tasks"

    @property
    def last_sync(self) -> str:
        return f"{self.prefix}_last_sync"

    @property
    def device_id(self) -> str:
        return f"{self.prefix}_device_id"

    @property
    def pending_changes(self) -> str:
        return f"{self.prefix}_pending_changes"

    def cache_keys(self) -> list[str]:
        """Keys dropped by a local cache reset. The device id survives."""
        return [self.users, self.tasks, self.last_sync, self.pending_changes]


class LocalStore(ABC):
    """Abstract interface for the local key-value store."""

    @abstractmethod
    async def read(self, key: str) -> Any | None:
        """Read a value.

        Returns:
            The stored value, or None if missing or unreadable
        """
        ...

    @abstractmethod
    async def write(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value.

        Raises:
            StorageCapacityError: If the store is full
            StorageIOError: If the write fails for another reason
        """
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""
        ...

    @abstractmethod
    async def size(self) -> int:
        """Bytes currently used by all keys."""
        ...

    async def clear(self, keys: Iterable[str]) -> None:
        """Remove several keys."""
        for key in keys:
            await self.remove(key)

    async def close(self) -> None:
        """Release resources (no-op by default)."""
        pass

    @staticmethod
    def _serialize(key: str, value: Any) -> str:
        try:
            return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise StorageIOError("serialize", key, e) from e


class MemoryLocalStore(LocalStore):
    """In-memory store holding serialized strings.

    Keeps values serialized so size accounting and corrupt-data handling
    behave like the file-backed store. ``raw`` is exposed for tests.
    """

    def __init__(self, quota_bytes: int | None = None) -> None:
        self.quota_bytes = quota_bytes
        self.raw: dict[str, str] = {}

    async def read(self, key: str) -> Any | None:
        text = self.raw.get(key)
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"Corrupt local value for {key}, treating as empty")
            return None

    async def write(self, key: str, value: Any) -> None:
        text = self._serialize(key, value)
        if self.quota_bytes is not None:
            used = sum(len(v.encode("utf-8")) for k, v in self.raw.items() if k != key)
            needed = used + len(text.encode("utf-8"))
            if needed > self.quota_bytes:
                raise StorageCapacityError(key, needed, self.quota_bytes)
        self.raw[key] = text

    async def remove(self, key: str) -> None:
        self.raw.pop(key, None)

    async def size(self) -> int:
        return sum(len(v.encode("utf-8")) for v in self.raw.values())


class FileLocalStore(LocalStore):
    """File-backed store, one JSON file per key.

    Directory structure:
    {base_path}/
      {key}.json

    Writes are atomic (temp file + rename), so a crash mid-write leaves
    the previous value intact.
    """

    def __init__(self, base_path: Path | str, quota_bytes: int | None = None) -> None:
        self.base_path = Path(base_path).expanduser()
        self.quota_bytes = quota_bytes

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise StorageIOError("resolve_key", key)
        return self.base_path / f"{key}.json"

    async def read(self, key: str) -> Any | None:
        try:
            return await read_json(self._path(key))
        except StorageIOError as e:
            logger.warning(f"Unreadable local value for {key}, treating as empty: {e}")
            return None

    async def write(self, key: str, value: Any) -> None:
        path = self._path(key)
        text = self._serialize(key, value)

        if self.quota_bytes is not None:
            used = await self.size() - file_size(path)
            needed = used + len(text.encode("utf-8"))
            if needed > self.quota_bytes:
                raise StorageCapacityError(key, needed, self.quota_bytes)

        await write_text_atomic(path, text)

    async def remove(self, key: str) -> None:
        await remove_file(self._path(key))

    async def size(self) -> int:
        if not self.base_path.exists():
            return 0
        return sum(file_size(p) for p in self.base_path.glob("*.json"))
