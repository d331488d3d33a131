"""Durable key-value storage for the offline queue.

Local backends (memory, file) are synchronous and written inline. Network
backends implement :class:`AsyncDurableStorage`; the update manager loads them
from :meth:`OptimisticUpdateManager.load_state` and writes them from a
background task so a round trip never blocks the event loop.

Backends raise :class:`StorageFailure` for any I/O problem; the update manager
catches and logs those so persistence can never break an optimistic update.
"""

from __future__ import annotations

import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Union

import structlog

from modules.milestones.errors import StorageFailure
from shared.config import Settings

logger = structlog.get_logger()

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class DurableStorage(ABC):
    """String key-value store that survives process restarts."""

    @abstractmethod
    def get_item(self, key: str) -> str | None:
        """Return the stored value, or None if the key is absent."""

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    def remove_item(self, key: str) -> None:
        """Delete ``key`` if present."""


class MemoryStorage(DurableStorage):
    """Process-local storage, mostly for tests and throwaway sessions."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._items: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileStorage(DurableStorage):
    """One JSON file per key inside a directory on local disk."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def get_item(self, key: str) -> str | None:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageFailure(f"Failed to read {path}: {e}") from e

    def set_item(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp.write_text(value, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise StorageFailure(f"Failed to write {path}: {e}") from e

    def remove_item(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageFailure(f"Failed to remove {key}: {e}") from e


class AsyncDurableStorage(ABC):
    """String key-value store reached over the network."""

    @abstractmethod
    async def get_item(self, key: str) -> str | None:
        """Return the stored value, or None if the key is absent."""

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    async def remove_item(self, key: str) -> None:
        """Delete ``key`` if present."""


Storage = Union[DurableStorage, AsyncDurableStorage]


class RedisStorage(AsyncDurableStorage):
    """Redis-backed storage for sessions that run next to a Redis instance.

    Without an injected client the shared one from :func:`shared.redis.get_redis`
    is used on first access.
    """

    def __init__(self, redis_client=None, namespace: str = "pipetrak"):
        self._redis = redis_client
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def _client(self):
        if self._redis is None:
            from shared.redis import get_redis

            self._redis = await get_redis()
        return self._redis

    async def get_item(self, key: str) -> str | None:
        try:
            client = await self._client()
            return await client.get(self._key(key))
        except Exception as e:
            raise StorageFailure(f"Redis get failed for {key}: {e}") from e

    async def set_item(self, key: str, value: str) -> None:
        try:
            client = await self._client()
            await client.set(self._key(key), value)
        except Exception as e:
            raise StorageFailure(f"Redis set failed for {key}: {e}") from e

    async def remove_item(self, key: str) -> None:
        try:
            client = await self._client()
            await client.delete(self._key(key))
        except Exception as e:
            raise StorageFailure(f"Redis delete failed for {key}: {e}") from e


def build_storage(settings: Settings) -> Storage:
    """Create the storage backend selected by ``milestone_storage_backend``."""
    backend = settings.milestone_storage_backend.lower()
    if backend == "memory":
        return MemoryStorage()
    if backend == "file":
        return FileStorage(settings.milestone_storage_dir)
    if backend == "redis":
        return RedisStorage()
    raise ValueError(f"Unknown storage backend: {settings.milestone_storage_backend}")
