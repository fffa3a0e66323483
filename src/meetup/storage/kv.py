"""Durable string key-value stores.

The data layer only needs four async operations. Backends translate
their own failures into ``StorageFailureError`` so callers handle one
exception type.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import structlog
from redis.exceptions import RedisError

from meetup.errors import StorageFailureError

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = structlog.get_logger()


class KeyValueStore(Protocol):
    """Async string KV store with no cross-key atomicity."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...

    async def list_keys(self) -> list[str]: ...


class MemoryKeyValueStore:
    """Dict-backed store for tests and single-process local runs."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self) -> list[str]:
        return list(self._data)

    def dump(self) -> dict[str, str]:
        """Copy of the raw contents."""
        return dict(self._data)


class RedisKeyValueStore:
    """Store backed by a ``redis.asyncio`` client with ``decode_responses=True``."""

    def __init__(self, redis: Redis, prefix: str = "") -> None:
        self.redis = redis
        self.prefix = prefix

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> str | None:
        try:
            return await self.redis.get(self._k(key))
        except RedisError as e:
            msg = f"GET {key} failed: {e}"
            raise StorageFailureError(msg) from e

    async def set(self, key: str, value: str) -> None:
        try:
            await self.redis.set(self._k(key), value)
        except RedisError as e:
            msg = f"SET {key} failed: {e}"
            raise StorageFailureError(msg) from e

    async def remove(self, key: str) -> None:
        try:
            await self.redis.delete(self._k(key))
        except RedisError as e:
            msg = f"DEL {key} failed: {e}"
            raise StorageFailureError(msg) from e

    async def list_keys(self) -> list[str]:
        try:
            keys = [k async for k in self.redis.scan_iter(match=f"{self.prefix}*", count=500)]
        except RedisError as e:
            msg = f"SCAN failed: {e}"
            raise StorageFailureError(msg) from e
        return [k[len(self.prefix):] for k in keys]
