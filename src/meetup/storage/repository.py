"""Versioned JSON documents over a KeyValueStore.

Every subsystem keeps its state as one JSON document per storage key
(an array of records, a map of per-user lists, or a plain object) and
rewrites the whole document on each mutation.

- ``DocumentStore`` is built once per process. It owns the cache (keyed
  by storage key, no TTL) and one ``asyncio.Lock`` per key.
- ``Repository.load()`` returns a private deep copy plus a version token
  (a digest of the stored text). ``save()`` re-reads the stored text and
  raises ``ConflictError`` if it no longer matches the token.
- ``Repository.mutate()`` runs load -> fn -> save under the key's lock
  and retries once from a fresh read on conflict.

The cache only changes after a successful write.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import inspect
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import structlog
from pydantic import ValidationError

from meetup.errors import ConflictError, SchemaVersionError, StorageFailureError
from meetup.storage.kv import KeyValueStore

logger = structlog.get_logger()

T = TypeVar("T")
E = TypeVar("E")
R = TypeVar("R")

# Token for a document that could not be read; never matches a stored digest.
UNREADABLE = "!unreadable"


def version_of(raw: str | None) -> str:
    """Version token for a stored document ('' for an absent key)."""
    if raw is None:
        return ""
    return hashlib.blake2b(raw.encode("utf-8"), digest_size=16).hexdigest()


def dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


@dataclass(frozen=True)
class Snapshot(Generic[T]):
    """A decoded document and the version it was read at."""

    value: T
    version: str


class DocumentStore:
    """Process-wide cache and per-key locks for every repository."""

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv
        self._cache: dict[str, Snapshot[Any]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def cached(self, key: str) -> Snapshot[Any] | None:
        return self._cache.get(key)

    def remember(self, key: str, snapshot: Snapshot[Any]) -> None:
        self._cache[key] = snapshot

    def clear_cache(self, key: str | None = None) -> None:
        """Drop one key's cached document, or all of them."""
        if key is None:
            self._cache.clear()
        else:
            self._cache.pop(key, None)

    async def list_keys(self, prefix: str = "") -> list[str]:
        keys = await self.kv.list_keys()
        return [k for k in keys if k.startswith(prefix)]


SavedHook = Callable[[Any], Awaitable[None]]


class Repository(Generic[T]):
    """One JSON document stored under one key."""

    def __init__(
        self,
        store: DocumentStore,
        key: str,
        *,
        decode: Callable[[Any], T],
        encode: Callable[[T], Any],
        default: Callable[[], T],
        on_saved: SavedHook | None = None,
    ) -> None:
        self.store = store
        self.key = key
        self._decode = decode
        self._encode = encode
        self._default = default
        self._on_saved = on_saved

    # -- reads ---------------------------------------------------------------

    async def load(self) -> Snapshot[T]:
        """Return the document and its version. Never raises."""
        cached = self.store.cached(self.key)
        if cached is not None:
            return Snapshot(copy.deepcopy(cached.value), cached.version)

        try:
            raw = await self.store.kv.get(self.key)
        except StorageFailureError:
            logger.warning("document_read_failed", key=self.key, exc_info=True)
            return Snapshot(self._default(), UNREADABLE)

        version = version_of(raw)
        value = self._default()
        if raw is not None:
            try:
                value = self._decode(json.loads(raw))
            except (ValueError, TypeError, ValidationError):
                logger.warning("document_unparseable", key=self.key, exc_info=True)
                value = self._default()

        self.store.remember(self.key, Snapshot(value, version))
        return Snapshot(copy.deepcopy(value), version)

    async def load_all(self) -> T:
        """The document value alone."""
        return (await self.load()).value

    # -- writes --------------------------------------------------------------

    def _carry_over(self, raw: str | None) -> Any:
        """Stored data the decoder could not represent, re-emitted on save."""
        return None

    def _serialize(self, value: T, carried: Any) -> str:
        return dumps(self._encode(value))

    async def save(self, value: T, version: str) -> bool:
        """Write the whole document.

        Returns False when the store fails, leaving the stored document and
        the cache as they were. Raises ConflictError if the stored document
        changed since ``version`` was read.
        """
        try:
            current = await self.store.kv.get(self.key)
        except StorageFailureError:
            logger.warning("document_save_failed", key=self.key, stage="read", exc_info=True)
            return False

        if version_of(current) != version:
            msg = f"Document {self.key} changed since it was read"
            raise ConflictError(msg)

        payload = self._serialize(value, self._carry_over(current))
        try:
            await self.store.kv.set(self.key, payload)
        except StorageFailureError:
            logger.warning("document_save_failed", key=self.key, stage="write", exc_info=True)
            return False

        fresh = self._decode(json.loads(payload))
        self.store.remember(self.key, Snapshot(fresh, version_of(payload)))

        if self._on_saved is not None:
            try:
                await self._on_saved(copy.deepcopy(fresh))
            except Exception:
                logger.warning("document_save_hook_failed", key=self.key, exc_info=True)
        return True

    async def mutate(self, fn: Callable[[T], R] | Callable[[T], Awaitable[R]]) -> R:
        """Apply ``fn`` to a private copy of the document and persist it.

        ``fn`` mutates its argument in place and may return a result.
        Exceptions raised by ``fn`` abort the write.
        """
        async with self.store.lock(self.key):
            for attempt in range(2):
                snapshot = await self.load()
                result = fn(snapshot.value)
                if inspect.isawaitable(result):
                    result = await result
                try:
                    saved = await self.save(snapshot.value, snapshot.version)
                except ConflictError:
                    if attempt:
                        raise
                    logger.info("document_conflict_retry", key=self.key)
                    self.store.clear_cache(self.key)
                    continue
                if not saved:
                    msg = f"Could not write {self.key}"
                    raise StorageFailureError(msg)
                return result  # type: ignore[return-value]
        raise AssertionError("unreachable")

    async def replace(self, value: T) -> bool:
        """Overwrite the document regardless of its current version."""
        async with self.store.lock(self.key):
            try:
                current = await self.store.kv.get(self.key)
            except StorageFailureError:
                logger.warning("document_save_failed", key=self.key, stage="read", exc_info=True)
                return False
            return await self.save(value, version_of(current))

    async def remove(self) -> None:
        """Delete the stored document and its cache entry."""
        async with self.store.lock(self.key):
            await self.store.kv.remove(self.key)
            self.store.clear_cache(self.key)

    def clear_cache(self) -> None:
        self.store.clear_cache(self.key)


class RecordCollection(Repository[list[E]]):
    """A JSON array of records, each decoded on its own.

    Records the decoder refuses with ``SchemaVersionError`` (written by a
    newer app version) are skipped on read and written back untouched.
    Records that fail validation in any other way are dropped.
    """

    def __init__(
        self,
        store: DocumentStore,
        key: str,
        *,
        validate: Callable[[Any], E],
        serialize: Callable[[E], Any],
        on_saved: SavedHook | None = None,
    ) -> None:
        self._validate = validate
        self._serialize_record = serialize
        super().__init__(
            store,
            key,
            decode=self._decode_records,
            encode=lambda records: [serialize(r) for r in records],
            default=list,
            on_saved=on_saved,
        )

    def _decode_records(self, data: Any) -> list[E]:
        if not isinstance(data, list):
            msg = f"{self.key} is not a JSON array"
            raise TypeError(msg)
        records: list[E] = []
        for raw in data:
            try:
                records.append(self._validate(raw))
            except SchemaVersionError:
                continue
            except (ValueError, TypeError, ValidationError):
                logger.warning("record_dropped", key=self.key, exc_info=True)
        return records

    def _carry_over(self, raw: str | None) -> list[Any]:
        if raw is None:
            return []
        try:
            data = json.loads(raw)
        except ValueError:
            return []
        if not isinstance(data, list):
            return []
        carried = []
        for record in data:
            try:
                self._validate(record)
            except SchemaVersionError:
                carried.append(record)
            except (ValueError, TypeError, ValidationError):
                continue
        return carried

    def _serialize(self, value: list[E], carried: Any) -> str:
        return dumps([self._serialize_record(r) for r in value] + list(carried or []))


def json_document(
    store: DocumentStore,
    key: str,
    default: Callable[[], Any] = dict,
    on_saved: SavedHook | None = None,
) -> Repository[Any]:
    """Repository for a schemaless JSON value (dict or list)."""
    expected = type(default())

    def decode(data: Any) -> Any:
        if not isinstance(data, expected):
            msg = f"{key} is not a JSON {expected.__name__}"
            raise TypeError(msg)
        return data

    return Repository(store, key, decode=decode, encode=lambda v: v, default=default, on_saved=on_saved)
