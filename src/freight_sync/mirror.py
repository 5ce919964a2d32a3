"""
Persistent mirror of the TTL cache plus quota-aware eviction.

Every successful cache write is copied into the key/value store under
``cache_<key>`` so a cold start can render stale-but-present data before the
network answers. Writes never raise: on a capacity error the evictor runs once,
the write is retried once, and a second failure is dropped.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Callable
from typing import Any

from .errors import CapacityError
from .kv_store import KeyValueStore

logger = logging.getLogger(__name__)

CACHE_PREFIX = "cache_"
VOLATILE_PREFIXES = ("notifications_", "last_checked_", "quoteRequests", "quotes", "shipments")
OVERSIZED_ENTRY_BYTES = 10_000


class _Absent:
    __slots__ = ()

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT: Any = _Absent()


class QuotaEvictor:
    """Frees space in a key/value store that rejected a write."""

    def __init__(
        self,
        store: KeyValueStore,
        volatile_prefixes: tuple[str, ...] = VOLATILE_PREFIXES,
        max_entry_bytes: int = OVERSIZED_ENTRY_BYTES,
    ):
        self._store = store
        self._volatile_prefixes = volatile_prefixes
        self._max_entry_bytes = max_entry_bytes

    def _fits(self, required_bytes: int) -> bool:
        capacity = self._store.capacity_bytes
        if capacity is None:
            return True
        return self._store.used_bytes() + required_bytes <= capacity

    def _volatile_sizes(self) -> dict[str, int]:
        sizes: dict[str, int] = {}
        for key in self._store.list_keys():
            if not any(prefix in key for prefix in self._volatile_prefixes):
                continue
            value = self._store.get(key)
            if value is not None:
                sizes[key] = len(value)
        return sizes

    def evict(self, required_bytes: int = 0, pending_key: str | None = None) -> list[str]:
        """Remove disposable entries and return the removed keys.

        Cache entries go first and unconditionally, then oversized volatile
        entries. Only when neither step removed anything are the largest
        volatile entries dropped until ``required_bytes`` fits, and never to
        make room for a ``cache_`` write: a snapshot that cannot fit is
        dropped instead of displacing per-user state.
        """
        removed: list[str] = []

        cache_keys = self._store.list_keys(CACHE_PREFIX)
        for key in cache_keys:
            self._store.remove(key)
            removed.append(key)
        if cache_keys:
            logger.info("Cleared %d cache entries to free up space", len(cache_keys))

        sizes = self._volatile_sizes()
        for key, size in list(sizes.items()):
            if size > self._max_entry_bytes:
                self._store.remove(key)
                removed.append(key)
                del sizes[key]
                logger.info("Removed large item: %s (%d bytes)", key, size)

        if removed or (pending_key or "").startswith(CACHE_PREFIX):
            if not removed:
                logger.warning("Quota eviction found nothing to remove for %s", pending_key)
            return removed

        for key in sorted(sizes, key=sizes.__getitem__, reverse=True):
            if removed and self._fits(required_bytes):
                break
            self._store.remove(key)
            removed.append(key)
            logger.info("Removed volatile item: %s (%d bytes)", key, sizes[key])

        if not removed:
            logger.warning("Quota eviction found nothing to remove")
        return removed


class PersistentMirror:
    """Durable, exception-safe copy of cache snapshots and per-user state."""

    def __init__(
        self,
        store: KeyValueStore,
        evictor: QuotaEvictor | None = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._evictor = evictor or QuotaEvictor(store)
        self._enabled = enabled
        self._clock = clock
        self.dropped_writes = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @staticmethod
    def cache_key(key: str) -> str:
        return f"{CACHE_PREFIX}{key}"

    def _store_text(self, raw_key: str, text: str) -> bool:
        try:
            self._store.set(raw_key, text)
            return True
        except CapacityError:
            logger.warning("Persistent store quota exceeded writing %s, evicting", raw_key)
        except (OSError, sqlite3.Error) as exc:
            logger.warning("Failed to persist %s: %s", raw_key, exc)
            self.dropped_writes += 1
            return False

        self._evictor.evict(required_bytes=len(raw_key) + len(text), pending_key=raw_key)
        try:
            self._store.set(raw_key, text)
            return True
        except (CapacityError, OSError, sqlite3.Error) as exc:
            logger.warning("Failed to persist %s even after eviction: %s", raw_key, exc)
            self.dropped_writes += 1
            return False

    def write(self, key: str, payload: Any) -> bool:
        """Snapshot ``payload`` under ``cache_<key>``. Returns False if dropped."""
        if not self._enabled:
            return False
        snapshot = {"data": payload, "timestamp": int(self._clock() * 1000)}
        return self._store_text(self.cache_key(key), json.dumps(snapshot, default=str))

    def read(self, key: str) -> Any:
        entry = self.read_entry(key)
        if entry is ABSENT:
            return ABSENT
        return entry["data"]

    def read_entry(self, key: str) -> Any:
        """Return the raw ``{"data", "timestamp"}`` snapshot or ABSENT."""
        if not self._enabled:
            return ABSENT
        raw = self._store.get(self.cache_key(key))
        if raw is None:
            return ABSENT
        try:
            entry = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable mirror entry %s", key)
            self._store.remove(self.cache_key(key))
            return ABSENT
        if not isinstance(entry, dict) or "data" not in entry:
            return ABSENT
        return entry

    def remove(self, key: str) -> None:
        if self._enabled:
            self._store.remove(self.cache_key(key))

    def clear(self) -> None:
        if not self._enabled:
            return
        for key in self._store.list_keys(CACHE_PREFIX):
            self._store.remove(key)

    def put(self, raw_key: str, value: Any) -> bool:
        """Persist a JSON value under a non-namespaced key."""
        if not self._enabled:
            return False
        return self._store_text(raw_key, json.dumps(value, default=str))

    def put_text(self, raw_key: str, text: str) -> bool:
        if not self._enabled:
            return False
        return self._store_text(raw_key, text)

    def get(self, raw_key: str) -> Any:
        text = self.get_text(raw_key)
        if text is None:
            return ABSENT
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable persisted value %s", raw_key)
            return ABSENT

    def get_text(self, raw_key: str) -> str | None:
        if not self._enabled:
            return None
        return self._store.get(raw_key)

    def delete(self, raw_key: str) -> None:
        if self._enabled:
            self._store.remove(raw_key)
