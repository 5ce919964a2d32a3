"""
In-memory TTL cache for dataset snapshots.

Entries are fresh for ``ttl`` seconds after they were fetched. The cache never
serves a stale entry; the repository decides what to do on a miss.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

DEFAULT_TTL_SECONDS = 5.0


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Missing()


@dataclass
class CacheEntry:
    """Cached payload for one dataset key."""

    key: str
    payload: Any
    fetched_at: float
    ttl: float = DEFAULT_TTL_SECONDS

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


class TTLCache:
    """Thread-safe map from dataset key to (payload, fetch time)."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._key_locks: dict[str, threading.RLock] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def lock_for(self, key: str) -> threading.RLock:
        """Per-key mutex held across a get -> fetch -> set sequence."""
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._key_locks[key] = lock
            return lock

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.is_fresh(self._clock()):
                return MISS
            return entry.payload

    def set(self, key: str, payload: Any, ttl_seconds: float | None = None) -> CacheEntry:
        entry = CacheEntry(
            key=key,
            payload=payload,
            fetched_at=self._clock(),
            ttl=self._ttl if ttl_seconds is None else ttl_seconds,
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def peek(self, key: str) -> CacheEntry | None:
        """Return the raw entry, fresh or not."""
        with self._lock:
            return self._entries.get(key)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)
