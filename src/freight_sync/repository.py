"""
Fetch/update facade over the primary (hosted) and fallback (local-only) backends.

Read path: TTL cache -> primary -> fallback -> persisted mirror -> empty.
Only primary results are cached; degraded results never populate the cache so
the next natural expiry retries the primary. Every successful mutation drops
the dataset's cache entry before returning.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from .cache import MISS, TTLCache
from .config import SyncConfig
from .errors import SyncError
from .mirror import ABSENT, PersistentMirror
from .records import Record, decode_rows, encode_fields, record_type

logger = logging.getLogger(__name__)

DataChangeCallback = Callable[[str, "list[Record] | None"], None]


class Backend(Protocol):
    name: str

    def fetch_all(self, dataset: str) -> list[dict[str, Any]]: ...

    def create(self, dataset: str, row: dict[str, Any]) -> dict[str, Any]: ...

    def update(
        self, dataset: str, record_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None: ...

    def delete(self, dataset: str, record_id: str) -> None: ...


@dataclass
class FetchResult:
    """Records plus where they came from.

    ``degraded`` is set for fallback, mirror and empty results; ``error`` holds
    the failure that forced the degradation.
    """

    dataset: str
    records: list[Record]
    source: str
    degraded: bool = False
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"results": [r.to_dict() for r in self.records]}
        if self.degraded:
            payload["_metadata"] = {
                "stale": True,
                "source": self.source,
                "error": self.error,
            }
        return payload


@dataclass
class BackendHealth:
    failure_count: int = 0
    last_error: str | None = None
    last_error_at: float | None = None
    last_success_at: float | None = None


class DualBackendRepository:
    """Routes dataset reads and writes between the two backends."""

    def __init__(
        self,
        primary: Backend | None,
        fallback: Backend,
        cache: TTLCache,
        mirror: PersistentMirror,
        config: SyncConfig | None = None,
    ):
        self._config = config or SyncConfig()
        if self._config.primary_enabled and primary is None:
            raise ValueError("primary backend is required when primary_enabled is set")
        self._primary = primary
        self._fallback = fallback
        self._cache = cache
        self._mirror = mirror
        self._listeners: dict[str, list[DataChangeCallback]] = {}
        self._listeners_lock = threading.RLock()
        self._health = {"primary": BackendHealth(), "fallback": BackendHealth()}

    @property
    def mode(self) -> str:
        return "primary" if self._config.primary_enabled else "local"

    def _record_failure(self, backend: str, exc: Exception) -> None:
        health = self._health[backend]
        health.failure_count += 1
        health.last_error = f"{exc.__class__.__name__}: {exc}"
        health.last_error_at = time.time()

    def _record_success(self, backend: str) -> None:
        health = self._health[backend]
        health.failure_count = 0
        health.last_error = None
        health.last_success_at = time.time()

    def on_data_change(self, dataset: str, callback: DataChangeCallback) -> Callable[[], None]:
        """Register ``callback(dataset, records)``; ``records`` is None after a write."""
        record_type(dataset)
        with self._listeners_lock:
            self._listeners.setdefault(dataset, []).append(callback)

        def unsubscribe() -> None:
            with self._listeners_lock:
                callbacks = self._listeners.get(dataset, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def _emit(self, dataset: str, records: list[Record] | None) -> None:
        with self._listeners_lock:
            callbacks = list(self._listeners.get(dataset, []))
        for callback in callbacks:
            try:
                callback(dataset, records)
            except Exception:
                logger.exception("Data change listener failed for %s", dataset)

    def _populate(self, dataset: str, records: list[Record], mirror: bool) -> None:
        self._cache.set(dataset, records)
        if mirror:
            self._mirror.write(dataset, [r.to_dict() for r in records])

    def _fetch_fallback(self, dataset: str) -> list[Record]:
        rows = self._fallback.fetch_all(dataset)
        records = decode_rows(dataset, rows, "fallback")
        self._record_success("fallback")
        return records

    def _last_known(self, dataset: str, exc: Exception) -> FetchResult:
        snapshot = self._mirror.read(dataset)
        if snapshot is not ABSENT and isinstance(snapshot, list):
            logger.warning("Serving last mirrored %s because both backends failed", dataset)
            return FetchResult(
                dataset,
                decode_rows(dataset, snapshot, "snapshot"),
                "mirror",
                degraded=True,
                error=str(exc),
            )
        logger.warning("No data available for %s: %s", dataset, exc)
        return FetchResult(dataset, [], "empty", degraded=True, error=str(exc))

    def fetch_all(self, dataset: str) -> FetchResult:
        record_type(dataset)
        with self._cache.lock_for(dataset):
            cached = self._cache.get(dataset)
            if cached is not MISS:
                return FetchResult(dataset, list(cached), "cache")

            if self._primary is None or not self._config.primary_enabled:
                try:
                    records = self._fetch_fallback(dataset)
                except Exception as exc:
                    self._record_failure("fallback", exc)
                    logger.warning("Local-only fetch of %s failed: %s", dataset, exc)
                    return self._last_known(dataset, exc)
                self._populate(dataset, records, mirror=False)
                self._emit(dataset, records)
                return FetchResult(dataset, list(records), "fallback")

            try:
                rows = self._primary.fetch_all(dataset)
                records = decode_rows(dataset, rows, "primary")
            except Exception as primary_exc:
                self._record_failure("primary", primary_exc)
                if not isinstance(primary_exc, SyncError):
                    logger.exception("Unexpected primary error fetching %s", dataset)
                if not self._config.auto_fallback_on_error:
                    return self._last_known(dataset, primary_exc)

                logger.warning("Primary fetch of %s failed, falling back to local", dataset)
                try:
                    records = self._fetch_fallback(dataset)
                except Exception as fallback_exc:
                    self._record_failure("fallback", fallback_exc)
                    logger.warning("Fallback fetch of %s also failed: %s", dataset, fallback_exc)
                    return self._last_known(dataset, fallback_exc)
                return FetchResult(
                    dataset, records, "fallback", degraded=True, error=str(primary_exc)
                )

            self._record_success("primary")
            self._populate(dataset, records, mirror=True)
            self._emit(dataset, records)
            return FetchResult(dataset, list(records), "primary")

    def get_all(self, dataset: str) -> list[Record]:
        return self.fetch_all(dataset).records

    def refresh(self, dataset: str) -> FetchResult:
        """Drop the in-memory entry and refetch; the mirror keeps its snapshot."""
        self._cache.invalidate(dataset)
        return self.fetch_all(dataset)

    def invalidate(self, dataset: str) -> None:
        self._cache.invalidate(dataset)
        self._mirror.remove(dataset)

    def clear_cache(self) -> None:
        self._cache.clear()
        self._mirror.clear()

    def _write_backend(self) -> tuple[str, Backend]:
        if self._config.primary_enabled and self._primary is not None:
            return "primary", self._primary
        return "fallback", self._fallback

    def _decode_written(self, dataset: str, source: str, row: dict[str, Any] | None) -> Record | None:
        if row is None:
            return None
        decoded = decode_rows(dataset, [row], source)
        return decoded[0] if decoded else None

    def _mutate(self, dataset: str, action: str, call: Callable[[Backend, str], Any]) -> Any:
        record_type(dataset)
        label, backend = self._write_backend()
        with self._cache.lock_for(dataset):
            try:
                result = call(backend, label)
            except Exception as exc:
                self._record_failure(label, exc)
                logger.warning("%s on %s via %s backend failed: %s", action, dataset, label, exc)
                raise
            self._record_success(label)
            self.invalidate(dataset)
        self._emit(dataset, None)
        return result

    def create(self, dataset: str, values: dict[str, Any]) -> Record | None:
        def call(backend: Backend, label: str) -> Record | None:
            row = backend.create(dataset, encode_fields(dataset, values, label))
            return self._decode_written(dataset, label, row)

        return self._mutate(dataset, "create", call)

    def update(self, dataset: str, record_id: str, changes: dict[str, Any]) -> Record | None:
        def call(backend: Backend, label: str) -> Record | None:
            row = backend.update(dataset, record_id, encode_fields(dataset, changes, label))
            return self._decode_written(dataset, label, row)

        return self._mutate(dataset, "update", call)

    def delete(self, dataset: str, record_id: str) -> None:
        self._mutate(dataset, "delete", lambda backend, _label: backend.delete(dataset, record_id))

    def get_health(self) -> dict[str, Any]:
        datasets: dict[str, Any] = {}
        now = time.time()
        for key in self._cache.keys():
            entry = self._cache.peek(key)
            if entry is not None:
                datasets[key] = {
                    "fetchedAt": entry.fetched_at,
                    "fresh": entry.is_fresh(now),
                    "count": len(entry.payload),
                }
        health: dict[str, Any] = {
            "mode": self.mode,
            "autoFallbackOnError": self._config.auto_fallback_on_error,
            "useLocalMirror": self._mirror.enabled,
            "cacheTtlSeconds": self._cache.ttl_seconds,
            "datasets": datasets,
            "mirrorDroppedWrites": self._mirror.dropped_writes,
        }
        for name, state in self._health.items():
            health[name] = {
                "failureCount": state.failure_count,
                "lastError": state.last_error,
                "lastErrorAt": state.last_error_at,
                "lastSuccessAt": state.last_success_at,
            }
        return health
