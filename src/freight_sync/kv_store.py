"""
Durable key/value stores backing the persistent mirror and local-only mode.

Both stores behave like browser localStorage: string values, a fixed capacity,
and a ``CapacityError`` when a write would overflow it. Size is counted as
``len(key) + len(value)``.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from typing import Protocol, runtime_checkable

from .errors import CapacityError

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    capacity_bytes: int | None

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def list_keys(self, prefix: str = "") -> list[str]: ...

    def used_bytes(self) -> int: ...


def _entry_size(key: str, value: str) -> int:
    return len(key) + len(value)


class MemoryKeyValueStore:
    """Process-local store; contents are lost on exit."""

    def __init__(self, capacity_bytes: int | None = None):
        self.capacity_bytes = capacity_bytes
        self._data: dict[str, str] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if self.capacity_bytes is not None:
                current = self._data.get(key)
                used = self.used_bytes()
                if current is not None:
                    used -= _entry_size(key, current)
                if used + _entry_size(key, value) > self.capacity_bytes:
                    raise CapacityError(
                        f"writing {key!r} would exceed {self.capacity_bytes} bytes"
                    )
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [key for key in self._data if key.startswith(prefix)]

    def used_bytes(self) -> int:
        with self._lock:
            return sum(_entry_size(k, v) for k, v in self._data.items())


class SqliteKeyValueStore:
    """Single-table SQLite store shared by every thread of the process."""

    def __init__(self, path: str, capacity_bytes: int | None = None):
        self.capacity_bytes = capacity_bytes
        self._path = path
        directory = os.path.dirname(os.path.abspath(path))
        if path != ":memory:":
            os.makedirs(directory, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        with self._lock, self._conn:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )

    def get(self, key: str) -> str | None:
        with self._lock:
            row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if self.capacity_bytes is not None:
                row = self._conn.execute(
                    "SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) FROM kv WHERE key != ?",
                    (key,),
                ).fetchone()
                if row[0] + _entry_size(key, value) > self.capacity_bytes:
                    raise CapacityError(
                        f"writing {key!r} would exceed {self.capacity_bytes} bytes"
                    )
            with self._conn:
                self._conn.execute(
                    "INSERT INTO kv (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, value),
                )

    def remove(self, key: str) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def list_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            rows = self._conn.execute("SELECT key FROM kv ORDER BY key").fetchall()
        return [row[0] for row in rows if row[0].startswith(prefix)]

    def used_bytes(self) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) FROM kv"
            ).fetchone()
        return int(row[0])

    def close(self) -> None:
        with self._lock:
            self._conn.close()
