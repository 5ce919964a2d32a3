from __future__ import annotations

import pytest

from freight_sync.errors import CapacityError
from freight_sync.kv_store import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path) -> KeyValueStore:
    if request.param == "memory":
        return MemoryKeyValueStore(capacity_bytes=100)
    return SqliteKeyValueStore(str(tmp_path / "kv" / "store.sqlite3"), capacity_bytes=100)


def test_set_get_remove(store: KeyValueStore):
    store.set("cache_quotes", "[]")

    assert store.get("cache_quotes") == "[]"
    store.remove("cache_quotes")
    assert store.get("cache_quotes") is None


def test_capacity_counts_key_and_value(store: KeyValueStore):
    store.set("a", "x" * 60)

    assert store.used_bytes() == 61
    with pytest.raises(CapacityError):
        store.set("b", "y" * 40)
    assert store.get("b") is None


def test_overwrite_does_not_double_count(store: KeyValueStore):
    store.set("a", "x" * 90)
    store.set("a", "z" * 95)

    assert store.get("a") == "z" * 95
    assert store.used_bytes() == 96


def test_list_keys_by_prefix(store: KeyValueStore):
    store.set("cache_quotes", "1")
    store.set("cache_shipments", "2")
    store.set("notifications_u1", "3")

    assert sorted(store.list_keys("cache_")) == ["cache_quotes", "cache_shipments"]
    assert len(store.list_keys()) == 3


def test_sqlite_store_persists_across_instances(tmp_path):
    path = str(tmp_path / "store.sqlite3")
    first = SqliteKeyValueStore(path)
    first.set("last_checked_messages_u1", "2024-01-01T00:00:00+00:00")
    first.close()

    second = SqliteKeyValueStore(path)

    assert second.get("last_checked_messages_u1") == "2024-01-01T00:00:00+00:00"


def test_unlimited_store_never_raises():
    store = MemoryKeyValueStore()
    store.set("big", "x" * 100_000)

    assert store.capacity_bytes is None
    assert isinstance(store, KeyValueStore)
