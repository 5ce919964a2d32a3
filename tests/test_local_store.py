from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from freight_sync.errors import BackendRequestError, ShapeMismatchError
from freight_sync.kv_store import MemoryKeyValueStore
from freight_sync.local_store import LocalStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _local(docs: dict | None = None) -> tuple[LocalStore, MemoryKeyValueStore]:
    store = MemoryKeyValueStore()
    for dataset, rows in (docs or {}).items():
        store.set(dataset, json.dumps(rows))
    return LocalStore(store, now=lambda: NOW), store


def test_fetch_all_of_empty_dataset():
    local, _ = _local()

    assert local.fetch_all("quotes") == []


def test_create_prepends_and_stamps():
    local, store = _local({"quotes": [{"id": "Q-0"}]})

    created = local.create("quotes", {"customerId": "cust-1", "totalAmount": 10})

    assert created["id"].startswith("Q-")
    assert created["createdAt"] == NOW.isoformat()
    assert created["updatedAt"] == NOW.isoformat()
    docs = json.loads(store.get("quotes"))
    assert [d["id"] for d in docs] == [created["id"], "Q-0"]


def test_create_keeps_given_id():
    local, _ = _local()

    created = local.create("users", {"id": "cust-9", "name": "Ada"})

    assert created["id"] == "cust-9"


def test_update_merges_changes():
    local, _ = _local({"shipments": [{"id": "FS-1", "status": "Booked"}]})

    updated = local.update("shipments", "FS-1", {"status": "In Transit"})

    assert updated["status"] == "In Transit"
    assert updated["updatedAt"] == NOW.isoformat()
    assert local.fetch_all("shipments")[0]["status"] == "In Transit"


def test_update_and_delete_of_missing_record_raise():
    local, _ = _local({"shipments": [{"id": "FS-1"}]})

    with pytest.raises(BackendRequestError):
        local.update("shipments", "FS-404", {"status": "Lost"})
    with pytest.raises(BackendRequestError):
        local.delete("shipments", "FS-404")


def test_delete_removes_record():
    local, _ = _local({"invoices": [{"id": "INV-1"}, {"id": "INV-2"}]})

    local.delete("invoices", "INV-1")

    assert [d["id"] for d in local.fetch_all("invoices")] == ["INV-2"]


def test_corrupt_dump_is_a_shape_mismatch():
    store = MemoryKeyValueStore()
    store.set("quotes", "{broken")
    local = LocalStore(store)

    with pytest.raises(ShapeMismatchError):
        local.fetch_all("quotes")
