"""
Local-only (offline) backend.

Keeps each dataset as one JSON array of legacy camelCase documents in a
key/value store, the layout the portal used before it moved to the hosted
database. Doubles as the fallback when the primary backend is unreachable.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from .errors import BackendRequestError, ShapeMismatchError
from .kv_store import KeyValueStore

logger = logging.getLogger(__name__)

ID_PREFIXES = {
    "quoteRequests": "QR",
    "quotes": "Q",
    "shipments": "FS",
    "invoices": "INV",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LocalStore:
    """Fallback backend over legacy record dumps."""

    name = "fallback"

    def __init__(
        self,
        store: KeyValueStore,
        now: Callable[[], datetime] = _utc_now,
    ):
        self._store = store
        self._now = now
        self._lock = threading.RLock()

    def _load(self, dataset: str) -> list[dict[str, Any]]:
        raw = self._store.get(dataset)
        if raw is None:
            return []
        try:
            docs = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ShapeMismatchError(f"local {dataset} dump is not valid JSON") from exc
        if not isinstance(docs, list):
            raise ShapeMismatchError(f"local {dataset} dump is not a list")
        return docs

    def _save(self, dataset: str, docs: list[dict[str, Any]]) -> None:
        self._store.set(dataset, json.dumps(docs, default=str))

    def _new_id(self, dataset: str) -> str:
        prefix = ID_PREFIXES.get(dataset)
        if prefix is None:
            return str(uuid.uuid4())
        # Legacy ids used the last five digits of the epoch millis.
        suffix = str(int(self._now().timestamp() * 1000))[-5:]
        return f"{prefix}-{suffix}-{uuid.uuid4().hex[:4]}"

    def fetch_all(self, dataset: str) -> list[dict[str, Any]]:
        with self._lock:
            return self._load(dataset)

    def create(self, dataset: str, doc: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            docs = self._load(dataset)
            stamp = self._now().isoformat()
            created = {**doc, "createdAt": stamp, "updatedAt": stamp}
            if not created.get("id"):
                created["id"] = self._new_id(dataset)
            docs.insert(0, created)
            self._save(dataset, docs)
            logger.debug("Created local %s record %s", dataset, created["id"])
            return created

    def update(self, dataset: str, record_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            docs = self._load(dataset)
            for index, doc in enumerate(docs):
                if str(doc.get("id")) == record_id:
                    updated = {**doc, **changes, "id": doc["id"]}
                    updated["updatedAt"] = self._now().isoformat()
                    docs[index] = updated
                    self._save(dataset, docs)
                    return updated
        raise BackendRequestError(f"local {dataset} record {record_id} not found")

    def delete(self, dataset: str, record_id: str) -> None:
        with self._lock:
            docs = self._load(dataset)
            remaining = [doc for doc in docs if str(doc.get("id")) != record_id]
            if len(remaining) == len(docs):
                raise BackendRequestError(f"local {dataset} record {record_id} not found")
            self._save(dataset, remaining)
