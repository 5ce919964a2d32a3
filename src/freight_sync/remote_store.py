"""
Hosted database client (PostgREST over HTTP).

Maintains a pooled ``requests`` session with per-call timeouts, failure
bookkeeping for health reporting, and one reconnect-and-retry when a pooled
connection turns out to be dead. Any other transient failure is surfaced
immediately; the next natural fetch or poll cycle is the retry.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from datetime import datetime
from typing import Any

import requests

from .errors import (
    BackendRequestError,
    CapacityError,
    PermissionDeniedError,
    ShapeMismatchError,
    SyncError,
    TransientBackendError,
)
from .records import Message

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

DATASET_TABLES = {
    "users": "users",
    "quoteRequests": "quote_requests",
    "quotes": "quotes",
    "shipments": "shipments",
    "invoices": "invoices",
}
MESSAGES_TABLE = "messages"
NOTIFICATIONS_TABLE = "notifications"

Filters = dict[str, Any]


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def encode_filters(filters: Filters | None) -> dict[str, str]:
    """Turn ``{"col": value}`` / ``{"col": ("op", value)}`` into PostgREST params."""
    params: dict[str, str] = {}
    for column, condition in (filters or {}).items():
        op, value = condition if isinstance(condition, tuple) else ("eq", condition)
        if op == "in":
            params[column] = "in.(" + ",".join(_format_value(v) for v in value) + ")"
        else:
            params[column] = f"{op}.{_format_value(value)}"
    return params


class RemoteStore:
    """Thread-safe CRUD client for the hosted database."""

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        self._url = (url or os.getenv("FREIGHT_SYNC_REMOTE_URL", "")).rstrip("/")
        self._api_key = api_key or os.getenv("FREIGHT_SYNC_REMOTE_API_KEY")
        self._timeout_seconds = timeout_seconds
        self._session = session
        self._lock = threading.RLock()

        self._failure_count = 0
        self._last_error: str | None = None
        self._last_failure_at: float | None = None
        self._last_success_at: float | None = None

    @property
    def configured(self) -> bool:
        return bool(self._url)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _ensure_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _reset_session(self) -> None:
        if self._session is not None:
            try:
                self._session.close()
            except Exception as exc:
                logger.debug("Remote session close failed: %s", exc)
        self._session = None

    def _record_failure(self, exc: Exception) -> None:
        self._failure_count += 1
        self._last_failure_at = time.time()
        self._last_error = f"{exc.__class__.__name__}: {exc}"
        logger.warning("Remote store call failed (%s): %s", exc.__class__.__name__, exc)

    def _record_success(self) -> None:
        self._failure_count = 0
        self._last_error = None
        self._last_success_at = time.time()

    @staticmethod
    def _raise_for_response(response: requests.Response, table: str) -> None:
        status = response.status_code
        if status < 400:
            return
        detail = response.text[:200]
        message = f"{table}: HTTP {status} {detail}".strip()
        if status in (401, 403):
            raise PermissionDeniedError(message)
        if status in (413, 507):
            raise CapacityError(message)
        if status == 408 or status == 429 or status >= 500:
            raise TransientBackendError(message)
        raise BackendRequestError(message)

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> Any:
        if not self.configured:
            raise TransientBackendError("remote store URL is not configured")

        url = f"{self._url}/rest/v1/{table}"
        headers = self._headers()
        if prefer:
            headers["Prefer"] = prefer
        with self._lock:
            for attempt in range(2):
                session = self._ensure_session()
                try:
                    response = session.request(
                        method,
                        url,
                        params=params,
                        json=json_body,
                        headers=headers,
                        timeout=self._timeout_seconds,
                    )
                    self._raise_for_response(response, table)
                    self._record_success()
                    if not response.content:
                        return None
                    return response.json()
                except requests.ConnectionError as exc:
                    self._record_failure(exc)
                    self._reset_session()
                    if attempt == 1:
                        raise TransientBackendError(
                            f"remote store unreachable for {table}: {exc}"
                        ) from exc
                except requests.Timeout as exc:
                    self._record_failure(exc)
                    raise TransientBackendError(
                        f"remote store timed out for {table} after {self._timeout_seconds}s"
                    ) from exc
                except requests.JSONDecodeError as exc:
                    self._record_failure(exc)
                    raise BackendRequestError(f"{table}: response is not JSON") from exc
                except requests.RequestException as exc:
                    self._record_failure(exc)
                    raise TransientBackendError(f"remote store request failed: {exc}") from exc
                except SyncError as exc:
                    self._record_failure(exc)
                    raise

        raise TransientBackendError("remote store unavailable")

    def select(
        self,
        table: str,
        filters: Filters | None = None,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        params = {"select": "*", **encode_filters(filters)}
        if order:
            params["order"] = order
        rows = self._request("GET", table, params=params)
        return list(rows or [])

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        rows = self._request("POST", table, json_body=row, prefer="return=representation")
        return rows[0] if rows else dict(row)

    def update(self, table: str, filters: Filters, changes: dict[str, Any]) -> list[dict[str, Any]]:
        if not filters:
            raise BackendRequestError(f"{table}: refusing unfiltered update")
        rows = self._request(
            "PATCH",
            table,
            params=encode_filters(filters),
            json_body=changes,
            prefer="return=representation",
        )
        return list(rows or [])

    def delete(self, table: str, filters: Filters) -> None:
        if not filters:
            raise BackendRequestError(f"{table}: refusing unfiltered delete")
        self._request("DELETE", table, params=encode_filters(filters))

    def get_health(self) -> dict[str, Any]:
        with self._lock:
            return {
                "url": self._url,
                "configured": self.configured,
                "hasApiKey": self._api_key is not None,
                "timeoutSeconds": self._timeout_seconds,
                "failureCount": self._failure_count,
                "lastError": self._last_error,
                "lastFailureAt": self._last_failure_at,
                "lastSuccessAt": self._last_success_at,
            }

    def close(self) -> None:
        with self._lock:
            self._reset_session()


class RemoteBackend:
    """Primary backend: dataset-level CRUD over ``RemoteStore`` tables."""

    name = "primary"

    def __init__(self, store: RemoteStore):
        self._store = store

    @staticmethod
    def _table(dataset: str) -> str:
        try:
            return DATASET_TABLES[dataset]
        except KeyError:
            raise ValueError(f"unknown dataset {dataset!r}") from None

    def fetch_all(self, dataset: str) -> list[dict[str, Any]]:
        return self._store.select(self._table(dataset), order="created_at.desc")

    def create(self, dataset: str, row: dict[str, Any]) -> dict[str, Any]:
        return self._store.insert(self._table(dataset), row)

    def update(self, dataset: str, record_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        rows = self._store.update(self._table(dataset), {"id": record_id}, changes)
        return rows[0] if rows else None

    def delete(self, dataset: str, record_id: str) -> None:
        self._store.delete(self._table(dataset), {"id": record_id})


class RemoteMessageStore:
    """Chat messages table, queried by the notification poller."""

    def __init__(self, store: RemoteStore):
        self._store = store

    def query(self, filters: Filters, since: datetime) -> list[Message]:
        rows = self._store.select(
            MESSAGES_TABLE,
            {**filters, "created_at": ("gt", since)},
            order="created_at.asc",
        )
        messages: list[Message] = []
        for row in rows:
            try:
                messages.append(Message.from_primary(row))
            except ShapeMismatchError as exc:
                logger.warning("Skipping unreadable message row: %s", exc)
        return messages

    def mark_read(self, message_ids: list[str], role: str) -> None:
        if not message_ids:
            return
        flag = "read_by_customer" if role == "customer" else "read_by_staff"
        self._store.update(MESSAGES_TABLE, {"id": ("in", message_ids)}, {flag: True})


class RemoteNotificationStore:
    """Stored system notifications (``notif-*`` rows) per user."""

    def __init__(self, store: RemoteStore):
        self._store = store

    def list_for_user(self, user_id: str) -> list[dict[str, Any]]:
        return self._store.select(
            NOTIFICATIONS_TABLE, {"user_id": user_id}, order="created_at.desc"
        )

    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._store.insert(NOTIFICATIONS_TABLE, row)

    def mark_read(self, notification_ids: list[str]) -> None:
        if not notification_ids:
            return
        self._store.update(
            NOTIFICATIONS_TABLE, {"id": ("in", notification_ids)}, {"read": True}
        )

    def clear(self, user_id: str) -> None:
        self._store.delete(NOTIFICATIONS_TABLE, {"user_id": user_id})
