from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import pytest
import requests

from freight_sync.errors import (
    BackendRequestError,
    CapacityError,
    PermissionDeniedError,
    TransientBackendError,
)
from freight_sync.remote_store import (
    RemoteBackend,
    RemoteMessageStore,
    RemoteNotificationStore,
    RemoteStore,
    encode_filters,
)

BASE_URL = "https://db.example.test"


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.content = text.encode()

    def json(self) -> Any:
        if self._payload is None and self.text:
            raise requests.JSONDecodeError("Expecting value", self.text, 0)
        return self._payload


class FakeSession:
    def __init__(self, *outcomes: Any):
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append(
            {"method": method, "url": url, "params": params, "json": json, "headers": headers, "timeout": timeout}
        )
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        self.closed = True


def _store(*outcomes: Any) -> tuple[RemoteStore, FakeSession]:
    session = FakeSession(*outcomes)
    return RemoteStore(BASE_URL, "anon-key", timeout_seconds=3.0, session=session), session


def test_encode_filters():
    since = datetime(2024, 1, 1, tzinfo=timezone.utc)

    params = encode_filters(
        {
            "customer_id": "cust-1",
            "read_by_customer": False,
            "sender_id": ("neq", "cust-1"),
            "sender_role": ("in", ["staff", "admin"]),
            "created_at": ("gt", since),
        }
    )

    assert params == {
        "customer_id": "eq.cust-1",
        "read_by_customer": "eq.false",
        "sender_id": "neq.cust-1",
        "sender_role": "in.(staff,admin)",
        "created_at": "gt.2024-01-01T00:00:00+00:00",
    }


def test_select_sends_auth_headers_and_timeout():
    store, session = _store(FakeResponse(200, [{"id": "Q-1"}]))

    rows = store.select("quotes", {"customer_id": "cust-1"}, order="created_at.desc")

    assert rows == [{"id": "Q-1"}]
    call = session.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == f"{BASE_URL}/rest/v1/quotes"
    assert call["params"] == {"select": "*", "customer_id": "eq.cust-1", "order": "created_at.desc"}
    assert call["headers"]["apikey"] == "anon-key"
    assert call["headers"]["Authorization"] == "Bearer anon-key"
    assert call["timeout"] == 3.0


def test_insert_asks_for_representation():
    store, session = _store(FakeResponse(201, [{"id": "Q-2", "status": "Pending"}]))

    row = store.insert("quotes", {"status": "Pending"})

    assert row == {"id": "Q-2", "status": "Pending"}
    assert session.calls[0]["headers"]["Prefer"] == "return=representation"
    assert session.calls[0]["json"] == {"status": "Pending"}


def test_delete_with_empty_body():
    store, session = _store(FakeResponse(204))

    assert store.delete("quotes", {"id": "Q-1"}) is None
    assert session.calls[0]["params"] == {"id": "eq.Q-1"}


def test_unfiltered_writes_are_refused():
    store, session = _store()

    with pytest.raises(BackendRequestError):
        store.update("quotes", {}, {"status": "Void"})
    with pytest.raises(BackendRequestError):
        store.delete("quotes", {})
    assert session.calls == []


@pytest.mark.parametrize(
    ("status", "error"),
    [
        (401, PermissionDeniedError),
        (403, PermissionDeniedError),
        (413, CapacityError),
        (408, TransientBackendError),
        (429, TransientBackendError),
        (503, TransientBackendError),
        (400, BackendRequestError),
        (404, BackendRequestError),
    ],
)
def test_http_status_mapping(status: int, error: type[Exception]):
    store, _ = _store(FakeResponse(status, text="nope"))

    with pytest.raises(error):
        store.select("quotes")

    assert store.get_health()["failureCount"] == 1


def test_dead_pooled_connection_is_retried_once(monkeypatch):
    store, session = _store(
        requests.ConnectionError("connection reset"),
        FakeResponse(200, [{"id": "Q-1"}]),
    )
    monkeypatch.setattr(store, "_reset_session", lambda: None)

    assert store.select("quotes") == [{"id": "Q-1"}]
    assert len(session.calls) == 2
    assert store.get_health()["failureCount"] == 0


def test_repeated_connection_error_is_transient(monkeypatch):
    store, session = _store(
        requests.ConnectionError("refused"),
        requests.ConnectionError("refused"),
    )
    monkeypatch.setattr(store, "_reset_session", lambda: None)

    with pytest.raises(TransientBackendError):
        store.select("quotes")
    assert len(session.calls) == 2


def test_timeout_is_not_retried():
    store, session = _store(requests.Timeout("read timed out"))

    with pytest.raises(TransientBackendError, match="timed out"):
        store.select("quotes")
    assert len(session.calls) == 1


def test_non_json_body_is_a_request_error():
    store, _ = _store(FakeResponse(200, None, text="<html>"))

    with pytest.raises(BackendRequestError):
        store.select("quotes")


def test_unconfigured_store_is_transient(monkeypatch):
    monkeypatch.delenv("FREIGHT_SYNC_REMOTE_URL", raising=False)
    store = RemoteStore(url="", session=FakeSession())

    assert store.configured is False
    with pytest.raises(TransientBackendError):
        store.select("quotes")


def test_backend_maps_datasets_to_tables():
    store, session = _store(FakeResponse(200, []), FakeResponse(200, [{"id": "QR-1", "status": "Quoted"}]))
    backend = RemoteBackend(store)

    backend.fetch_all("quoteRequests")
    updated = backend.update("quoteRequests", "QR-1", {"status": "Quoted"})

    assert session.calls[0]["url"].endswith("/rest/v1/quote_requests")
    assert session.calls[0]["params"]["order"] == "created_at.desc"
    assert session.calls[1]["method"] == "PATCH"
    assert session.calls[1]["params"] == {"id": "eq.QR-1"}
    assert updated == {"id": "QR-1", "status": "Quoted"}


def test_message_store_query_and_mark_read():
    row = {
        "id": "m1",
        "shipment_id": "FS-100",
        "sender_id": "staff-1",
        "sender_role": "staff",
        "content": "Cartons received",
        "created_at": "2024-01-01T00:00:05Z",
    }
    store, session = _store(FakeResponse(200, [row]), FakeResponse(200, []))
    messages = RemoteMessageStore(store)
    since = datetime(2024, 1, 1, tzinfo=timezone.utc)

    result = messages.query({"customer_id": "cust-1"}, since)
    messages.mark_read(["m1", "m2"], "customer")

    assert [m.id for m in result] == ["m1"]
    assert result[0].sender_role == "staff"
    assert session.calls[0]["url"].endswith("/rest/v1/messages")
    assert session.calls[0]["params"]["created_at"] == "gt.2024-01-01T00:00:00+00:00"
    assert session.calls[0]["params"]["order"] == "created_at.asc"
    assert session.calls[1]["params"] == {"id": "in.(m1,m2)"}
    assert session.calls[1]["json"] == {"read_by_customer": True}


def test_message_store_staff_flag():
    store, session = _store(FakeResponse(200, []))

    RemoteMessageStore(store).mark_read(["m1"], "admin")

    assert session.calls[0]["json"] == {"read_by_staff": True}


def test_notification_store_operations():
    store, session = _store(FakeResponse(200, []), FakeResponse(200, []), FakeResponse(204))
    notifications = RemoteNotificationStore(store)

    notifications.list_for_user("cust-1")
    notifications.mark_read(["notif-1"])
    notifications.mark_read([])
    notifications.clear("cust-1")

    assert [c["method"] for c in session.calls] == ["GET", "PATCH", "DELETE"]
    assert session.calls[0]["params"]["user_id"] == "eq.cust-1"
    assert session.calls[1]["json"] == {"read": True}
    assert session.calls[2]["params"] == {"user_id": "eq.cust-1"}


def test_close_resets_session():
    store, session = _store()

    store.close()

    assert session.closed is True


def test_message_store_skips_rows_without_id():
    good = {
        "id": "m2",
        "sender_id": "staff-1",
        "sender_role": "staff",
        "content": "Cartons received",
        "created_at": "2024-01-01T00:00:05Z",
    }
    store, _ = _store(FakeResponse(200, [{"sender_id": "s1", "content": "broken row"}, good]))

    result = RemoteMessageStore(store).query({}, datetime(2024, 1, 1, tzinfo=timezone.utc))

    assert [m.id for m in result] == ["m2"]
