from __future__ import annotations

import pytest

from freight_sync import server
from freight_sync.config import SyncConfig


def _config(tmp_path, **overrides) -> SyncConfig:
    values = {
        "store_path": str(tmp_path / "store.sqlite3"),
        "local_store_path": str(tmp_path / "offline.sqlite3"),
        "remote_url": "https://db.example.test",
    }
    values.update(overrides)
    return SyncConfig(**values)


@pytest.fixture
def local_service(monkeypatch: pytest.MonkeyPatch, tmp_path):
    service = server.build_service(
        _config(tmp_path, primary_enabled=False, user_id="cust-1")
    )
    monkeypatch.setattr(server, "_service", service)
    yield service
    service.close()


def test_build_service_wires_feed_for_signed_in_user(tmp_path):
    service = server.build_service(_config(tmp_path, user_id="cust-1"))
    try:
        assert service.repository.mode == "primary"
        assert service.center is not None
        assert service.poller is not None
        assert service.poller.running is False
    finally:
        service.close()


def test_build_service_without_user_has_no_feed(tmp_path):
    service = server.build_service(_config(tmp_path))
    try:
        assert service.center is None
        assert service.poller is None
    finally:
        service.close()


def test_local_only_service_has_feed_but_no_poller(local_service):
    assert local_service.repository.mode == "local"
    assert local_service.center is not None
    assert local_service.poller is None


def test_tools_round_trip_through_offline_store(local_service):
    created = server.create_record("quotes", {"customer_id": "cust-1", "total_amount": 120})

    payload = server.get_all("quotes")

    assert [r["id"] for r in payload["results"]] == [created["id"]]
    assert payload["results"][0]["total_amount"] == 120
    assert "_metadata" not in payload

    updated = server.update_record("quotes", created["id"], {"status": "Accepted"})
    assert updated["status"] == "Accepted"

    assert server.delete_record("quotes", created["id"]) == {"deleted": created["id"], "dataset": "quotes"}
    assert server.refresh("quotes")["results"] == []


def test_feed_tools(local_service):
    local_service.center.add_notification("quote", "Quote ready", "Q-1 is ready", link="/quotes/Q-1")

    assert server.get_unread_count() == 1
    (item,) = server.get_notifications()
    assert server.mark_as_read(item["id"]) == {"id": item["id"], "unreadCount": 0}
    assert server.clear_notifications() == {"cleared": True}
    assert server.get_notifications() == []


def test_check_messages_now_requires_primary(local_service):
    with pytest.raises(ValueError, match="local-only"):
        server.check_messages_now()


def test_feed_tools_require_user(monkeypatch: pytest.MonkeyPatch, tmp_path):
    service = server.build_service(_config(tmp_path, primary_enabled=False))
    monkeypatch.setattr(server, "_service", service)
    try:
        with pytest.raises(ValueError, match="FREIGHT_SYNC_USER_ID"):
            server.get_notifications()
    finally:
        service.close()


def test_health_and_clear_cache(local_service):
    server.get_all("invoices")

    health = server.clear_cache()

    assert health["repository"]["mode"] == "local"
    assert health["repository"]["datasets"] == {}
    assert health["poller"] is None
    assert health["remote"]["configured"] is True


def test_seed_feed_uses_the_customers_own_records(local_service):
    repository = local_service.repository
    repository.create("quotes", {"customer_id": "cust-2", "status": "Pending"})
    repository.create("quotes", {"customer_id": "cust-1", "status": "Approved"})
    repository.create(
        "shipments", {"customer_id": "cust-1", "destinations": [{"warehouse": "LGB3"}]}
    )

    assert server.seed_feed(local_service) == 2
    assert server.seed_feed(local_service) == 0
    titles = sorted(i["title"] for i in server.get_notifications())
    assert titles == ["Quote Ready", "Shipment IDs Missing"]


def test_health_reports_feed_write_failures(local_service):
    local_service.center.add_notification("alert", "Customs hold", "FS-100 is held")

    feed = server.get_sync_health()["feed"]

    assert feed["userId"] == "cust-1"
    assert feed["unreadCount"] == 1
    assert feed["failedWrites"] == 0
