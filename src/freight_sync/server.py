"""
MCP server exposing cached portal data and the notification feed.

Reads go through the TTL cache and fall back to the offline store when the
hosted database is unreachable; writes target the hosted database (or the
offline store in local-only mode) and surface failures as tool errors.
"""

from __future__ import annotations

import atexit
import logging
import signal
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from mcp.server.fastmcp import FastMCP

from .cache import TTLCache
from .config import SyncConfig
from .kv_store import SqliteKeyValueStore
from .local_store import LocalStore
from .mirror import PersistentMirror, QuotaEvictor
from .notifications import (
    NotificationCenter,
    NotificationWatermarkPoller,
    ReadStateReconciler,
)
from .remote_store import (
    RemoteBackend,
    RemoteMessageStore,
    RemoteNotificationStore,
    RemoteStore,
)
from .repository import DualBackendRepository

logger = logging.getLogger(__name__)


@dataclass
class SyncService:
    """Everything one client session needs, wired from a ``SyncConfig``."""

    config: SyncConfig
    remote: RemoteStore
    repository: DualBackendRepository
    center: NotificationCenter | None = None
    poller: NotificationWatermarkPoller | None = None

    def close(self) -> None:
        if self.poller is not None:
            self.poller.stop()
        self.remote.close()


def build_service(config: SyncConfig) -> SyncService:
    mirror_store = SqliteKeyValueStore(config.store_path, config.store_capacity_bytes)
    offline_store = SqliteKeyValueStore(config.local_store_path, config.store_capacity_bytes)
    mirror = PersistentMirror(
        mirror_store, QuotaEvictor(mirror_store), enabled=config.use_local_mirror
    )
    remote = RemoteStore(
        config.remote_url, config.remote_api_key, config.request_timeout_seconds
    )
    repository = DualBackendRepository(
        RemoteBackend(remote) if config.primary_enabled else None,
        LocalStore(offline_store),
        TTLCache(config.cache_ttl_seconds),
        mirror,
        config,
    )
    service = SyncService(config=config, remote=remote, repository=repository)
    if not config.user_id:
        logger.info("FREIGHT_SYNC_USER_ID not set; notification feed disabled")
        return service

    message_store = RemoteMessageStore(remote) if config.primary_enabled else None
    notification_store = RemoteNotificationStore(remote) if config.primary_enabled else None
    reconciler = ReadStateReconciler(
        config.user_id, config.user_role, message_store, notification_store
    )
    service.center = NotificationCenter(
        config.user_id, mirror, reconciler, notification_store=notification_store
    )
    if message_store is not None:
        service.poller = NotificationWatermarkPoller(
            config.user_id,
            config.user_role,
            message_store,
            service.center,
            mirror,
            interval_seconds=config.poll_interval_seconds,
            user_name=config.user_name,
        )
    return service


def seed_feed(service: SyncService) -> int:
    """Give a user with no persisted feed their first-run notifications."""
    center = service.center
    if center is None or center.restored:
        return 0
    config = service.config
    customer_id = config.user_id if config.user_role == "customer" else None
    return center.seed_initial(
        service.repository.get_all("quotes"),
        service.repository.get_all("shipments"),
        customer_id=customer_id,
    )


_service: SyncService | None = None


def get_service() -> SyncService:
    global _service
    if _service is None:
        _service = build_service(SyncConfig.from_env())
    return _service


def _require_center() -> NotificationCenter:
    center = get_service().center
    if center is None:
        raise ValueError("notification feed requires FREIGHT_SYNC_USER_ID")
    return center


def _shutdown() -> None:
    global _service
    if _service is not None:
        _service.close()
        _service = None


def _handle_sigterm(signum: int, frame: Any) -> None:
    _shutdown()
    raise SystemExit(0)


signal.signal(signal.SIGTERM, _handle_sigterm)
atexit.register(_shutdown)


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Warm the notification feed and start the message poller."""
    service = get_service()
    if service.center is not None:
        try:
            seed_feed(service)
            service.center.refresh_notifications()
        except Exception as exc:
            logger.warning("Initial notification refresh failed: %s", exc)
    if service.poller is not None:
        service.poller.start()
    try:
        yield
    finally:
        _shutdown()


mcp = FastMCP(
    "FreightSync",
    instructions=(
        "Cached access to freight portal data (quoteRequests, quotes, shipments, "
        "invoices, users) and the signed-in user's notification feed. "
        "Reads may return stale data with _metadata.stale=true when the hosted "
        "database is unreachable. Writes fail loudly."
    ),
    lifespan=_lifespan,
)


@mcp.tool()
def get_all(dataset: str) -> dict[str, Any]:
    """List every record of a dataset.

    Args:
        dataset: One of quoteRequests, quotes, shipments, invoices, users.

    Returns:
        {"results": [...]} plus "_metadata" {stale, source, error} when the
        data is degraded (offline store, last mirrored snapshot, or empty).
    """
    return get_service().repository.fetch_all(dataset).to_payload()


@mcp.tool()
def refresh(dataset: str) -> dict[str, Any]:
    """Bypass the in-memory cache and refetch a dataset."""
    return get_service().repository.refresh(dataset).to_payload()


@mcp.tool()
def create_record(dataset: str, values: dict[str, Any]) -> dict[str, Any] | None:
    """Create a record from canonical snake_case field values."""
    record = get_service().repository.create(dataset, values)
    return record.to_dict() if record else None


@mcp.tool()
def update_record(dataset: str, id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
    """Apply canonical snake_case field changes to one record."""
    record = get_service().repository.update(dataset, id, changes)
    return record.to_dict() if record else None


@mcp.tool()
def delete_record(dataset: str, id: str) -> dict[str, Any]:
    """Delete one record."""
    get_service().repository.delete(dataset, id)
    return {"deleted": id, "dataset": dataset}


@mcp.tool()
def get_notifications() -> list[dict[str, Any]]:
    """Return the merged notification feed, newest first."""
    return [item.to_dict() for item in _require_center().get_notifications()]


@mcp.tool()
def get_unread_count() -> int:
    """Number of unread feed items."""
    return _require_center().get_unread_count()


@mcp.tool()
def mark_as_read(id: str) -> dict[str, Any]:
    """Mark one feed item read (msg-* ids flip the message's role flag)."""
    center = _require_center()
    center.mark_as_read(id)
    return {"id": id, "unreadCount": center.get_unread_count()}


@mcp.tool()
def mark_all_as_read() -> dict[str, Any]:
    center = _require_center()
    center.mark_all_as_read()
    return {"unreadCount": center.get_unread_count()}


@mcp.tool()
def clear_notifications() -> dict[str, Any]:
    """Delete every notification for the signed-in user."""
    _require_center().clear_all()
    return {"cleared": True}


@mcp.tool()
def refresh_notifications() -> list[dict[str, Any]]:
    """Reload stored notifications and return the merged feed."""
    return [item.to_dict() for item in _require_center().refresh_notifications()]


@mcp.tool()
def check_messages_now() -> dict[str, Any]:
    """Poll for new messages immediately instead of waiting for the next tick."""
    poller = get_service().poller
    if poller is None:
        raise ValueError("message polling is unavailable in local-only mode")
    result = poller.check_now()
    return {"result": result, "unreadCount": _require_center().get_unread_count()}


@mcp.tool()
def clear_cache() -> dict[str, Any]:
    """Drop the in-memory cache and every mirrored snapshot."""
    get_service().repository.clear_cache()
    return get_sync_health()


@mcp.tool()
def get_sync_health() -> dict[str, Any]:
    """Return repository, remote store and poller health."""
    service = get_service()
    return {
        "repository": service.repository.get_health(),
        "remote": service.remote.get_health(),
        "poller": service.poller.get_health() if service.poller else None,
        "feed": service.center.get_health() if service.center else None,
    }


def main() -> None:
    mcp.run()
