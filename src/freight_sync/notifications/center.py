"""
Per-user notification feed.

Single owner of the merged item list: the poller thread, manual refreshes and
read-state actions all mutate it under one lock, and every change is persisted
to ``notifications_<userId>`` so a cold start shows the last known feed. Remote
writes happen outside the lock; the local list is updated after them.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

from ..errors import SyncError
from ..mirror import ABSENT, PersistentMirror
from ..records import Message, Quote, Shipment
from .merger import NotificationMerger, unread_count
from .models import (
    NOTIFICATION_TYPES,
    NotificationItem,
    format_relative,
    generate_notification_id,
    parse_timestamp,
    sort_key,
)
from .reconciler import NotificationStore, ReadStateReconciler

logger = logging.getLogger(__name__)

MAX_ITEMS = 50

FeedCallback = Callable[[list[NotificationItem]], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _missing_amazon_id(destination: Any) -> bool:
    if not isinstance(destination, dict):
        return False
    return not (destination.get("amazonShipmentId") or destination.get("amazon_shipment_id"))


class NotificationCenter:
    def __init__(
        self,
        user_id: str,
        mirror: PersistentMirror,
        reconciler: ReadStateReconciler,
        notification_store: NotificationStore | None = None,
        merger: NotificationMerger | None = None,
        now: Callable[[], datetime] = _utc_now,
        max_items: int = MAX_ITEMS,
    ):
        self._user_id = user_id
        self._mirror = mirror
        self._reconciler = reconciler
        self._store = notification_store
        self._now = now
        self._merger = merger or NotificationMerger(now=now)
        self._max_items = max_items
        self._lock = threading.RLock()
        self._subscribers: list[FeedCallback] = []
        self._restored = False
        self._items = self._load()

    @property
    def storage_key(self) -> str:
        return f"notifications_{self._user_id}"

    @property
    def restored(self) -> bool:
        """True once a persisted feed was loaded or the feed was seeded."""
        return self._restored

    def _load(self) -> list[NotificationItem]:
        stored = self._mirror.get(self.storage_key)
        if stored is ABSENT or not isinstance(stored, list):
            return []
        self._restored = True
        items: list[NotificationItem] = []
        for entry in stored:
            try:
                items.append(NotificationItem.from_dict(entry))
            except (KeyError, TypeError):
                logger.warning("Dropping malformed persisted notification %r", entry)
        return items

    def _publish(self, items: list[NotificationItem]) -> list[NotificationItem]:
        # Caller holds self._lock.
        self._items = items[: self._max_items]
        self._mirror.put(self.storage_key, [item.to_dict() for item in self._items])
        return list(self._items)

    def _notify(self, snapshot: list[NotificationItem]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Notification subscriber failed")

    def subscribe(self, callback: FeedCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def get_notifications(self) -> list[NotificationItem]:
        with self._lock:
            return list(self._items)

    def get_unread_count(self) -> int:
        with self._lock:
            return unread_count(self._items)

    def _new_item(self, type: str, title: str, message: str, link: str) -> NotificationItem:
        return NotificationItem(
            id=generate_notification_id(),
            type=type,
            title=title,
            message=message,
            timestamp="Just now",
            source_date=self._now().isoformat(),
            read=False,
            link=link,
        )

    def add_notification(
        self, type: str, title: str, message: str, link: str = ""
    ) -> NotificationItem:
        """Record an in-app event (quote ready, invoice issued, ...)."""
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"notification type must be one of: {', '.join(NOTIFICATION_TYPES)}")
        item = self._new_item(type, title, message, link)
        with self._lock:
            snapshot = self._publish([item, *self._items])
        self._notify(snapshot)
        self._reconciler.push_created(item)
        return item

    def seed_initial(
        self,
        quotes: Iterable[Quote],
        shipments: Iterable[Shipment],
        customer_id: str | None = None,
    ) -> int:
        """Populate a first-run feed from the user's current quotes and shipments.

        Only runs when no feed was ever persisted for the user. The newest
        quote yields a "Quote Ready" item if it is approved; every shipment
        with a destination lacking an Amazon shipment id yields an alert.
        Pass ``customer_id`` to restrict both lists to one customer.
        """
        if self._restored:
            return 0
        quotes = [q for q in quotes if customer_id is None or q.customer_id == customer_id]
        shipments = [s for s in shipments if customer_id is None or s.customer_id == customer_id]

        seeded: list[NotificationItem] = []
        if quotes and quotes[0].status == "Approved":
            quote = quotes[0]
            seeded.append(
                self._new_item(
                    "quote",
                    "Quote Ready",
                    f"Your quote #{quote.id} is ready for review",
                    f"/quotes/{quote.id}",
                )
            )
        for shipment in shipments:
            if any(_missing_amazon_id(d) for d in shipment.destinations):
                seeded.append(
                    self._new_item(
                        "alert",
                        "Shipment IDs Missing",
                        f"Please provide Amazon shipment IDs for #{shipment.id}",
                        f"/shipments/{shipment.id}",
                    )
                )

        with self._lock:
            if self._restored:
                return 0
            self._restored = True
            snapshot = self._publish([*seeded, *self._items])
        logger.info("Seeded %d initial notification(s) for %s", len(seeded), self._user_id)
        self._notify(snapshot)
        return len(seeded)

    def apply_messages(self, messages: Iterable[Message]) -> int:
        """Merge polled messages; returns how many items were added."""
        with self._lock:
            before = {item.id for item in self._items}
            merged = self._merger.merge(self._items, messages)
            added = sum(1 for item in merged if item.id not in before)
            if not added:
                return 0
            snapshot = self._publish(merged)
        self._notify(snapshot)
        return added

    def _item_from_row(self, row: dict[str, Any]) -> NotificationItem:
        created = parse_timestamp(row.get("created_at"))
        return NotificationItem(
            id=str(row["id"]),
            type=row.get("type") or "alert",
            title=row.get("title") or "",
            message=row.get("message") or "",
            timestamp=format_relative(created, self._now()),
            source_date=created.isoformat() if created else "",
            read=bool(row.get("read", False)),
            link=row.get("link") or "",
        )

    def refresh_notifications(self) -> list[NotificationItem]:
        """Reload stored notifications and merge them with the held feed.

        Items that exist only locally (message-derived or added in-app) are
        kept; a read flag set locally is never reverted by a stale remote row.
        """
        if self._store is None:
            with self._lock:
                self._items = self._load() or self._items
                return list(self._items)
        try:
            rows = self._store.list_for_user(self._user_id)
        except SyncError as exc:
            logger.warning("Refreshing notifications for %s failed: %s", self._user_id, exc)
            return self.get_notifications()

        stored: list[NotificationItem] = []
        for row in rows:
            try:
                stored.append(self._item_from_row(row))
            except KeyError:
                logger.warning("Skipping stored notification without id")
        with self._lock:
            current = {item.id: item for item in self._items}
            for item in stored:
                held = current.get(item.id)
                if held is not None and held.read:
                    item.read = True
            stored_ids = {item.id for item in stored}
            merged = stored + [item for item in self._items if item.id not in stored_ids]
            merged.sort(key=sort_key, reverse=True)
            snapshot = self._publish(merged)
        self._notify(snapshot)
        return snapshot

    def mark_as_read(self, notification_id: str) -> None:
        self._reconciler.push_read([notification_id])
        with self._lock:
            snapshot = self._publish(self._reconciler.apply_read(self._items, {notification_id}))
        self._notify(snapshot)

    def mark_all_as_read(self) -> None:
        with self._lock:
            unread = [item.id for item in self._items if not item.read]
        if not unread:
            return
        self._reconciler.push_read(unread)
        with self._lock:
            snapshot = self._publish(self._reconciler.apply_read(self._items, set(unread)))
        self._notify(snapshot)

    def clear_all(self) -> None:
        items = self._reconciler.clear_all()
        with self._lock:
            self._items = items
            self._mirror.delete(self.storage_key)
            snapshot = list(self._items)
        self._notify(snapshot)

    def get_health(self) -> dict[str, Any]:
        with self._lock:
            return {
                "userId": self._user_id,
                "itemCount": len(self._items),
                "unreadCount": unread_count(self._items),
                "failedWrites": self._reconciler.failed_writes,
            }
