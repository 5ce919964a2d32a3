"""
Merge polled messages into the notification feed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from ..records import Message
from .models import (
    MESSAGE_ID_PREFIX,
    NotificationItem,
    format_relative,
    parse_timestamp,
    sort_key,
)

logger = logging.getLogger(__name__)

DEDUP_PREFIX_CHARS = 20
PREVIEW_CHARS = 50


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def unread_count(items: Iterable[NotificationItem]) -> int:
    return sum(1 for item in items if not item.read)


class NotificationMerger:
    """Turns unread messages into ``msg-<id>`` items and merges them in.

    A message is dropped when its item id is already present or when any held
    item's text already contains the first 20 characters of its content.
    """

    def __init__(self, now: Callable[[], datetime] = _utc_now):
        self._now = now

    def to_item(self, message: Message) -> NotificationItem:
        content = message.content or ""
        preview = content[:PREVIEW_CHARS] + ("..." if len(content) > PREVIEW_CHARS else "")
        sender = message.sender_name or message.sender_role or "Someone"
        title = f"New message on shipment {message.shipment_id}" if message.shipment_id else "New message"
        if message.warehouse:
            title += f" (Warehouse: {message.warehouse})"
        created = parse_timestamp(message.created_at)
        return NotificationItem(
            id=f"{MESSAGE_ID_PREFIX}{message.id}",
            type="message",
            title=title,
            message=f"{sender}: {preview}",
            timestamp=format_relative(created or self._now(), self._now()),
            source_date=(created or self._now()).isoformat(),
            read=False,
            link=f"/shipments/{message.shipment_id}" if message.shipment_id else "/messages",
        )

    @staticmethod
    def _is_duplicate(message: Message, held: list[NotificationItem], held_ids: set[str]) -> bool:
        if f"{MESSAGE_ID_PREFIX}{message.id}" in held_ids:
            return True
        prefix = (message.content or "")[:DEDUP_PREFIX_CHARS]
        if not prefix:
            return False
        return any(prefix in item.message for item in held)

    def merge(
        self,
        existing: list[NotificationItem],
        new_messages: Iterable[Message],
    ) -> list[NotificationItem]:
        merged = list(existing)
        held_ids = {item.id for item in merged}
        added = 0
        for message in new_messages:
            if self._is_duplicate(message, merged, held_ids):
                logger.debug("Skipping duplicate message %s", message.id)
                continue
            item = self.to_item(message)
            merged.append(item)
            held_ids.add(item.id)
            added += 1
        merged.sort(key=sort_key, reverse=True)
        if added:
            logger.info("Merged %d new message notification(s)", added)
        return merged
