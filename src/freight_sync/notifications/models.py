"""
Notification feed item and its helpers.
"""

from __future__ import annotations

import random
import string
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

NOTIFICATION_TYPES = ("quote", "invoice", "alert", "message", "shipment", "sample")
MESSAGE_ID_PREFIX = "msg-"
NOTIFICATION_ID_PREFIX = "notif-"


@dataclass
class NotificationItem:
    id: str
    type: str
    title: str
    message: str
    timestamp: str
    source_date: str
    read: bool = False
    link: str = ""

    @property
    def is_message(self) -> bool:
        return self.id.startswith(MESSAGE_ID_PREFIX)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NotificationItem:
        return cls(
            id=str(data["id"]),
            type=data.get("type") or "alert",
            title=data.get("title") or "",
            message=data.get("message") or "",
            timestamp=data.get("timestamp") or "",
            source_date=data.get("source_date") or data.get("date") or "",
            read=bool(data.get("read", False)),
            link=data.get("link") or "",
        )


def generate_notification_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{NOTIFICATION_ID_PREFIX}{int(time.time() * 1000)}-{suffix}"


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse ISO-8601 (``Z`` suffix allowed) into an aware datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_relative(moment: datetime | None, now: datetime) -> str:
    if moment is None:
        return ""
    diff = (now - moment).total_seconds()
    hours = int(diff // 3600)
    days = int(diff // 86400)
    if hours < 1:
        return "Just now"
    if hours < 24:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    if days < 7:
        return f"{days} day{'s' if days > 1 else ''} ago"
    return moment.date().isoformat()


def sort_key(item: NotificationItem) -> datetime:
    return parse_timestamp(item.source_date) or datetime.min.replace(tzinfo=timezone.utc)
