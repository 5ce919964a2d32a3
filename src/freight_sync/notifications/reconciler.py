"""
Apply read/clear actions to the record type behind each feed item.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Protocol

from ..errors import SyncError
from .models import MESSAGE_ID_PREFIX, NotificationItem

logger = logging.getLogger(__name__)


class MessageStore(Protocol):
    def query(self, filters: dict[str, Any], since: Any) -> list[Any]: ...

    def mark_read(self, message_ids: list[str], role: str) -> None: ...


class NotificationStore(Protocol):
    def list_for_user(self, user_id: str) -> list[dict[str, Any]]: ...

    def insert(self, row: dict[str, Any]) -> dict[str, Any]: ...

    def mark_read(self, notification_ids: list[str]) -> None: ...

    def clear(self, user_id: str) -> None: ...


def split_ids(notification_ids: list[str]) -> tuple[list[str], list[str]]:
    """Split feed ids into (message ids without prefix, stored notification ids)."""
    message_ids: list[str] = []
    stored_ids: list[str] = []
    for notification_id in notification_ids:
        if notification_id.startswith(MESSAGE_ID_PREFIX):
            message_ids.append(notification_id[len(MESSAGE_ID_PREFIX):])
        else:
            stored_ids.append(notification_id)
    return message_ids, stored_ids


class ReadStateReconciler:
    """Routes read-state writes; the returned list always reflects the action.

    Remote failures (policy rejections included) are logged and counted, never
    retried; the caller still gets the locally updated list. ``push_*`` only
    talks to the stores and ``apply_read`` only touches the list, so callers
    can keep remote I/O outside their own locks.
    """

    def __init__(
        self,
        user_id: str,
        role: str,
        message_store: MessageStore | None = None,
        notification_store: NotificationStore | None = None,
    ):
        self._user_id = user_id
        self._role = role
        self._messages = message_store
        self._notifications = notification_store
        self.failed_writes = 0

    @property
    def read_flag(self) -> str:
        return "read_by_customer" if self._role == "customer" else "read_by_staff"

    def push_read(self, notification_ids: list[str]) -> None:
        message_ids, stored_ids = split_ids(notification_ids)
        if message_ids and self._messages is not None:
            try:
                self._messages.mark_read(message_ids, self._role)
            except SyncError as exc:
                self.failed_writes += 1
                logger.warning(
                    "Marking messages %s as %s failed (%s): %s",
                    message_ids, self.read_flag, exc.code, exc,
                )
        if stored_ids and self._notifications is not None:
            try:
                self._notifications.mark_read(stored_ids)
            except SyncError as exc:
                self.failed_writes += 1
                logger.warning(
                    "Marking notifications %s read failed (%s): %s", stored_ids, exc.code, exc
                )

    def push_created(self, item: NotificationItem) -> None:
        """Store an in-app notification so the user's other sessions see it."""
        if self._notifications is None:
            return
        row = {
            "id": item.id,
            "user_id": self._user_id,
            "type": item.type,
            "title": item.title,
            "message": item.message,
            "link": item.link,
            "read": item.read,
            "created_at": item.source_date,
        }
        try:
            self._notifications.insert(row)
        except SyncError as exc:
            self.failed_writes += 1
            logger.warning("Storing notification %s failed (%s): %s", item.id, exc.code, exc)

    @staticmethod
    def apply_read(items: list[NotificationItem], notification_ids: set[str]) -> list[NotificationItem]:
        return [replace(item, read=True) if item.id in notification_ids else item for item in items]

    def mark_read(self, items: list[NotificationItem], notification_id: str) -> list[NotificationItem]:
        self.push_read([notification_id])
        return self.apply_read(items, {notification_id})

    def mark_all_read(self, items: list[NotificationItem]) -> list[NotificationItem]:
        self.push_read([item.id for item in items if not item.read])
        return [replace(item, read=True) for item in items]

    def clear_all(self) -> list[NotificationItem]:
        if self._notifications is not None:
            try:
                self._notifications.clear(self._user_id)
            except SyncError as exc:
                self.failed_writes += 1
                logger.warning("Clearing notifications for %s failed (%s): %s", self._user_id, exc.code, exc)
        return []
