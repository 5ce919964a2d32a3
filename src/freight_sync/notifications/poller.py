"""
Watermark-based message poller.

Every ``interval_seconds`` (and on ``check_now()``) the poller asks the message
store for messages created after the user's watermark, hands the relevant ones
to the notification center and advances the watermark to the poll start time.
A failed poll leaves the watermark untouched so the next tick re-queries.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from ..errors import SyncError
from ..mirror import PersistentMirror
from ..records import Message
from .center import NotificationCenter
from .models import parse_timestamp
from .reconciler import MessageStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 5.0
WATERMARK_LOOKBACK = timedelta(minutes=5)

IDLE = "idle"
POLLING = "polling"
UPDATED = "updated"
NO_CHANGE = "no_change"
FAILED = "failed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def visible_sender_roles(role: str) -> tuple[str, ...]:
    """Customers hear from staff/admin; staff and admins hear from customers."""
    if role == "customer":
        return ("staff", "admin")
    return ("customer",)


class NotificationWatermarkPoller:
    def __init__(
        self,
        user_id: str,
        role: str,
        message_store: MessageStore,
        center: NotificationCenter,
        mirror: PersistentMirror,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        now: Callable[[], datetime] = _utc_now,
        user_name: str | None = None,
    ):
        self._user_id = user_id
        self._role = role
        self._store = message_store
        self._center = center
        self._mirror = mirror
        self._interval = interval_seconds
        self._now = now
        self._user_name = user_name

        self._state = IDLE
        self._last_result: str | None = None
        self._poll_lock = threading.Lock()
        self._watermark_lock = threading.RLock()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None

        self._failure_count = 0
        self._last_error: str | None = None
        self._last_poll_at: float | None = None

        self._watermark = self._load_watermark()

    @property
    def watermark_key(self) -> str:
        return f"last_checked_messages_{self._user_id}"

    @property
    def watermark(self) -> datetime:
        with self._watermark_lock:
            return self._watermark

    @property
    def state(self) -> str:
        return self._state

    def _parse_persisted(self, raw: str | None) -> datetime | None:
        if not raw:
            return None
        text = raw.strip().strip('"')
        if text.isdigit():
            # Older clients stored epoch milliseconds.
            try:
                return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                return None
        return parse_timestamp(text)

    def _load_watermark(self) -> datetime:
        raw = self._mirror.get_text(self.watermark_key)
        parsed = self._parse_persisted(raw)
        if parsed is not None and parsed.timestamp() > 0:
            if raw and raw.strip().isdigit():
                self._mirror.put_text(self.watermark_key, parsed.isoformat())
            return parsed
        if raw:
            logger.warning("Resetting unreadable watermark %r for %s", raw, self._user_id)
        initial = self._now() - WATERMARK_LOOKBACK
        self._mirror.put_text(self.watermark_key, initial.isoformat())
        return initial

    def advance_watermark(self, candidate: datetime) -> bool:
        """Move the watermark forward; never backwards."""
        with self._watermark_lock:
            if candidate <= self._watermark:
                return False
            self._watermark = candidate
            self._mirror.put_text(self.watermark_key, candidate.isoformat())
            return True

    def message_filters(self) -> dict[str, Any]:
        roles = list(visible_sender_roles(self._role))
        filters: dict[str, Any] = {"sender_id": ("neq", self._user_id)}
        if self._role == "customer":
            filters["customer_id"] = self._user_id
            filters["read_by_customer"] = False
        else:
            filters["read_by_staff"] = False
        filters["sender_role"] = ("in", roles) if len(roles) > 1 else roles[0]
        return filters

    def _is_relevant(self, message: Message) -> bool:
        if message.sender_id == self._user_id:
            return False
        if self._user_name and message.sender_name == self._user_name:
            return False
        if message.sender_role not in visible_sender_roles(self._role):
            return False
        read = message.read_by_customer if self._role == "customer" else message.read_by_staff
        return not read

    def poll_once(self) -> str:
        with self._poll_lock:
            started = self._now()
            self._state = POLLING
            self._last_poll_at = time.time()
            try:
                messages = self._store.query(self.message_filters(), self.watermark)
            except SyncError as exc:
                return self._fail(exc)
            except Exception as exc:
                logger.exception("Unexpected error polling messages for %s", self._user_id)
                return self._fail(exc)

            relevant = [m for m in messages if self._is_relevant(m)]
            added = self._center.apply_messages(relevant) if relevant else 0
            self.advance_watermark(started)
            self._failure_count = 0
            self._last_error = None
            result = UPDATED if added else NO_CHANGE
            logger.debug("Message poll for %s: %s (%d new)", self._user_id, result, added)
            self._last_result = result
            self._state = IDLE
            return result

    def _fail(self, exc: Exception) -> str:
        self._failure_count += 1
        self._last_error = f"{exc.__class__.__name__}: {exc}"
        logger.warning("Message poll for %s failed: %s", self._user_id, exc)
        self._last_result = FAILED
        self._state = IDLE
        return FAILED

    def check_now(self) -> str:
        """Poll immediately in the calling thread."""
        return self.poll_once()

    def _run(self) -> None:
        while not self._stop.is_set():
            self.poll_once()
            self._wake.wait(self._interval)
            self._wake.clear()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._wake.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name=f"freight-sync-poller-{self._user_id}"
        )
        self._thread.start()
        logger.info("Started message poller for %s every %.1fs", self._user_id, self._interval)

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        self._wake.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Message poller thread did not stop within timeout")
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def get_health(self) -> dict[str, Any]:
        return {
            "userId": self._user_id,
            "role": self._role,
            "running": self.running,
            "state": self._state,
            "lastResult": self._last_result,
            "watermark": self.watermark.isoformat(),
            "intervalSeconds": self._interval,
            "failureCount": self._failure_count,
            "lastError": self._last_error,
            "lastPollAt": self._last_poll_at,
        }
