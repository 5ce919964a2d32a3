"""
Runtime configuration for the sync layer.

All options can be overridden with ``FREIGHT_SYNC_*`` environment variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

ENV_PREFIX = "FREIGHT_SYNC_"

DEFAULT_CACHE_TTL_MS = 5000
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0
# Matches the 5 MiB budget browsers give localStorage.
DEFAULT_STORE_CAPACITY_BYTES = 5 * 1024 * 1024
DEFAULT_STORE_PATH = os.path.expanduser("~/.freight_sync/store.sqlite3")
DEFAULT_LOCAL_STORE_PATH = os.path.expanduser("~/.freight_sync/offline.sqlite3")

USER_ROLES = ("customer", "staff", "admin")


def _env(name: str) -> str | None:
    return os.getenv(ENV_PREFIX + name)


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    logger.warning("Ignoring invalid %s%s value %r", ENV_PREFIX, name, raw)
    return default


def _env_number(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s%s value %r", ENV_PREFIX, name, raw)
        return default


def normalize_role(role: str | None) -> str:
    """Map portal role names onto customer/staff/admin.

    The portal historically called customers ``user``.
    """
    value = (role or "customer").strip().lower()
    if value == "user":
        return "customer"
    if value not in USER_ROLES:
        raise ValueError(f"user role must be one of: {', '.join(USER_ROLES)}")
    return value


@dataclass
class SyncConfig:
    """Recognized options for repository, mirror and poller."""

    primary_enabled: bool = True
    cache_ttl_ms: int = DEFAULT_CACHE_TTL_MS
    use_local_mirror: bool = True
    auto_fallback_on_error: bool = True
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    remote_url: str | None = None
    remote_api_key: str | None = field(default=None, repr=False)
    store_path: str = DEFAULT_STORE_PATH
    local_store_path: str = DEFAULT_LOCAL_STORE_PATH
    store_capacity_bytes: int = DEFAULT_STORE_CAPACITY_BYTES
    user_id: str | None = None
    user_role: str = "customer"
    user_name: str | None = None

    def __post_init__(self) -> None:
        self.user_role = normalize_role(self.user_role)
        if self.cache_ttl_ms <= 0:
            raise ValueError("cache_ttl_ms must be positive")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_ms / 1000.0

    @classmethod
    def from_env(cls) -> SyncConfig:
        return cls(
            primary_enabled=_env_bool("PRIMARY_ENABLED", True),
            cache_ttl_ms=int(_env_number("CACHE_TTL_MS", DEFAULT_CACHE_TTL_MS)),
            use_local_mirror=_env_bool("USE_LOCAL_MIRROR", True),
            auto_fallback_on_error=_env_bool("AUTO_FALLBACK_ON_ERROR", True),
            poll_interval_seconds=_env_number(
                "POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS
            ),
            request_timeout_seconds=_env_number(
                "REQUEST_TIMEOUT_SECONDS", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
            remote_url=_env("REMOTE_URL"),
            remote_api_key=_env("REMOTE_API_KEY"),
            store_path=os.path.expanduser(_env("STORE_PATH") or DEFAULT_STORE_PATH),
            local_store_path=os.path.expanduser(
                _env("LOCAL_STORE_PATH") or DEFAULT_LOCAL_STORE_PATH
            ),
            store_capacity_bytes=int(
                _env_number("STORE_CAPACITY_BYTES", DEFAULT_STORE_CAPACITY_BYTES)
            ),
            user_id=_env("USER_ID"),
            user_role=_env("USER_ROLE") or "customer",
            user_name=_env("USER_NAME"),
        )
