"""Runtime settings for the feed sync service."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

DEFAULT_USER_AGENT = "FeedSync/1.0"


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True, frozen=True)
class SyncSettings:
    http_timeout: float = 30.0
    max_redirects: int = 5
    user_agent: str = DEFAULT_USER_AGENT
    retry_count: int = 3
    retry_delay: float = 5.0
    max_concurrent_syncs: int = 5
    default_sync_interval: int = 60
    error_retry_minutes: int = 0
    stale_sync_minutes: int = 60
    auto_detect_format: bool = True

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Build settings from the environment (and a local .env file if present)."""
        load_dotenv()
        return cls(
            http_timeout=float(os.environ.get("HTTP_TIMEOUT_SECONDS", 30)),
            max_redirects=int(os.environ.get("HTTP_MAX_REDIRECTS", 5)),
            user_agent=os.environ.get("HTTP_USER_AGENT", DEFAULT_USER_AGENT),
            retry_count=max(1, int(os.environ.get("SYNC_RETRY_COUNT", 3))),
            retry_delay=float(os.environ.get("SYNC_RETRY_DELAY_SECONDS", 5)),
            max_concurrent_syncs=max(1, int(os.environ.get("MAX_CONCURRENT_SYNCS", 5))),
            default_sync_interval=int(os.environ.get("DEFAULT_SYNC_INTERVAL_MINUTES", 60)),
            error_retry_minutes=int(os.environ.get("SYNC_ERROR_RETRY_MINUTES", 0)),
            stale_sync_minutes=int(os.environ.get("STALE_SYNC_MINUTES", 60)),
            auto_detect_format=_env_bool("FEED_AUTO_DETECT", True),
        )
