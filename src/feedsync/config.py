"""Sync configuration passed to the fetcher, parser and orchestrator."""

import os
from dataclasses import dataclass

DEFAULT_USER_AGENT = "feedsync/1.0 (+https://github.com/feedsync/feedsync)"


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int | None) -> int | None:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


@dataclass(frozen=True)
class SyncConfig:
    """Options for a sync run.

    Attributes:
        timeout_ms: Per-request timeout for feed fetches.
        user_agent: User-Agent header sent with every fetch.
        max_articles_per_feed: Cap on entries read from one feed body, or None.
        respect_etag: Send the stored ETag as If-None-Match.
        respect_last_modified: Send the stored Last-Modified as If-Modified-Since.
        fetch_attempts: Attempts per fetch on transport errors; 1 disables retry.
        retry_base_delay: Seconds before the second attempt, doubled after.
        batch_size: Feeds synced concurrently per batch.
        batch_delay_seconds: Pause between batches.
    """

    timeout_ms: int = 10_000
    user_agent: str = DEFAULT_USER_AGENT
    max_articles_per_feed: int | None = 50
    respect_etag: bool = True
    respect_last_modified: bool = True
    fetch_attempts: int = 1
    retry_base_delay: float = 1.0
    batch_size: int = 5
    batch_delay_seconds: float = 1.0

    def __post_init__(self):
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {self.timeout_ms}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.fetch_attempts < 1:
            raise ValueError(f"fetch_attempts must be at least 1, got {self.fetch_attempts}")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Build a config from FEEDSYNC_* environment variables."""
        defaults = cls()
        return cls(
            timeout_ms=_env_int("FEEDSYNC_TIMEOUT_MS", defaults.timeout_ms),
            user_agent=os.environ.get("FEEDSYNC_USER_AGENT", defaults.user_agent),
            max_articles_per_feed=_env_int(
                "FEEDSYNC_MAX_ARTICLES", defaults.max_articles_per_feed
            ),
            respect_etag=_env_bool("FEEDSYNC_RESPECT_ETAG", defaults.respect_etag),
            respect_last_modified=_env_bool(
                "FEEDSYNC_RESPECT_LAST_MODIFIED", defaults.respect_last_modified
            ),
            fetch_attempts=_env_int("FEEDSYNC_FETCH_ATTEMPTS", defaults.fetch_attempts),
            retry_base_delay=float(
                os.environ.get("FEEDSYNC_RETRY_BASE_DELAY", defaults.retry_base_delay)
            ),
            batch_size=_env_int("FEEDSYNC_BATCH_SIZE", defaults.batch_size),
            batch_delay_seconds=float(
                os.environ.get("FEEDSYNC_BATCH_DELAY", defaults.batch_delay_seconds)
            ),
        )
