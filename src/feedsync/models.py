"""Data models for feedsync."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

Priority = Literal["high", "medium", "low"]
FeedStatus = Literal["active", "paused", "error"]

PRIORITIES: tuple[str, ...] = ("high", "medium", "low")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass
class Feed:
    """A subscribed syndication source and its sync schedule."""

    url: str
    title: str
    priority: Priority = "medium"
    last_synced_at: datetime | None = None
    next_sync_at: datetime | None = None
    sync_interval_hours: int = 24
    etag: str | None = None
    last_modified: str | None = None
    status: FeedStatus = "active"
    error_count: int = 0
    last_error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: int | None = None


@dataclass
class Article:
    """A reconciled entry belonging to a feed."""

    feed_id: int
    guid: str
    title: str
    url: str = ""
    author: str | None = None
    published_at: datetime | None = None
    content: str | None = None
    excerpt: str | None = None
    image_url: str | None = None
    fetched_at: datetime = field(default_factory=utcnow)
    id: int | None = None


@dataclass
class SyncResult:
    """Outcome of one feed's sync attempt."""

    feed_id: int | None
    success: bool
    articles_found: int = 0
    articles_new: int = 0
    articles_updated: int = 0
    error: str | None = None
    http_status: int | None = None
    etag: str | None = None
    last_modified: str | None = None
    feed_size_bytes: int = 0
    synced_at: datetime = field(default_factory=utcnow)

    @classmethod
    def failure(
        cls, feed_id: int | None, error: str, http_status: int | None = None
    ) -> "SyncResult":
        return cls(feed_id=feed_id, success=False, error=error, http_status=http_status)


@dataclass
class EmbeddingQueueEntry:
    """An article waiting for the external embedding worker."""

    article_id: int
    priority: int = 0
    status: str = "pending"
    queued_at: datetime = field(default_factory=utcnow)
    id: int | None = None


@dataclass
class RecommendedFeed:
    """Catalog entry a feed may be subscribed from."""

    url: str
    name: str
    default_priority: str | None = None
    id: int | None = None


@dataclass
class SyncLogEntry:
    """Audit trail row for one sync attempt."""

    feed_id: int
    started_at: datetime
    status: str = "in_progress"
    completed_at: datetime | None = None
    http_status: int | None = None
    error_message: str | None = None
    articles_found: int = 0
    articles_new: int = 0
    articles_updated: int = 0
    etag_received: str | None = None
    last_modified_received: str | None = None
    feed_size_bytes: int | None = None
    id: int | None = None


@dataclass
class FeedSchedule:
    """Operator-facing view of a feed's sync schedule."""

    feed_id: int
    title: str
    priority: str
    last_synced_at: datetime | None
    next_sync_at: datetime
    sync_interval_hours: int
