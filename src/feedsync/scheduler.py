"""Priority-tiered feed sync scheduling.

Each feed's priority sets how often it is synced: high feeds hourly,
medium feeds daily and low feeds weekly. A feed's next_sync_at is always
its last successful sync (or now, if it never synced) plus its interval.
"""

import logging
import threading
from datetime import datetime, timedelta

from feedsync.database import Database
from feedsync.models import PRIORITIES, Feed, FeedSchedule, utcnow

logger = logging.getLogger(__name__)

PRIORITY_INTERVALS = {
    "high": 1,
    "medium": 24,
    "low": 168,
}

DEFAULT_PRIORITY = "medium"

# Matched as substrings of the lowercased feed URL.
BREAKING_NEWS_SOURCES = (
    "nytimes.com",
    "bbc.com",
    "bbc.co.uk",
    "bbci.co.uk",
    "cnn.com",
    "reuters.com",
    "apnews.com",
    "theguardian.com",
    "washingtonpost.com",
    "npr.org",
    "aljazeera.com",
    "bloomberg.com",
)


class InvalidPriorityError(ValueError):
    """Raised when a priority is not one of high, medium, low."""


class FeedNotFoundError(LookupError):
    """Raised when a feed id does not exist."""


def is_valid_priority(priority: str) -> bool:
    return priority in PRIORITIES


def get_sync_interval_hours(priority: str) -> int:
    """Hours between syncs for a priority tier."""
    if not is_valid_priority(priority):
        raise InvalidPriorityError(
            f"Invalid priority value: {priority!r}. Must be 'high', 'medium', or 'low'."
        )
    return PRIORITY_INTERVALS[priority]


def compute_next_sync(
    priority: str, base_time: datetime | None = None, now: datetime | None = None
) -> datetime:
    """base_time plus the priority's interval; base_time defaults to now."""
    base = base_time or now or utcnow()
    return base + timedelta(hours=get_sync_interval_hours(priority))


def is_breaking_news_source(url: str) -> bool:
    normalized = url.lower()
    return any(source in normalized for source in BREAKING_NEWS_SOURCES)


def get_default_priority(url: str) -> str:
    """High for known breaking-news sources, medium otherwise."""
    return "high" if is_breaking_news_source(url) else DEFAULT_PRIORITY


def is_due(feed: Feed, now: datetime | None = None) -> bool:
    """A feed is due if it never synced or its next_sync_at has passed."""
    if feed.last_synced_at is None or feed.next_sync_at is None:
        return True
    return (now or utcnow()) >= feed.next_sync_at


class FeedScheduler:
    """Reads and updates feed schedules through the storage layer.

    Also tracks feeds with a sync in flight; a feed is never synced twice
    at once.
    """

    def __init__(self, db: Database):
        self.db = db
        self._in_flight: set[int] = set()
        self._in_flight_lock = threading.Lock()

    def _get_feed(self, feed_id: int) -> Feed:
        feed = self.db.get_feed_by_id(feed_id)
        if feed is None:
            raise FeedNotFoundError(f"Feed with id {feed_id} not found")
        return feed

    def claim(self, feed_ids: list[int]) -> list[int]:
        """Mark feeds as syncing. Returns the ids that were not already in flight."""
        claimed = []
        with self._in_flight_lock:
            for feed_id in feed_ids:
                if feed_id not in self._in_flight:
                    self._in_flight.add(feed_id)
                    claimed.append(feed_id)
        return claimed

    def release(self, feed_ids: list[int]) -> None:
        with self._in_flight_lock:
            self._in_flight.difference_update(feed_ids)

    def in_flight(self) -> set[int]:
        with self._in_flight_lock:
            return set(self._in_flight)

    def get_feeds_due(self, limit: int = 50, now: datetime | None = None) -> list[Feed]:
        """Active, due feeds not already syncing, highest priority first."""
        now = now or utcnow()
        busy = self.in_flight()
        feeds = self.db.get_feeds_due_for_sync(limit + len(busy), now=now)
        due = [
            f for f in feeds
            if f.status == "active" and f.id not in busy and is_due(f, now)
        ]
        return due[:limit]

    def schedule_next_sync(self, feed_id: int, synced_at: datetime | None = None) -> datetime:
        """Advance a feed's schedule after a successful sync."""
        feed = self._get_feed(feed_id)
        synced_at = synced_at or utcnow()
        priority = feed.priority if is_valid_priority(feed.priority) else DEFAULT_PRIORITY
        next_sync_at = compute_next_sync(priority, synced_at)

        self.db.update_feed_schedule(
            feed_id,
            next_sync_at=next_sync_at,
            sync_interval_hours=get_sync_interval_hours(priority),
            last_synced_at=synced_at,
        )
        logger.info(
            "Scheduled next sync for feed '%s': %s (%s priority)",
            feed.title, next_sync_at.isoformat(), priority,
        )
        return next_sync_at

    def update_priority(self, feed_id: int, priority: str) -> Feed:
        """Change a feed's priority and recompute next_sync_at.

        The new schedule counts from the feed's existing last_synced_at, so
        a priority change never postpones a feed that has synced before.

        Raises:
            InvalidPriorityError: Before anything is read or written.
            FeedNotFoundError: If the feed does not exist.
        """
        interval = get_sync_interval_hours(priority)
        feed = self._get_feed(feed_id)
        next_sync_at = compute_next_sync(priority, feed.last_synced_at)

        updated = self.db.update_feed_schedule(
            feed_id,
            priority=priority,
            next_sync_at=next_sync_at,
            sync_interval_hours=interval,
        )
        logger.info(
            "Updated feed '%s' priority to %s, next sync: %s",
            feed.title, priority, next_sync_at.isoformat(),
        )
        return updated

    def bulk_update_priorities(self, changes: list[tuple[int, str]]) -> list[Feed]:
        """Apply several priority changes, skipping the ones that fail."""
        updated = []
        for feed_id, priority in changes:
            try:
                updated.append(self.update_priority(feed_id, priority))
            except (InvalidPriorityError, FeedNotFoundError) as e:
                logger.error("Failed to update priority for feed %s: %s", feed_id, e)
        return updated

    def get_sync_schedule(self) -> list[FeedSchedule]:
        schedules = []
        for feed in self.db.get_all_feeds():
            priority = feed.priority if is_valid_priority(feed.priority) else DEFAULT_PRIORITY
            schedules.append(
                FeedSchedule(
                    feed_id=feed.id,
                    title=feed.title,
                    priority=priority,
                    last_synced_at=feed.last_synced_at,
                    next_sync_at=feed.next_sync_at
                    or compute_next_sync(priority, feed.last_synced_at),
                    sync_interval_hours=get_sync_interval_hours(priority),
                )
            )
        return schedules

    def determine_new_feed_priority(self, url: str) -> str:
        """Priority for a new subscription.

        A catalog entry's explicit default wins, then breaking-news
        detection, then medium.
        """
        recommended = self.db.get_recommended_feed_by_url(url)
        if recommended and recommended.default_priority:
            if is_valid_priority(recommended.default_priority):
                logger.info(
                    "Inheriting priority '%s' from catalog entry '%s'",
                    recommended.default_priority, recommended.name,
                )
                return recommended.default_priority
            logger.warning(
                "Ignoring invalid catalog priority %r for %s",
                recommended.default_priority, url,
            )

        if is_breaking_news_source(url):
            logger.info("Detected breaking news source, setting high priority: %s", url)
            return "high"

        return DEFAULT_PRIORITY

    def initialize_feed_schedule(self, feed_id: int, url: str) -> Feed:
        """Apply the default priority and its interval to a new feed."""
        priority = self.determine_new_feed_priority(url)
        feed = self._get_feed(feed_id)
        return self.db.update_feed_schedule(
            feed_id,
            priority=priority,
            next_sync_at=compute_next_sync(priority, feed.last_synced_at),
            sync_interval_hours=get_sync_interval_hours(priority),
        )

    def trigger_manual_sync(self, feed_id: int) -> bool:
        """Make a feed due now. Returns False if the feed does not exist."""
        if self.db.get_feed_by_id(feed_id) is None:
            logger.warning("Feed %s not found for manual sync", feed_id)
            return False
        self.db.update_feed_schedule(feed_id, next_sync_at=utcnow())
        return True
