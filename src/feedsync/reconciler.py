"""Deduplicate parsed entries against stored articles."""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable

from feedsync.database import Database
from feedsync.feed_parser import DefaultedEntry, ParsedEntry
from feedsync.models import Article, utcnow

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass
class ReconcileCounts:
    """Totals for one feed's batch of entries."""

    found: int = 0
    new: int = 0
    updated: int = 0
    failed: int = 0


def reconcile_entry(
    db: Database, feed_id: int, entry: ParsedEntry, fetched_at: datetime | None = None
) -> tuple[ReconcileOutcome, Article | None]:
    """Create, update or skip one entry.

    New guids become new articles. Known guids are updated in place only
    when title, content or excerpt changed.
    """
    if isinstance(entry, DefaultedEntry):
        logger.debug("Entry %s has synthesized fields: %s", entry.guid, ", ".join(entry.defaults))

    existing = db.get_article_by_guid(feed_id, entry.guid)

    if existing is None:
        article = db.create_article(
            Article(
                feed_id=feed_id,
                guid=entry.guid,
                title=entry.title,
                url=entry.url,
                author=entry.author,
                published_at=entry.published_at,
                content=entry.content,
                excerpt=entry.excerpt,
                image_url=entry.image_url,
                fetched_at=fetched_at or utcnow(),
            )
        )
        return ReconcileOutcome.CREATED, article

    changed = (
        existing.title != entry.title
        or existing.content != entry.content
        or existing.excerpt != entry.excerpt
    )
    if not changed:
        return ReconcileOutcome.SKIPPED, existing

    article = db.update_article(
        existing.id,
        {
            "title": entry.title,
            "content": entry.content,
            "excerpt": entry.excerpt,
            "image_url": entry.image_url,
            "author": entry.author,
        },
    )
    return ReconcileOutcome.UPDATED, article


def reconcile_entries(
    db: Database, feed_id: int, entries: Iterable[ParsedEntry]
) -> ReconcileCounts:
    """Reconcile every entry of a feed, isolating per-entry failures."""
    counts = ReconcileCounts()
    fetched_at = utcnow()

    for entry in entries:
        counts.found += 1
        try:
            outcome, _ = reconcile_entry(db, feed_id, entry, fetched_at)
        except Exception as e:
            counts.failed += 1
            logger.error("Failed to store entry %s for feed %s: %s", entry.guid, feed_id, e)
            continue

        if outcome is ReconcileOutcome.CREATED:
            counts.new += 1
        elif outcome is ReconcileOutcome.UPDATED:
            counts.updated += 1

    return counts
