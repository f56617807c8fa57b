"""Single-feed synchronization and batched multi-feed runs."""

import asyncio
import logging

import httpx

from feedsync.config import SyncConfig
from feedsync.database import Database
from feedsync.feed_parser import FeedParseError, parse_feed
from feedsync.fetcher import FetchResult, build_client, fetch_feed
from feedsync.models import Feed, SyncResult, utcnow
from feedsync.reconciler import reconcile_entries

logger = logging.getLogger(__name__)


async def sync_feed(
    db: Database,
    feed: Feed,
    config: SyncConfig,
    client: httpx.AsyncClient,
) -> SyncResult:
    """Fetch, parse and reconcile one feed.

    Every attempt writes an audit row when it starts and closes it with
    either the counts or the failure cause.
    """
    log_id = db.start_feed_sync(feed.id)
    started_at = utcnow()
    logger.info("Starting sync for feed '%s' (%s)", feed.title, feed.url)

    try:
        fetched = await _fetch(client, feed, config)

        if not fetched.ok:
            db.complete_feed_sync_error(log_id, fetched.error, fetched.status_code)
            logger.warning("Sync failed for feed '%s': %s", feed.title, fetched.error)
            return SyncResult.failure(feed.id, fetched.error, fetched.status_code)

        result = SyncResult(
            feed_id=feed.id,
            success=True,
            http_status=fetched.status_code,
            etag=fetched.etag,
            last_modified=fetched.last_modified,
            feed_size_bytes=fetched.size_bytes,
            synced_at=started_at,
        )

        if not fetched.not_modified:
            entries = parse_feed(fetched.body, config.max_articles_per_feed)
            counts = reconcile_entries(db, feed.id, entries)
            result.articles_found = counts.found
            result.articles_new = counts.new
            result.articles_updated = counts.updated

        if fetched.etag or fetched.last_modified:
            db.update_feed_validators(feed.id, fetched.etag, fetched.last_modified)

        db.complete_feed_sync_success(log_id, result)
        logger.info(
            "Sync completed for feed '%s': %d new, %d updated",
            feed.title, result.articles_new, result.articles_updated,
        )
        return result

    except FeedParseError as e:
        db.complete_feed_sync_error(log_id, str(e), fetched.status_code)
        logger.warning("Feed '%s' could not be parsed: %s", feed.title, e)
        return SyncResult.failure(feed.id, str(e), fetched.status_code)
    except Exception as e:
        message = str(e) or type(e).__name__
        db.complete_feed_sync_error(log_id, message)
        logger.error("Sync failed for feed '%s': %s", feed.title, message)
        return SyncResult.failure(feed.id, message)


async def _fetch(client: httpx.AsyncClient, feed: Feed, config: SyncConfig) -> FetchResult:
    return await fetch_feed(
        client,
        feed.url,
        etag=feed.etag if config.respect_etag else None,
        last_modified=feed.last_modified if config.respect_last_modified else None,
        timeout=config.timeout_seconds,
        attempts=config.fetch_attempts,
        retry_base_delay=config.retry_base_delay,
    )


async def sync_feeds(
    db: Database,
    feeds: list[Feed],
    config: SyncConfig,
    batch_size: int | None = None,
    delay_seconds: float | None = None,
    client: httpx.AsyncClient | None = None,
) -> list[SyncResult]:
    """Sync feeds in consecutive concurrent batches.

    Returns one result per input feed, in input order. A feed that fails,
    even by raising, never affects the others in its batch.

    Raises:
        ValueError: If batch_size is not positive.
    """
    if batch_size is None:
        batch_size = config.batch_size
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")
    if delay_seconds is None:
        delay_seconds = config.batch_delay_seconds

    if client is None:
        async with build_client(config) as owned_client:
            return await _sync_batches(db, feeds, config, batch_size, delay_seconds, owned_client)
    return await _sync_batches(db, feeds, config, batch_size, delay_seconds, client)


async def _sync_batches(
    db: Database,
    feeds: list[Feed],
    config: SyncConfig,
    batch_size: int,
    delay_seconds: float,
    client: httpx.AsyncClient,
) -> list[SyncResult]:
    results: list[SyncResult] = []
    logger.info("Starting batch sync for %d feeds (batch size: %d)", len(feeds), batch_size)

    for start in range(0, len(feeds), batch_size):
        batch = feeds[start:start + batch_size]
        settled = await asyncio.gather(
            *(sync_feed(db, feed, config, client) for feed in batch),
            return_exceptions=True,
        )
        for feed, outcome in zip(batch, settled):
            if isinstance(outcome, BaseException):
                logger.error("Batch sync error for feed '%s': %s", feed.title, outcome)
                outcome = SyncResult.failure(feed.id, str(outcome) or type(outcome).__name__)
            results.append(outcome)

        if start + batch_size < len(feeds) and delay_seconds > 0:
            await asyncio.sleep(delay_seconds)

    succeeded = sum(1 for r in results if r.success)
    logger.info(
        "Batch sync completed: %d/%d feeds successful, %d new articles",
        succeeded, len(feeds), sum(r.articles_new for r in results),
    )
    return results
