"""Background sync loop for feedsync."""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Callable

import httpx

from feedsync.config import SyncConfig
from feedsync.database import Database
from feedsync.models import Feed, SyncResult, utcnow
from feedsync.pipeline import EmbeddingBatchCompleted, PipelineManager, RunClustering
from feedsync.sync import sync_feeds

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 900  # 15 minutes
DEFAULT_DUE_LIMIT = 25


@dataclass
class CycleSummary:
    """Totals for one background sync cycle."""

    feeds_checked: int = 0
    feeds_succeeded: int = 0
    feeds_failed: int = 0
    articles_new: int = 0
    articles_updated: int = 0
    embeddings_queued: int = 0
    errors: list[dict] = field(default_factory=list)


async def sync_and_schedule(
    db: Database,
    pipeline: PipelineManager,
    feeds: list[Feed],
    config: SyncConfig,
    client: httpx.AsyncClient | None = None,
    summary: CycleSummary | None = None,
) -> list[SyncResult]:
    """Sync feeds, then advance schedules and notify the pipeline.

    Only successful attempts (304 included) move a feed's schedule forward;
    a failed feed keeps its next_sync_at and stays due.

    Feeds already being synced elsewhere are skipped, so the returned
    results cover only the feeds synced by this call.
    """
    scheduler = pipeline.scheduler
    claimed = set(scheduler.claim([feed.id for feed in feeds]))
    skipped = [feed for feed in feeds if feed.id not in claimed]
    if skipped:
        logger.info("Skipping %d feeds already being synced", len(skipped))
    feeds = [feed for feed in feeds if feed.id in claimed]

    try:
        results = await sync_feeds(db, feeds, config, client=client)
        _apply_results(db, pipeline, feeds, results, summary)
    finally:
        scheduler.release(list(claimed))
    return results


def _apply_results(
    db: Database,
    pipeline: PipelineManager,
    feeds: list[Feed],
    results: list[SyncResult],
    summary: CycleSummary | None,
) -> None:
    summary = summary if summary is not None else CycleSummary()

    for feed, result in zip(feeds, results):
        if not result.success:
            summary.feeds_failed += 1
            summary.errors.append({"feed_id": feed.id, "feed": feed.title, "error": result.error})
            db.update_feed_error(feed.id, result.error or "Unknown error")
            continue

        summary.feeds_succeeded += 1
        summary.articles_new += result.articles_new
        summary.articles_updated += result.articles_updated
        db.reset_feed_error(feed.id)
        pipeline.scheduler.schedule_next_sync(feed.id, result.synced_at)

        try:
            summary.embeddings_queued += pipeline.on_sync_complete(
                feed.id, result.synced_at, result.articles_new
            )
        except Exception as e:
            logger.error("Failed to queue embeddings for feed '%s': %s", feed.title, e)


async def run_sync_cycle(
    db: Database,
    pipeline: PipelineManager,
    config: SyncConfig,
    limit: int = DEFAULT_DUE_LIMIT,
    client: httpx.AsyncClient | None = None,
) -> CycleSummary:
    """Sync every feed currently due and record a run summary."""
    started_at = utcnow()
    feeds = pipeline.scheduler.get_feeds_due(limit)
    summary = CycleSummary(feeds_checked=len(feeds))

    if feeds:
        await sync_and_schedule(db, pipeline, feeds, config, client=client, summary=summary)
    else:
        logger.debug("No feeds due for sync")

    db.record_scheduler_run(
        started_at=started_at,
        completed_at=utcnow(),
        feeds_checked=summary.feeds_checked,
        feeds_succeeded=summary.feeds_succeeded,
        feeds_failed=summary.feeds_failed,
        articles_new=summary.articles_new,
        articles_updated=summary.articles_updated,
        embeddings_queued=summary.embeddings_queued,
        errors=summary.errors,
    )
    return summary


def complete_embedding_batch(
    db: Database, pipeline: PipelineManager, article_ids: list[int]
) -> bool:
    """Record that the embedding worker finished a batch.

    Returns True if this completion requested clustering.
    """
    db.mark_embeddings_complete(article_ids)
    return pipeline.post(EmbeddingBatchCompleted(tuple(article_ids)))


def dispatch_signals(
    pipeline: PipelineManager, handler: Callable[[RunClustering], None]
) -> int:
    """Hand every waiting clustering signal to `handler`. Returns the count."""
    signals = pipeline.drain_signals()
    for signal in signals:
        handler(signal)
    return len(signals)


def _log_clustering_signal(signal: RunClustering) -> None:
    logger.info("Clustering requested at %s", signal.emitted_at.isoformat())


async def start_polling(
    db: Database,
    pipeline: PipelineManager,
    config: SyncConfig | None = None,
    on_cluster: Callable[[RunClustering], None] | None = None,
) -> None:
    """Run the sync loop indefinitely."""
    config = config or SyncConfig.from_env()
    on_cluster = on_cluster or _log_clustering_signal
    interval = int(os.environ.get("FEEDSYNC_POLL_INTERVAL", DEFAULT_POLL_INTERVAL))
    limit = int(os.environ.get("FEEDSYNC_DUE_LIMIT", DEFAULT_DUE_LIMIT))
    logger.info("Poller started (interval: %ds)", interval)

    while True:
        try:
            summary = await run_sync_cycle(db, pipeline, config, limit)
            if summary.feeds_checked:
                logger.info(
                    "Sync cycle complete: %d/%d feeds ok, %d new articles",
                    summary.feeds_succeeded, summary.feeds_checked, summary.articles_new,
                )
            dispatch_signals(pipeline, on_cluster)
        except Exception as e:
            logger.error("Sync cycle failed: %s", e)

        await asyncio.sleep(interval)
