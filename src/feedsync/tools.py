"""Operator tools for feedsync: sync now, inspect due feeds, change priority."""

import asyncio
import json
from datetime import datetime
from typing import Any, Coroutine
from urllib.parse import urlparse

from langchain_core.tools import tool

from feedsync.config import SyncConfig
from feedsync.database import Database
from feedsync.models import Feed
from feedsync.pipeline import PipelineManager
from feedsync.poller import sync_and_schedule
from feedsync.scheduler import (
    FeedNotFoundError,
    InvalidPriorityError,
    get_sync_interval_hours,
)

# Module-level services, set during startup
_db: Database | None = None
_pipeline: PipelineManager | None = None
_config: SyncConfig | None = None
_loop: asyncio.AbstractEventLoop | None = None


def set_services(
    db: Database,
    pipeline: PipelineManager,
    config: SyncConfig | None = None,
    loop: asyncio.AbstractEventLoop | None = None,
) -> None:
    """Set the database, pipeline and sync config used by all tools.

    `loop` is the event loop running the background poller. Waited syncs
    run on it so they share the poller's thread and database connection.
    """
    global _db, _pipeline, _config, _loop
    _db = db
    _pipeline = pipeline
    _config = config or SyncConfig()
    _loop = loop


def _get_db() -> Database:
    """Get the database instance, raising if not set."""
    if _db is None:
        raise RuntimeError("Services not initialized. Call set_services() first.")
    return _db


def _get_pipeline() -> PipelineManager:
    if _pipeline is None:
        raise RuntimeError("Services not initialized. Call set_services() first.")
    return _pipeline


def _run_on_service_loop(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run `coro` on the poller's loop and block until it finishes.

    Must be called from a thread other than the loop's own. Without a
    running service loop the coroutine gets a fresh loop of its own.
    """
    if _loop is not None and _loop.is_running():
        return asyncio.run_coroutine_threadsafe(coro, _loop).result()
    return asyncio.run(coro)


def _error(message: str) -> str:
    return json.dumps({"status": "error", "message": message})


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def _feed_summary(feed: Feed) -> dict:
    return {
        "id": feed.id,
        "title": feed.title,
        "url": feed.url,
        "priority": feed.priority,
        "status": feed.status,
        "last_synced_at": _iso(feed.last_synced_at),
        "next_sync_at": _iso(feed.next_sync_at),
        "sync_interval_hours": feed.sync_interval_hours,
        "error_count": feed.error_count,
        **({"last_error": feed.last_error} if feed.last_error else {}),
    }


def _validate_url(url: str) -> str | None:
    """Return an error message if the URL is not a usable http(s) URL."""
    try:
        result = urlparse(url)
    except ValueError:
        return "Invalid URL format"
    if not result.scheme or not result.netloc:
        return "Invalid URL format"
    if result.scheme not in ("http", "https"):
        return "Invalid URL format: only http and https are supported"
    return None


@tool
def subscribe_to_feed(url: str, title: str = "") -> str:
    """Subscribe to an RSS or Atom feed by URL.

    The feed gets a default priority (catalog default, breaking news, or
    medium) and is synced on the next cycle.

    Args:
        url: The URL of the RSS or Atom feed to subscribe to.
        title: Optional display title; defaults to the URL's host.
    """
    db = _get_db()

    problem = _validate_url(url)
    if problem:
        return _error(problem)

    if db.get_feed_by_url(url):
        return _error("Already subscribed to this feed")

    feed = db.add_feed(Feed(url=url, title=title or urlparse(url).netloc))
    feed = _get_pipeline().scheduler.initialize_feed_schedule(feed.id, url)

    return json.dumps({"status": "subscribed", "feed": _feed_summary(feed)})


@tool
def list_feeds() -> str:
    """List all subscribed feeds with their priority, schedule and error state."""
    feeds = _get_db().get_all_feeds()
    return json.dumps({
        "feeds": [_feed_summary(feed) for feed in feeds],
        "total": len(feeds),
    })


@tool
def get_feeds_due(limit: int = 25) -> str:
    """List active feeds that are due for sync now, highest priority first.

    Args:
        limit: Maximum number of feeds to return (default 25).
    """
    feeds = _get_pipeline().scheduler.get_feeds_due(limit)
    return json.dumps({
        "feeds": [_feed_summary(feed) for feed in feeds],
        "total": len(feeds),
    })


@tool
def set_priority(feed_id: int, priority: str) -> str:
    """Change a feed's sync priority: high (hourly), medium (daily) or low (weekly).

    Args:
        feed_id: The id of the feed.
        priority: One of "high", "medium", "low".
    """
    try:
        feed = _get_pipeline().scheduler.update_priority(feed_id, priority)
    except (InvalidPriorityError, FeedNotFoundError) as e:
        return _error(str(e))

    return json.dumps({
        "status": "updated",
        "feed": _feed_summary(feed),
        "interval_hours": get_sync_interval_hours(priority),
    })


@tool
def sync_now(feed_ids: list[int], wait: bool = False) -> str:
    """Sync specific feeds now.

    Without wait, the feeds are marked due and picked up by the next
    background cycle. With wait, they are synced immediately and the
    per-feed results are returned; feeds the poller is already syncing
    are reported as skipped.

    Args:
        feed_ids: Ids of the feeds to sync.
        wait: Block until the sync finishes and return its results.
    """
    db = _get_db()
    pipeline = _get_pipeline()

    if not wait:
        trigger = pipeline.trigger_manual_sync(feed_ids)
        if trigger.feeds_triggered == 0:
            return _error("None of the given feed ids exist")
        return json.dumps({
            "status": "triggered",
            "feeds_triggered": trigger.feeds_triggered,
            "clustering_scheduled": trigger.clustering_scheduled,
        })

    feeds = [f for f in (db.get_feed_by_id(i) for i in feed_ids) if f is not None]
    if not feeds:
        return _error("None of the given feed ids exist")

    results = _run_on_service_loop(
        sync_and_schedule(db, pipeline, feeds, _config or SyncConfig())
    )
    synced_ids = {r.feed_id for r in results}

    response = {"status": "synced", "feeds_synced": len(results)}
    skipped = [f.id for f in feeds if f.id not in synced_ids]
    if skipped:
        response["skipped_in_progress"] = skipped
    response["results"] = [
        {
            "feed_id": r.feed_id,
            "success": r.success,
            "articles_found": r.articles_found,
            "articles_new": r.articles_new,
            "articles_updated": r.articles_updated,
            "http_status": r.http_status,
            **({"error": r.error} if r.error else {}),
        }
        for r in results
    ]
    return json.dumps(response)


@tool
def get_sync_history(feed_id: int, limit: int = 10) -> str:
    """Show the most recent sync attempts for a feed, newest first.

    Args:
        feed_id: The id of the feed.
        limit: Maximum number of attempts to return (default 10).
    """
    db = _get_db()
    if db.get_feed_by_id(feed_id) is None:
        return _error(f"Feed with id {feed_id} not found")

    logs = db.get_sync_logs(feed_id, limit)
    return json.dumps({
        "feed_id": feed_id,
        "attempts": [
            {
                "started_at": _iso(log.started_at),
                "completed_at": _iso(log.completed_at),
                "status": log.status,
                "http_status": log.http_status,
                "error": log.error_message,
                "articles_found": log.articles_found,
                "articles_new": log.articles_new,
                "articles_updated": log.articles_updated,
                "feed_size_bytes": log.feed_size_bytes,
            }
            for log in logs
        ],
    })


@tool
def get_pipeline_status() -> str:
    """Show the embedding/clustering pipeline state and the latest sync cycles."""
    db = _get_db()
    return json.dumps({
        "pipeline": _get_pipeline().status(),
        "recent_runs": db.get_scheduler_runs(limit=5),
    })
