"""Tests for feedsync.poller."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from conftest import build_rss, mock_client
from feedsync.models import Article, utcnow
from feedsync.poller import (
    complete_embedding_batch,
    dispatch_signals,
    run_sync_cycle,
    sync_and_schedule,
)


def run_cycle(db, pipeline, config, handler, limit=25):
    async def go():
        async with mock_client(handler) as client:
            return await run_sync_cycle(db, pipeline, config, limit, client=client)

    return asyncio.run(go())


def test_cycle_syncs_due_feed_and_queues_new_articles(db, pipeline, make_feed, sync_config) -> None:
    feed = make_feed(priority="medium")
    for guid in ("g11", "g12"):
        db.create_article(Article(feed_id=feed.id, guid=guid, title="Old headline"))
    body = build_rss([(f"g{n}", f"Story {n}") for n in range(1, 13)])
    before = utcnow()

    summary = run_cycle(db, pipeline, sync_config, lambda request: httpx.Response(200, content=body))

    assert summary.feeds_checked == 1
    assert summary.feeds_succeeded == 1
    assert summary.articles_new == 10
    assert summary.articles_updated == 2
    assert summary.embeddings_queued == 10
    assert db.get_embedding_queue_depth() == 10
    assert pipeline.clustering_pending

    stored = db.get_feed_by_id(feed.id)
    assert stored.last_synced_at >= before
    assert stored.next_sync_at == stored.last_synced_at + timedelta(hours=24)
    assert pipeline.scheduler.get_feeds_due() == []

    (run,) = db.get_scheduler_runs()
    assert run["feeds_succeeded"] == 1
    assert run["embeddings_queued"] == 10
    assert run["errors"] == []


def test_failed_feed_keeps_its_schedule(db, pipeline, make_feed, sync_config) -> None:
    feed = make_feed()

    summary = run_cycle(db, pipeline, sync_config, lambda request: httpx.Response(503))

    assert summary.feeds_failed == 1
    assert summary.errors[0]["feed_id"] == feed.id
    stored = db.get_feed_by_id(feed.id)
    assert stored.last_synced_at is None
    assert stored.next_sync_at == feed.next_sync_at
    assert stored.error_count == 1
    assert "503" in stored.last_error
    assert [f.id for f in pipeline.scheduler.get_feeds_due()] == [feed.id]
    assert not pipeline.clustering_pending


def test_success_clears_previous_errors(db, pipeline, make_feed, sync_config) -> None:
    feed = make_feed(error_count=3, last_error="HTTP 503: Service Unavailable")

    run_cycle(db, pipeline, sync_config, lambda request: httpx.Response(304))

    stored = db.get_feed_by_id(feed.id)
    assert stored.error_count == 0
    assert stored.last_error is None


def test_not_modified_advances_schedule(db, pipeline, make_feed, sync_config) -> None:
    feed = make_feed(priority="high", etag='"v1"')

    summary = run_cycle(db, pipeline, sync_config, lambda request: httpx.Response(304))

    stored = db.get_feed_by_id(feed.id)
    assert summary.feeds_succeeded == 1
    assert summary.embeddings_queued == 0
    assert stored.next_sync_at == stored.last_synced_at + timedelta(hours=1)
    assert not pipeline.clustering_pending


def test_cycle_with_nothing_due_still_records_run(db, pipeline, sync_config) -> None:
    summary = run_cycle(db, pipeline, sync_config, lambda request: httpx.Response(500))

    assert summary.feeds_checked == 0
    assert len(db.get_scheduler_runs()) == 1


def test_embedding_batch_completion_dispatches_clustering(
    db, pipeline, make_feed, sync_config
) -> None:
    make_feed()
    body = build_rss([("g1", "Story 1"), ("g2", "Story 2")])
    run_cycle(db, pipeline, sync_config, lambda request: httpx.Response(200, content=body))
    article_ids = [e.article_id for e in db.get_pending_embeddings()]
    received = []

    assert complete_embedding_batch(db, pipeline, article_ids)
    assert not complete_embedding_batch(db, pipeline, article_ids)

    assert db.get_embedding_queue_depth() == 0
    assert dispatch_signals(pipeline, received.append) == 1
    assert len(received) == 1
    assert dispatch_signals(pipeline, received.append) == 0


def test_feed_already_syncing_is_skipped(db, pipeline, make_feed, sync_config) -> None:
    busy, idle = make_feed(), make_feed()
    pipeline.scheduler.claim([busy.id])
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(304)

    async def go():
        async with mock_client(handler) as client:
            return await sync_and_schedule(db, pipeline, [busy, idle], sync_config, client=client)

    results = asyncio.run(go())

    assert [r.feed_id for r in results] == [idle.id]
    assert requested == [idle.url]
    assert db.get_feed_by_id(busy.id).next_sync_at == busy.next_sync_at
    assert pipeline.scheduler.in_flight() == {busy.id}


def test_claims_are_released_when_sync_raises(db, pipeline, make_feed, sync_config) -> None:
    feed = make_feed()

    async def go():
        with patch("feedsync.poller.sync_feeds", new=AsyncMock(side_effect=RuntimeError("boom"))):
            await sync_and_schedule(db, pipeline, [feed], sync_config)

    with pytest.raises(RuntimeError):
        asyncio.run(go())

    assert pipeline.scheduler.in_flight() == set()
