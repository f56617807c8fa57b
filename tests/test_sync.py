"""Tests for feedsync.sync."""

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from conftest import SAMPLE_NOT_A_FEED_XML, SAMPLE_RSS_XML, build_rss, mock_client
from feedsync.models import Article, SyncResult
from feedsync.sync import sync_feed, sync_feeds


def run_sync(db, feed, config, handler) -> SyncResult:
    async def go():
        async with mock_client(handler) as client:
            return await sync_feed(db, feed, config, client)

    return asyncio.run(go())


def run_batch(db, feeds, config, handler, **kwargs) -> list[SyncResult]:
    async def go():
        async with mock_client(handler) as client:
            return await sync_feeds(db, feeds, config, client=client, **kwargs)

    return asyncio.run(go())


class TestSyncFeed:
    def test_new_feed_stores_articles_and_validators(self, db, make_feed, sync_config) -> None:
        feed = make_feed()
        body = SAMPLE_RSS_XML.encode()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body, headers={"ETag": '"v1"'})

        result = run_sync(db, feed, sync_config, handler)

        assert result.success
        assert result.http_status == 200
        assert (result.articles_found, result.articles_new, result.articles_updated) == (2, 2, 0)
        assert result.feed_size_bytes == len(body)
        assert db.get_feed_by_id(feed.id).etag == '"v1"'

        (log,) = db.get_sync_logs(feed.id)
        assert log.status == "success"
        assert log.articles_new == 2
        assert log.etag_received == '"v1"'
        assert log.completed_at is not None

    def test_not_modified_leaves_articles_untouched(self, db, make_feed, sync_config) -> None:
        feed = make_feed(etag='"v1"', last_modified="Wed, 11 Feb 2026 10:00:00 GMT")
        db.create_article(Article(feed_id=feed.id, guid="kept", title="Kept"))
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.headers)
            return httpx.Response(304)

        result = run_sync(db, feed, sync_config, handler)

        assert seen["if-none-match"] == '"v1"'
        assert seen["if-modified-since"] == "Wed, 11 Feb 2026 10:00:00 GMT"
        assert result.success
        assert result.http_status == 304
        assert (result.articles_found, result.articles_new, result.articles_updated) == (0, 0, 0)
        assert [a.title for a in db.get_articles_by_feed_id(feed.id)] == ["Kept"]
        assert db.get_sync_logs(feed.id)[0].status == "success"

    def test_validators_not_sent_when_disabled(self, db, make_feed, sync_config) -> None:
        feed = make_feed(etag='"v1"', last_modified="Wed, 11 Feb 2026 10:00:00 GMT")
        config = replace(sync_config, respect_etag=False, respect_last_modified=False)
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.headers)
            return httpx.Response(200, content=SAMPLE_RSS_XML.encode())

        run_sync(db, feed, config, handler)

        assert "if-none-match" not in seen
        assert "if-modified-since" not in seen

    def test_http_error_is_recorded(self, db, make_feed, sync_config) -> None:
        feed = make_feed()

        result = run_sync(db, feed, sync_config, lambda request: httpx.Response(500))

        assert not result.success
        assert result.http_status == 500
        assert "500" in result.error
        (log,) = db.get_sync_logs(feed.id)
        assert log.status == "error"
        assert log.http_status == 500
        assert log.error_message == result.error

    def test_unparseable_body_is_a_failure(self, db, make_feed, sync_config) -> None:
        feed = make_feed()

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=SAMPLE_NOT_A_FEED_XML.encode())

        result = run_sync(db, feed, sync_config, handler)

        assert not result.success
        assert result.error
        assert result.http_status == 200
        (log,) = db.get_sync_logs(feed.id)
        assert log.status == "error"
        assert log.error_message == result.error
        assert db.get_articles_by_feed_id(feed.id) == []

    def test_transport_error_without_retry_is_one_attempt(self, db, make_feed, sync_config) -> None:
        feed = make_feed()
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        result = run_sync(db, feed, sync_config, handler)

        assert not result.success
        assert result.http_status is None
        assert len(calls) == 1

    def test_transport_error_is_retried_when_enabled(self, db, make_feed, sync_config) -> None:
        feed = make_feed()
        config = replace(sync_config, fetch_attempts=3)
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(200, content=SAMPLE_RSS_XML.encode())

        result = run_sync(db, feed, config, handler)

        assert result.success
        assert len(calls) == 3

    def test_http_error_is_not_retried(self, db, make_feed, sync_config) -> None:
        feed = make_feed()
        config = replace(sync_config, fetch_attempts=3)
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404)

        result = run_sync(db, feed, config, handler)

        assert not result.success
        assert len(calls) == 1

    def test_stalled_body_fails_within_timeout(self, db, make_feed, sync_config) -> None:
        feed = make_feed()
        config = replace(sync_config, timeout_ms=50)

        async def stall():
            yield b"<rss>"
            await asyncio.sleep(5)

        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=stall())

        result = run_sync(db, feed, config, handler)

        assert not result.success
        assert "Timed out" in result.error
        assert db.get_sync_logs(feed.id, 1)[0].status == "error"

    def test_new_and_changed_entries_are_counted(self, db, make_feed, sync_config) -> None:
        feed = make_feed()
        for guid in ("g11", "g12"):
            db.create_article(Article(feed_id=feed.id, guid=guid, title="Old headline"))
        body = build_rss([(f"g{n}", f"Story {n}") for n in range(1, 13)])

        result = run_sync(db, feed, sync_config, lambda request: httpx.Response(200, content=body))

        assert result.articles_found == 12
        assert result.articles_new == 10
        assert result.articles_updated == 2
        assert db.get_article_by_guid(feed.id, "g11").title == "Story 11"

    def test_max_articles_per_feed_caps_entries(self, db, make_feed, sync_config) -> None:
        feed = make_feed()
        config = replace(sync_config, max_articles_per_feed=3)
        body = build_rss([(f"g{n}", f"Story {n}") for n in range(10)])

        result = run_sync(db, feed, config, lambda request: httpx.Response(200, content=body))

        assert result.articles_found == 3


class TestSyncFeeds:
    def test_one_result_per_feed_in_input_order(self, db, make_feed, sync_config) -> None:
        feeds = [make_feed() for _ in range(4)]
        feeds.insert(2, make_feed("https://feeds.example.org/bad.xml"))

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/bad.xml":
                return httpx.Response(500)
            return httpx.Response(200, content=build_rss([("only", "Only story")]))

        results = run_batch(db, feeds, sync_config, handler, batch_size=2)

        assert [r.feed_id for r in results] == [f.id for f in feeds]
        assert [r.success for r in results] == [True, True, False, True, True]

    def test_batches_bound_concurrency(self, db, make_feed, sync_config) -> None:
        feeds = [make_feed() for _ in range(5)]
        in_flight = {"now": 0, "peak": 0}

        async def handler(request: httpx.Request) -> httpx.Response:
            in_flight["now"] += 1
            in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
            await asyncio.sleep(0.01)
            in_flight["now"] -= 1
            return httpx.Response(304)

        results = run_batch(db, feeds, sync_config, handler, batch_size=2)

        assert len(results) == 5
        assert in_flight["peak"] == 2

    def test_raising_sync_becomes_failed_result(self, db, make_feed, sync_config) -> None:
        feeds = [make_feed() for _ in range(3)]

        async def fake_sync(db, feed, config, client):
            if feed.id == feeds[1].id:
                raise RuntimeError("worker crashed")
            return SyncResult(feed_id=feed.id, success=True)

        with patch("feedsync.sync.sync_feed", side_effect=fake_sync):
            results = run_batch(db, feeds, sync_config, lambda request: httpx.Response(304))

        assert [r.success for r in results] == [True, False, True]
        assert results[1].feed_id == feeds[1].id
        assert results[1].error == "worker crashed"

    def test_pauses_between_batches_only(self, db, make_feed, sync_config) -> None:
        feeds = [make_feed() for _ in range(5)]

        async def fake_sync(db, feed, config, client):
            return SyncResult(feed_id=feed.id, success=True)

        with patch("feedsync.sync.sync_feed", side_effect=fake_sync), patch(
            "feedsync.sync.asyncio.sleep", new=AsyncMock()
        ) as sleep:
            results = run_batch(
                db, feeds, sync_config, lambda request: httpx.Response(304),
                batch_size=2, delay_seconds=1.5,
            )

        assert len(results) == 5
        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.5)

    def test_empty_feed_list(self, db, sync_config) -> None:
        assert run_batch(db, [], sync_config, lambda request: httpx.Response(304)) == []

    @pytest.mark.parametrize("batch_size", [0, -1])
    def test_non_positive_batch_size_is_rejected(self, db, make_feed, sync_config, batch_size) -> None:
        feed = make_feed()

        with pytest.raises(ValueError, match="batch_size"):
            run_batch(db, [feed], sync_config, lambda request: httpx.Response(304), batch_size=batch_size)

        assert db.get_sync_logs(feed.id, 1) == []
