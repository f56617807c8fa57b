"""Shared test fixtures for feedsync tests."""

import os
import tempfile
from datetime import datetime, timezone

import httpx
import pytest

from feedsync.config import SyncConfig
from feedsync.database import Database
from feedsync.models import Feed
from feedsync.pipeline import PipelineManager


SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <description>Description of the first article</description>
      <content:encoded><![CDATA[<p>Full <b>content</b> of the first article.</p><script>track()</script>]]></content:encoded>
      <pubDate>Thu, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <guid>article-2</guid>
      <description>Description of the second article</description>
      <pubDate>Thu, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Test Atom Feed</title>
  <link href="https://example.com"/>
  <subtitle>A test Atom feed</subtitle>
  <entry>
    <title>Atom Entry 1</title>
    <link href="https://example.com/entry-1"/>
    <id>urn:uuid:entry-1</id>
    <summary>Summary of entry 1</summary>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
</feed>"""

SAMPLE_MALFORMED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Malformed Feed</title>
    <link>https://example.com</link>
    <item>
      <title>Good Item</title>
      <guid>good-item</guid>
    </item>
    <item>
      <title>Bad Item</title>
      <!-- Missing closing tags intentionally -->
"""

SAMPLE_NOT_A_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>This is not a feed</body>
</html>"""


def build_rss(items: list[tuple[str, str]]) -> bytes:
    """RSS 2.0 document with one item per (guid, title) pair."""
    body = "".join(
        f"<item><title>{title}</title><link>https://example.com/{guid}</link>"
        f"<guid>{guid}</guid><description>About {title}</description></item>"
        for guid, title in items
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?><rss version="2.0"><channel>'
        f"<title>Generated</title><link>https://example.com</link>{body}</channel></rss>"
    ).encode()


def mock_client(handler) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by `handler`."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def tmp_db_path():
    """Provide a temporary SQLite database path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    yield path
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(path + suffix)
        except OSError:
            pass


@pytest.fixture
def db(tmp_db_path):
    """A connected Database on a temporary file."""
    database = Database(tmp_db_path)
    database.connect()
    yield database
    database.close()


@pytest.fixture
def pipeline(db):
    return PipelineManager(db)


@pytest.fixture
def sync_config():
    """Config with no pacing delays so tests run fast."""
    return SyncConfig(batch_delay_seconds=0, retry_base_delay=0)


@pytest.fixture
def make_feed(db):
    """Factory that stores a feed and returns it."""
    counter = {"n": 0}

    def _make(url: str | None = None, **overrides) -> Feed:
        counter["n"] += 1
        feed = Feed(
            url=url or f"https://feeds.example.org/{counter['n']}.xml",
            title=overrides.pop("title", f"Feed {counter['n']}"),
            **overrides,
        )
        return db.add_feed(feed)

    return _make


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def sample_rss_xml():
    """Sample valid RSS 2.0 XML."""
    return SAMPLE_RSS_XML


@pytest.fixture
def sample_atom_xml():
    """Sample valid Atom XML."""
    return SAMPLE_ATOM_XML


@pytest.fixture
def sample_malformed_xml():
    """Sample malformed RSS XML."""
    return SAMPLE_MALFORMED_XML


@pytest.fixture
def sample_not_a_feed_xml():
    """Sample XML that is not a feed."""
    return SAMPLE_NOT_A_FEED_XML
