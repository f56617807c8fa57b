"""SQLite storage for feeds, articles, the sync audit log and the embedding queue."""

import json
import sqlite3
from datetime import datetime, timedelta, timezone

from feedsync.models import (
    Article,
    EmbeddingQueueEntry,
    Feed,
    RecommendedFeed,
    SyncLogEntry,
    SyncResult,
    utcnow,
)

SYNC_LOG_RETENTION = 100

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS feeds (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT UNIQUE NOT NULL,
    title TEXT NOT NULL,
    priority TEXT NOT NULL DEFAULT 'medium',
    last_synced_at TEXT,
    next_sync_at TEXT,
    sync_interval_hours INTEGER NOT NULL DEFAULT 24,
    etag TEXT,
    last_modified TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    error_count INTEGER DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS articles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    feed_id INTEGER NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    guid TEXT NOT NULL,
    title TEXT NOT NULL,
    url TEXT NOT NULL DEFAULT '',
    author TEXT,
    published_at TEXT,
    content TEXT,
    excerpt TEXT,
    image_url TEXT,
    fetched_at TEXT NOT NULL,
    UNIQUE(feed_id, guid)
);

CREATE TABLE IF NOT EXISTS embedding_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    article_id INTEGER UNIQUE NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
    priority INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    queued_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS recommended_feeds (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT UNIQUE NOT NULL,
    name TEXT NOT NULL,
    default_priority TEXT
);

CREATE TABLE IF NOT EXISTS feed_sync_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    feed_id INTEGER NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    status TEXT NOT NULL DEFAULT 'in_progress',
    http_status INTEGER,
    error_message TEXT,
    articles_found INTEGER DEFAULT 0,
    articles_new INTEGER DEFAULT 0,
    articles_updated INTEGER DEFAULT 0,
    etag_received TEXT,
    last_modified_received TEXT,
    feed_size_bytes INTEGER
);

CREATE TABLE IF NOT EXISTS scheduler_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at TEXT NOT NULL,
    completed_at TEXT NOT NULL,
    feeds_checked INTEGER DEFAULT 0,
    feeds_succeeded INTEGER DEFAULT 0,
    feeds_failed INTEGER DEFAULT 0,
    articles_new INTEGER DEFAULT 0,
    articles_updated INTEGER DEFAULT 0,
    embeddings_queued INTEGER DEFAULT 0,
    errors TEXT
);

CREATE INDEX IF NOT EXISTS idx_feeds_next_sync_at ON feeds(next_sync_at);
CREATE INDEX IF NOT EXISTS idx_articles_feed_id ON articles(feed_id);
CREATE INDEX IF NOT EXISTS idx_articles_fetched_at ON articles(fetched_at);
CREATE INDEX IF NOT EXISTS idx_embedding_queue_status ON embedding_queue(status);
CREATE INDEX IF NOT EXISTS idx_feed_sync_log_feed_started ON feed_sync_log(feed_id, started_at DESC);
"""

_ARTICLE_UPDATE_FIELDS = ("title", "url", "author", "content", "excerpt", "image_url")


class Database:
    """SQLite database manager implementing the sync engine's storage contract."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and initialize schema."""
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    # --- Feed operations ---

    def add_feed(self, feed: Feed) -> Feed:
        """Insert a new feed and return it with its assigned id.

        A feed stored without a next_sync_at gets creation time plus its
        interval.
        """
        if feed.next_sync_at is None:
            feed.next_sync_at = feed.created_at + timedelta(hours=feed.sync_interval_hours)
        cursor = self.conn.execute(
            """INSERT INTO feeds (url, title, priority, last_synced_at, next_sync_at,
               sync_interval_hours, etag, last_modified, status, error_count,
               last_error, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                feed.url,
                feed.title,
                feed.priority,
                _dt_to_str(feed.last_synced_at),
                _dt_to_str(feed.next_sync_at),
                feed.sync_interval_hours,
                feed.etag,
                feed.last_modified,
                feed.status,
                feed.error_count,
                feed.last_error,
                _dt_to_str(feed.created_at),
            ),
        )
        self.conn.commit()
        feed.id = cursor.lastrowid
        return feed

    def get_feed_by_id(self, feed_id: int) -> Feed | None:
        """Look up a feed by its id."""
        row = self.conn.execute(
            "SELECT * FROM feeds WHERE id = ?", (feed_id,)
        ).fetchone()
        return _row_to_feed(row) if row else None

    def get_feed_by_url(self, url: str) -> Feed | None:
        """Look up a feed by its URL."""
        row = self.conn.execute(
            "SELECT * FROM feeds WHERE url = ?", (url,)
        ).fetchone()
        return _row_to_feed(row) if row else None

    def get_all_feeds(self) -> list[Feed]:
        """Return all feeds."""
        rows = self.conn.execute("SELECT * FROM feeds ORDER BY id").fetchall()
        return [_row_to_feed(r) for r in rows]

    def get_feeds_due_for_sync(
        self, limit: int = 50, now: datetime | None = None
    ) -> list[Feed]:
        """Active feeds never synced or past their next_sync_at, high priority first."""
        rows = self.conn.execute(
            """SELECT * FROM feeds
               WHERE status = 'active'
                 AND (last_synced_at IS NULL OR next_sync_at IS NULL
                      OR next_sync_at <= ?)
               ORDER BY CASE priority
                          WHEN 'high' THEN 0 WHEN 'medium' THEN 1 ELSE 2 END,
                        next_sync_at
               LIMIT ?""",
            (_dt_to_str(now or utcnow()), limit),
        ).fetchall()
        return [_row_to_feed(r) for r in rows]

    def update_feed_schedule(
        self,
        feed_id: int,
        *,
        priority: str | None = None,
        next_sync_at: datetime | None = None,
        sync_interval_hours: int | None = None,
        last_synced_at: datetime | None = None,
    ) -> Feed | None:
        """Update any of a feed's schedule fields. Returns the updated feed."""
        updates = {
            "priority": priority,
            "next_sync_at": _dt_to_str(next_sync_at),
            "sync_interval_hours": sync_interval_hours,
            "last_synced_at": _dt_to_str(last_synced_at),
        }
        updates = {k: v for k, v in updates.items() if v is not None}
        if updates:
            assignments = ", ".join(f"{column} = ?" for column in updates)
            self.conn.execute(
                f"UPDATE feeds SET {assignments} WHERE id = ?",
                (*updates.values(), feed_id),
            )
            self.conn.commit()
        return self.get_feed_by_id(feed_id)

    def update_feed_validators(
        self, feed_id: int, etag: str | None, last_modified: str | None
    ) -> None:
        """Store cache validators received from the feed's server."""
        self.conn.execute(
            """UPDATE feeds SET etag = COALESCE(?, etag),
               last_modified = COALESCE(?, last_modified) WHERE id = ?""",
            (etag, last_modified, feed_id),
        )
        self.conn.commit()

    def set_feed_status(self, feed_id: int, status: str) -> None:
        """Change a feed's lifecycle status."""
        self.conn.execute(
            "UPDATE feeds SET status = ? WHERE id = ?", (status, feed_id)
        )
        self.conn.commit()

    def update_feed_error(self, feed_id: int, error_message: str) -> None:
        """Increment error count and store error message for a feed."""
        self.conn.execute(
            """UPDATE feeds SET error_count = error_count + 1, last_error = ?
               WHERE id = ?""",
            (error_message, feed_id),
        )
        self.conn.commit()

    def reset_feed_error(self, feed_id: int) -> None:
        """Reset error count and clear error message on successful fetch."""
        self.conn.execute(
            "UPDATE feeds SET error_count = 0, last_error = NULL WHERE id = ?",
            (feed_id,),
        )
        self.conn.commit()

    # --- Catalog operations ---

    def add_recommended_feed(self, recommended: RecommendedFeed) -> RecommendedFeed:
        cursor = self.conn.execute(
            "INSERT INTO recommended_feeds (url, name, default_priority) VALUES (?, ?, ?)",
            (recommended.url, recommended.name, recommended.default_priority),
        )
        self.conn.commit()
        recommended.id = cursor.lastrowid
        return recommended

    def get_recommended_feed_by_url(self, url: str) -> RecommendedFeed | None:
        """Look up a catalog entry by feed URL."""
        row = self.conn.execute(
            "SELECT * FROM recommended_feeds WHERE url = ?", (url,)
        ).fetchone()
        if not row:
            return None
        return RecommendedFeed(
            id=row["id"],
            url=row["url"],
            name=row["name"],
            default_priority=row["default_priority"],
        )

    # --- Article operations ---

    def get_article_by_guid(self, feed_id: int, guid: str) -> Article | None:
        """Find the article with this guid in a feed."""
        row = self.conn.execute(
            "SELECT * FROM articles WHERE feed_id = ? AND guid = ?",
            (feed_id, guid),
        ).fetchone()
        return _row_to_article(row) if row else None

    def get_article_by_id(self, article_id: int) -> Article | None:
        row = self.conn.execute(
            "SELECT * FROM articles WHERE id = ?", (article_id,)
        ).fetchone()
        return _row_to_article(row) if row else None

    def get_articles_by_feed_id(self, feed_id: int, limit: int = 50) -> list[Article]:
        """Get articles for a feed, most recently published first."""
        rows = self.conn.execute(
            """SELECT * FROM articles WHERE feed_id = ?
               ORDER BY published_at DESC, id DESC LIMIT ?""",
            (feed_id, limit),
        ).fetchall()
        return [_row_to_article(r) for r in rows]

    def create_article(self, article: Article) -> Article:
        """Insert an article and return it with its assigned id."""
        cursor = self.conn.execute(
            """INSERT INTO articles (feed_id, guid, title, url, author, published_at,
               content, excerpt, image_url, fetched_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                article.feed_id,
                article.guid,
                article.title,
                article.url,
                article.author,
                _dt_to_str(article.published_at),
                article.content,
                article.excerpt,
                article.image_url,
                _dt_to_str(article.fetched_at),
            ),
        )
        self.conn.commit()
        article.id = cursor.lastrowid
        return article

    def update_article(self, article_id: int, fields: dict) -> Article | None:
        """Update content fields of an article in place.

        Raises:
            ValueError: If fields names a column that cannot be updated.
        """
        unknown = set(fields) - set(_ARTICLE_UPDATE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update article fields: {sorted(unknown)}")
        if fields:
            assignments = ", ".join(f"{column} = ?" for column in fields)
            self.conn.execute(
                f"UPDATE articles SET {assignments} WHERE id = ?",
                (*fields.values(), article_id),
            )
            self.conn.commit()
        return self.get_article_by_id(article_id)

    def get_new_article_ids(self, feed_id: int, since: datetime) -> list[int]:
        """Ids of articles first fetched for a feed at or after `since`."""
        rows = self.conn.execute(
            "SELECT id FROM articles WHERE feed_id = ? AND fetched_at >= ? ORDER BY id",
            (feed_id, _dt_to_str(since)),
        ).fetchall()
        return [r["id"] for r in rows]

    # --- Embedding queue ---

    def add_to_embedding_queue(self, article_ids: list[int], priority: int = 0) -> int:
        """Queue articles for embedding. Already-queued ids are ignored."""
        queued_at = _dt_to_str(utcnow())
        inserted = 0
        for article_id in article_ids:
            cursor = self.conn.execute(
                """INSERT OR IGNORE INTO embedding_queue (article_id, priority, queued_at)
                   VALUES (?, ?, ?)""",
                (article_id, priority, queued_at),
            )
            inserted += cursor.rowcount
        self.conn.commit()
        return inserted

    def get_pending_embeddings(self, limit: int = 100) -> list[EmbeddingQueueEntry]:
        """Pending queue entries, lowest priority rank first."""
        rows = self.conn.execute(
            """SELECT * FROM embedding_queue WHERE status = 'pending'
               ORDER BY priority, id LIMIT ?""",
            (limit,),
        ).fetchall()
        return [
            EmbeddingQueueEntry(
                id=r["id"],
                article_id=r["article_id"],
                priority=r["priority"],
                status=r["status"],
                queued_at=_str_to_dt(r["queued_at"]),
            )
            for r in rows
        ]

    def mark_embeddings_complete(self, article_ids: list[int]) -> int:
        """Mark queue entries as embedded. Returns count of affected rows."""
        if not article_ids:
            return 0
        placeholders = ",".join("?" for _ in article_ids)
        cursor = self.conn.execute(
            f"""UPDATE embedding_queue SET status = 'completed', completed_at = ?
                WHERE article_id IN ({placeholders}) AND status = 'pending'""",
            (_dt_to_str(utcnow()), *article_ids),
        )
        self.conn.commit()
        return cursor.rowcount

    def get_embedding_queue_depth(self) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS cnt FROM embedding_queue WHERE status = 'pending'"
        ).fetchone()
        return row["cnt"] if row else 0

    # --- Sync audit log ---

    def start_feed_sync(self, feed_id: int) -> int:
        """Open an in-progress audit row for a sync attempt. Returns its id.

        Older rows beyond the retention limit for the feed are pruned.
        """
        cursor = self.conn.execute(
            "INSERT INTO feed_sync_log (feed_id, started_at) VALUES (?, ?)",
            (feed_id, _dt_to_str(utcnow())),
        )
        self.conn.execute(
            """DELETE FROM feed_sync_log WHERE feed_id = ? AND id NOT IN (
                   SELECT id FROM feed_sync_log WHERE feed_id = ?
                   ORDER BY id DESC LIMIT ?)""",
            (feed_id, feed_id, SYNC_LOG_RETENTION),
        )
        self.conn.commit()
        return cursor.lastrowid

    def complete_feed_sync_success(self, log_id: int, result: SyncResult) -> None:
        """Close an audit row as successful with the attempt's counts."""
        self.conn.execute(
            """UPDATE feed_sync_log SET status = 'success', completed_at = ?,
               http_status = ?, articles_found = ?, articles_new = ?,
               articles_updated = ?, etag_received = ?, last_modified_received = ?,
               feed_size_bytes = ?
               WHERE id = ?""",
            (
                _dt_to_str(utcnow()),
                result.http_status,
                result.articles_found,
                result.articles_new,
                result.articles_updated,
                result.etag,
                result.last_modified,
                result.feed_size_bytes,
                log_id,
            ),
        )
        self.conn.commit()

    def complete_feed_sync_error(
        self, log_id: int, error_message: str, http_status: int | None = None
    ) -> None:
        """Close an audit row as failed."""
        self.conn.execute(
            """UPDATE feed_sync_log SET status = 'error', completed_at = ?,
               error_message = ?, http_status = ?
               WHERE id = ?""",
            (_dt_to_str(utcnow()), error_message, http_status, log_id),
        )
        self.conn.commit()

    def get_sync_logs(self, feed_id: int, limit: int = 20) -> list[SyncLogEntry]:
        """Most recent audit rows for a feed, newest first."""
        rows = self.conn.execute(
            "SELECT * FROM feed_sync_log WHERE feed_id = ? ORDER BY id DESC LIMIT ?",
            (feed_id, limit),
        ).fetchall()
        return [_row_to_sync_log(r) for r in rows]

    # --- Scheduler runs ---

    def record_scheduler_run(
        self,
        started_at: datetime,
        completed_at: datetime,
        feeds_checked: int,
        feeds_succeeded: int,
        feeds_failed: int,
        articles_new: int,
        articles_updated: int,
        embeddings_queued: int,
        errors: list[dict],
    ) -> int:
        """Store the summary of one background sync cycle."""
        cursor = self.conn.execute(
            """INSERT INTO scheduler_runs (started_at, completed_at, feeds_checked,
               feeds_succeeded, feeds_failed, articles_new, articles_updated,
               embeddings_queued, errors)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                _dt_to_str(started_at),
                _dt_to_str(completed_at),
                feeds_checked,
                feeds_succeeded,
                feeds_failed,
                articles_new,
                articles_updated,
                embeddings_queued,
                json.dumps(errors),
            ),
        )
        self.conn.commit()
        return cursor.lastrowid

    def get_scheduler_runs(self, limit: int = 10) -> list[dict]:
        """Most recent cycle summaries, newest first."""
        rows = self.conn.execute(
            "SELECT * FROM scheduler_runs ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [
            {
                "id": r["id"],
                "started_at": r["started_at"],
                "completed_at": r["completed_at"],
                "feeds_checked": r["feeds_checked"],
                "feeds_succeeded": r["feeds_succeeded"],
                "feeds_failed": r["feeds_failed"],
                "articles_new": r["articles_new"],
                "articles_updated": r["articles_updated"],
                "embeddings_queued": r["embeddings_queued"],
                "errors": json.loads(r["errors"] or "[]"),
            }
            for r in rows
        ]


# --- Helper functions ---


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to a UTC ISO string for storage.

    A fixed format keeps stored timestamps comparable as text.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _str_to_dt(s: str | None) -> datetime | None:
    """Convert stored ISO string back to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _row_to_feed(row: sqlite3.Row) -> Feed:
    """Convert a database row to a Feed dataclass."""
    return Feed(
        id=row["id"],
        url=row["url"],
        title=row["title"],
        priority=row["priority"],
        last_synced_at=_str_to_dt(row["last_synced_at"]),
        next_sync_at=_str_to_dt(row["next_sync_at"]),
        sync_interval_hours=row["sync_interval_hours"],
        etag=row["etag"],
        last_modified=row["last_modified"],
        status=row["status"],
        error_count=row["error_count"],
        last_error=row["last_error"],
        created_at=_str_to_dt(row["created_at"]) or utcnow(),
    )


def _row_to_article(row: sqlite3.Row) -> Article:
    """Convert a database row to an Article dataclass."""
    return Article(
        id=row["id"],
        feed_id=row["feed_id"],
        guid=row["guid"],
        title=row["title"],
        url=row["url"],
        author=row["author"],
        published_at=_str_to_dt(row["published_at"]),
        content=row["content"],
        excerpt=row["excerpt"],
        image_url=row["image_url"],
        fetched_at=_str_to_dt(row["fetched_at"]) or utcnow(),
    )


def _row_to_sync_log(row: sqlite3.Row) -> SyncLogEntry:
    return SyncLogEntry(
        id=row["id"],
        feed_id=row["feed_id"],
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
        status=row["status"],
        http_status=row["http_status"],
        error_message=row["error_message"],
        articles_found=row["articles_found"],
        articles_new=row["articles_new"],
        articles_updated=row["articles_updated"],
        etag_received=row["etag_received"],
        last_modified_received=row["last_modified_received"],
        feed_size_bytes=row["feed_size_bytes"],
    )
