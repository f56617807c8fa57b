"""Sync → embedding → clustering pipeline coordination.

The manager is a small state machine driven by completion events:

    idle --SyncCompleted(new > 0)--> awaiting_embeddings
    awaiting_embeddings --EmbeddingBatchCompleted--> cluster_signal_emitted
    cluster_signal_emitted --SyncCompleted(new > 0)--> awaiting_embeddings

Leaving awaiting_embeddings puts exactly one RunClustering signal on the
outbound `signals` queue. EmbeddingBatchCompleted in any other state is a
no-op, so clustering never fires when nothing new was embedded.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from feedsync.database import Database
from feedsync.models import utcnow
from feedsync.scheduler import FeedScheduler

logger = logging.getLogger(__name__)

EMBEDDING_PRIORITY_DEFAULT = 0


class PipelineState(str, Enum):
    IDLE = "idle"
    AWAITING_EMBEDDINGS = "awaiting_embeddings"
    CLUSTER_SIGNAL_EMITTED = "cluster_signal_emitted"


@dataclass(frozen=True)
class SyncCompleted:
    feed_id: int
    started_at: datetime
    articles_new: int


@dataclass(frozen=True)
class EmbeddingBatchCompleted:
    article_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class ManualSyncRequested:
    feed_ids: tuple[int, ...]


PipelineEvent = SyncCompleted | EmbeddingBatchCompleted | ManualSyncRequested


@dataclass(frozen=True)
class RunClustering:
    """Outbound signal: new embeddings exist, clusters should be rebuilt."""

    emitted_at: datetime = field(default_factory=utcnow)


@dataclass
class SyncTriggerResult:
    feeds_triggered: int
    clustering_scheduled: bool


class PipelineManager:
    """Turns sync and embedding completion events into queue writes and signals."""

    def __init__(
        self,
        db: Database,
        scheduler: FeedScheduler | None = None,
        signals: queue.Queue | None = None,
    ):
        self.db = db
        self.scheduler = scheduler or FeedScheduler(db)
        self.signals: queue.Queue = signals if signals is not None else queue.Queue()
        self._state = PipelineState.IDLE
        self._lock = threading.Lock()

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def clustering_pending(self) -> bool:
        return self._state is PipelineState.AWAITING_EMBEDDINGS

    def post(self, event: PipelineEvent):
        """Apply one event. Returns the event handler's result."""
        if isinstance(event, SyncCompleted):
            return self._handle_sync_completed(event)
        if isinstance(event, EmbeddingBatchCompleted):
            return self._handle_embeddings_completed(event)
        if isinstance(event, ManualSyncRequested):
            return self._handle_manual_sync(event)
        raise TypeError(f"Unknown pipeline event: {event!r}")

    def on_sync_complete(self, feed_id: int, started_at: datetime, articles_new: int) -> int:
        """Queue a feed's new articles for embedding. Returns count queued."""
        return self.post(SyncCompleted(feed_id, started_at, articles_new))

    def on_embedding_batch_complete(self, article_ids: list[int] | None = None) -> bool:
        """Returns True if this call emitted the clustering signal."""
        return self.post(EmbeddingBatchCompleted(tuple(article_ids or ())))

    def trigger_manual_sync(self, feed_ids: list[int]) -> SyncTriggerResult:
        return self.post(ManualSyncRequested(tuple(feed_ids)))

    def _handle_sync_completed(self, event: SyncCompleted) -> int:
        if event.articles_new <= 0:
            return 0

        article_ids = self.db.get_new_article_ids(event.feed_id, event.started_at)
        if not article_ids:
            return 0

        self.db.add_to_embedding_queue(article_ids, EMBEDDING_PRIORITY_DEFAULT)
        with self._lock:
            self._state = PipelineState.AWAITING_EMBEDDINGS
        logger.info(
            "Queued %d new articles from feed %s for embedding",
            len(article_ids), event.feed_id,
        )
        return len(article_ids)

    def _handle_embeddings_completed(self, event: EmbeddingBatchCompleted) -> bool:
        with self._lock:
            if self._state is not PipelineState.AWAITING_EMBEDDINGS:
                return False
            self._state = PipelineState.CLUSTER_SIGNAL_EMITTED
            self.signals.put(RunClustering())
        logger.info(
            "Embedding batch complete (%d articles), clustering requested",
            len(event.article_ids),
        )
        return True

    def _handle_manual_sync(self, event: ManualSyncRequested) -> SyncTriggerResult:
        triggered = sum(
            1 for feed_id in event.feed_ids if self.scheduler.trigger_manual_sync(feed_id)
        )
        if triggered:
            with self._lock:
                self._state = PipelineState.AWAITING_EMBEDDINGS
        logger.info("Manual sync triggered for %d feeds", triggered)
        return SyncTriggerResult(feeds_triggered=triggered, clustering_scheduled=triggered > 0)

    def drain_signals(self) -> list[RunClustering]:
        """Take every pending outbound signal."""
        drained = []
        while True:
            try:
                drained.append(self.signals.get_nowait())
            except queue.Empty:
                return drained

    def status(self) -> dict:
        return {
            "state": self._state.value,
            "clustering_pending": self.clustering_pending,
            "embedding_queue_depth": self.db.get_embedding_queue_depth(),
            "signals_waiting": self.signals.qsize(),
        }
