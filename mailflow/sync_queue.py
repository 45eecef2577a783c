"""
Durable sync queue.

Queue state, not in-memory state, is the source of truth for what remains to
be fetched, which is what lets a sync resume after a crash. Items move
pending -> claimed -> done; a failure sends the item back to pending with its
retry count bumped, until MAX_ITEM_RETRIES failures drop it for good.

The queue assumes a single writer per process: claim_batch() selects then
updates, which is safe because only the driving loop of one sync run calls it.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from .db.models import (
    MAX_ITEM_RETRIES,
    MarkFailedResult,
    QueueItem,
    QueueStats,
    QueueStatus,
    utcnow,
)
from .db.queue_storage import QueueStore

logger = logging.getLogger(__name__)

# A claimed item untouched for this long is assumed to belong to a dead worker
STALE_CLAIM_AFTER = timedelta(minutes=5)
ENQUEUE_CHUNK_SIZE = 100


class SyncQueue:
    """Work queue of remote message ids for one owner."""

    def __init__(
        self,
        store: QueueStore,
        owner_id: str,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.owner_id = owner_id
        self._clock = clock or utcnow

    def enqueue(self, natural_ids: Sequence[str]) -> int:
        """
        Add ids in pending status; ids already queued for this owner are skipped.

        Returns:
            Number of ids newly added
        """
        unique_ids = list(dict.fromkeys(nid for nid in natural_ids if nid))
        added = 0
        for i in range(0, len(unique_ids), ENQUEUE_CHUNK_SIZE):
            chunk = unique_ids[i:i + ENQUEUE_CHUNK_SIZE]
            added += self.store.insert_pending(self.owner_id, chunk, self._clock())
        if added:
            logger.debug(f"Queued {added} of {len(unique_ids)} ids for {self.owner_id}")
        return added

    def claim_batch(self, limit: int) -> List[QueueItem]:
        """Claim up to `limit` of the oldest pending items."""
        if limit <= 0:
            return []
        items = self.store.select(self.owner_id, statuses=[QueueStatus.PENDING], limit=limit)
        if not items:
            return []

        now = self._clock()
        self.store.update(
            self.owner_id,
            [item.natural_id for item in items],
            {"status": QueueStatus.CLAIMED, "updated_at": now},
            statuses=[QueueStatus.PENDING],
        )
        return [item.model_copy(update={"status": QueueStatus.CLAIMED, "updated_at": now}) for item in items]

    def mark_done(self, natural_id: str) -> None:
        now = self._clock()
        self.store.update(
            self.owner_id,
            [natural_id],
            {"status": QueueStatus.DONE, "completed_at": now, "updated_at": now},
            statuses=[QueueStatus.CLAIMED],
        )

    def mark_failed(self, natural_id: str, error: str) -> MarkFailedResult:
        """
        Record a failed attempt.

        Returns:
            MarkFailedResult; permanently_dropped is True when this failure
            exhausted the item's retry budget and the row was deleted
        """
        rows = self.store.select(self.owner_id, natural_ids=[natural_id])
        if not rows:
            logger.warning(f"mark_failed for unknown queue item {natural_id}")
            return MarkFailedResult(permanently_dropped=False, retry_count=0)

        retry_count = rows[0].retry_count + 1
        if retry_count >= MAX_ITEM_RETRIES:
            self.store.delete(self.owner_id, natural_ids=[natural_id])
            logger.error(f"Dropping {natural_id} after {retry_count} failed attempts: {error}")
            return MarkFailedResult(permanently_dropped=True, retry_count=retry_count)

        self.store.update(
            self.owner_id,
            [natural_id],
            {
                "status": QueueStatus.PENDING,
                "retry_count": retry_count,
                "last_error": error,
                "updated_at": self._clock(),
            },
        )
        return MarkFailedResult(permanently_dropped=False, retry_count=retry_count)

    def reset_stale(self, stale_after: timedelta = STALE_CLAIM_AFTER) -> int:
        """Return claimed items idle for longer than stale_after to pending."""
        now = self._clock()
        stale = self.store.select(
            self.owner_id,
            statuses=[QueueStatus.CLAIMED],
            updated_before=now - stale_after,
        )
        if not stale:
            return 0

        count = self.store.update(
            self.owner_id,
            [item.natural_id for item in stale],
            {"status": QueueStatus.PENDING, "updated_at": now},
            statuses=[QueueStatus.CLAIMED],
        )
        logger.info(f"Reset {count} stale claimed items for {self.owner_id}")
        return count

    def release(self, natural_ids: Sequence[str]) -> int:
        """Put claimed items that were never started straight back to pending."""
        if not natural_ids:
            return 0
        return self.store.update(
            self.owner_id,
            list(natural_ids),
            {"status": QueueStatus.PENDING, "updated_at": self._clock()},
            statuses=[QueueStatus.CLAIMED],
        )

    def stats(self) -> QueueStats:
        counts = self.store.count_by_status(self.owner_id)
        stats = QueueStats(total=sum(counts.values()))
        for status in QueueStatus:
            setattr(stats, status.value, counts.get(status.value, 0))
        return stats

    def delete_done(self) -> int:
        """Housekeeping after a successful run."""
        return self.store.delete(self.owner_id, statuses=[QueueStatus.DONE])
