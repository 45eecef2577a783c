"""
Durable Sync Queue Tests

Exercises SyncQueue over the in-memory store: enqueue idempotence, claim
ordering, retry accounting, stale reclaim and housekeeping.
Run with: pytest tests/test_sync_queue.py -v
"""

from datetime import timedelta

import pytest

from mailflow.db.models import MAX_ITEM_RETRIES, QueueStatus
from mailflow.sync_queue import SyncQueue


def _status_of(queue, natural_id):
    rows = queue.store.select(queue.owner_id, natural_ids=[natural_id])
    return rows[0] if rows else None


class TestEnqueue:

    def test_enqueue_adds_pending_items(self, sync_queue):
        added = sync_queue.enqueue(["a", "b", "c"])

        assert added == 3
        stats = sync_queue.stats()
        assert stats.pending == 3
        assert stats.total == 3

    def test_enqueue_is_idempotent(self, sync_queue):
        sync_queue.enqueue(["a", "b"])
        added = sync_queue.enqueue(["b", "c", "c"])

        assert added == 1
        assert sync_queue.stats().total == 3

    def test_enqueue_skips_empty_ids(self, sync_queue):
        assert sync_queue.enqueue(["", "a", ""]) == 1

    def test_enqueue_does_not_reset_existing_items(self, sync_queue):
        sync_queue.enqueue(["a"])
        sync_queue.claim_batch(1)
        sync_queue.mark_done("a")

        sync_queue.enqueue(["a"])

        assert _status_of(sync_queue, "a").status == QueueStatus.DONE

    def test_enqueue_large_list_in_chunks(self, sync_queue):
        ids = [f"m{i}" for i in range(250)]

        assert sync_queue.enqueue(ids) == 250
        assert sync_queue.stats().pending == 250

    def test_owners_are_isolated(self, memory_store, clock, sync_queue):
        other = SyncQueue(memory_store, "user-2", clock=clock)
        sync_queue.enqueue(["a", "b"])
        other.enqueue(["a"])

        assert sync_queue.stats().total == 2
        assert other.stats().total == 1
        assert [i.natural_id for i in other.claim_batch(10)] == ["a"]


class TestClaimBatch:

    def test_claims_oldest_first(self, sync_queue, clock):
        sync_queue.enqueue(["old"])
        clock.advance(seconds=1)
        sync_queue.enqueue(["new"])

        claimed = sync_queue.claim_batch(1)

        assert [i.natural_id for i in claimed] == ["old"]
        assert claimed[0].status == QueueStatus.CLAIMED

    def test_claim_respects_limit_and_status(self, sync_queue):
        sync_queue.enqueue(["a", "b", "c"])

        first = sync_queue.claim_batch(2)
        second = sync_queue.claim_batch(2)
        third = sync_queue.claim_batch(2)

        assert [i.natural_id for i in first] == ["a", "b"]
        assert [i.natural_id for i in second] == ["c"]
        assert third == []
        assert sync_queue.stats().claimed == 3

    def test_zero_limit_claims_nothing(self, sync_queue):
        sync_queue.enqueue(["a"])
        assert sync_queue.claim_batch(0) == []
        assert sync_queue.stats().pending == 1


class TestMarkDoneAndFailed:

    def test_three_item_scenario(self, sync_queue):
        """Enqueue a, b, c; claim 2; a succeeds, b fails once."""
        sync_queue.enqueue(["a", "b", "c"])
        claimed = sync_queue.claim_batch(2)
        assert [i.natural_id for i in claimed] == ["a", "b"]

        sync_queue.mark_done("a")
        result = sync_queue.mark_failed("b", "Gmail API error 500: boom")

        assert result.permanently_dropped is False
        assert result.retry_count == 1
        stats = sync_queue.stats()
        assert stats.pending == 2
        assert stats.done == 1
        assert stats.claimed == 0
        b = _status_of(sync_queue, "b")
        assert b.status == QueueStatus.PENDING
        assert b.retry_count == 1
        assert b.last_error == "Gmail API error 500: boom"
        assert _status_of(sync_queue, "a").completed_at is not None

    def test_four_failures_keep_item_pending(self, sync_queue):
        sync_queue.enqueue(["x"])

        for _ in range(MAX_ITEM_RETRIES - 1):
            sync_queue.claim_batch(1)
            result = sync_queue.mark_failed("x", "boom")

        assert result.permanently_dropped is False
        item = _status_of(sync_queue, "x")
        assert item.status == QueueStatus.PENDING
        assert item.retry_count == 4

    def test_fifth_failure_drops_item(self, sync_queue):
        sync_queue.enqueue(["x"])

        results = []
        for _ in range(MAX_ITEM_RETRIES):
            sync_queue.claim_batch(1)
            results.append(sync_queue.mark_failed("x", "boom"))

        assert results[-1].permanently_dropped is True
        assert results[-1].retry_count == 5
        assert not any(r.permanently_dropped for r in results[:-1])
        assert _status_of(sync_queue, "x") is None
        assert sync_queue.stats().total == 0

    def test_mark_failed_unknown_item(self, sync_queue):
        result = sync_queue.mark_failed("ghost", "boom")

        assert result.permanently_dropped is False
        assert result.retry_count == 0

    def test_mark_done_only_applies_to_claimed(self, sync_queue):
        sync_queue.enqueue(["a"])

        sync_queue.mark_done("a")

        assert _status_of(sync_queue, "a").status == QueueStatus.PENDING


class TestStaleReclaim:

    def test_reset_stale_reclaims_old_claims(self, sync_queue, clock):
        sync_queue.enqueue(["a", "b"])
        sync_queue.claim_batch(1)
        clock.advance(minutes=2)
        sync_queue.claim_batch(1)

        clock.advance(minutes=4)  # a claimed 6 min ago, b 4 min ago
        reset = sync_queue.reset_stale()

        assert reset == 1
        assert _status_of(sync_queue, "a").status == QueueStatus.PENDING
        assert _status_of(sync_queue, "b").status == QueueStatus.CLAIMED

    def test_reset_stale_custom_window(self, sync_queue, clock):
        sync_queue.enqueue(["a"])
        sync_queue.claim_batch(1)
        clock.advance(seconds=30)

        assert sync_queue.reset_stale(timedelta(seconds=10)) == 1
        assert [i.natural_id for i in sync_queue.claim_batch(5)] == ["a"]

    def test_reset_stale_with_nothing_claimed(self, sync_queue):
        sync_queue.enqueue(["a"])
        assert sync_queue.reset_stale() == 0


class TestReleaseAndHousekeeping:

    def test_release_returns_claimed_to_pending(self, sync_queue):
        sync_queue.enqueue(["a", "b", "c"])
        sync_queue.claim_batch(3)
        sync_queue.mark_done("a")

        released = sync_queue.release(["a", "b", "c"])

        assert released == 2
        stats = sync_queue.stats()
        assert stats.pending == 2
        assert stats.done == 1

    def test_release_empty(self, sync_queue):
        assert sync_queue.release([]) == 0

    def test_delete_done(self, sync_queue):
        sync_queue.enqueue(["a", "b"])
        sync_queue.claim_batch(2)
        sync_queue.mark_done("a")

        assert sync_queue.delete_done() == 1
        stats = sync_queue.stats()
        assert stats.done == 0
        assert stats.total == 1
