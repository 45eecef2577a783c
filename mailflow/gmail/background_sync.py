"""
Background Gmail sync.

Lists message ids into the durable sync queue, then drains the queue with an
adaptive pool of concurrent fetches:

    idle -> listing -> syncing -> complete

start_sync() lists and drains; resume_sync() only reclaims stale items and
drains, so any restarted process can pick up where the queue left off.
stop() is cooperative: no new fetches are started, in-flight ones finish.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from .. import config
from ..db.models import Email, QueueItem, QueueStats, SyncProgress
from ..sync_queue import SyncQueue
from ..utils.rate_limiter import AdaptiveRateLimiter
from ..utils.retry import RetryConfig, RetryResult, is_rate_limit_error, with_retry
from ..utils.worker_pool import run_adaptive_pool
from .client import GmailClient, MessagePage

logger = logging.getLogger(__name__)

PAGE_SIZE = 500  # Gmail max, fewer listing calls
ENQUEUE_FLUSH_SIZE = 100
DEFAULT_LOOKBACK_DAYS = 30
DEFAULT_MAX_RESULTS = 500
SYNC_ALL_MAX_RESULTS = 10000
FETCH_MAX_RETRIES = 3


@dataclass
class SyncOptions:
    """What to list for a sync run."""

    max_results: Optional[int] = None
    query: Optional[str] = None
    label_ids: Optional[List[str]] = None
    sync_all: bool = False
    # Incremental sync: list only messages after this time (overrides the lookback)
    after_date: Optional[datetime] = None
    on_progress: Optional[Callable[[SyncProgress], None]] = None

    def build_query(self, now: Optional[datetime] = None) -> str:
        """Combine the caller's query with the date window."""
        if self.after_date is not None:
            after = self.after_date
        elif not self.sync_all:
            after = (now or datetime.now(timezone.utc)) - timedelta(days=DEFAULT_LOOKBACK_DAYS)
        else:
            return self.query or ""

        date_query = f"after:{int(after.timestamp())}"
        return f"{self.query} {date_query}" if self.query else date_query

    def __post_init__(self):
        if self.max_results is not None and self.max_results < 1:
            raise ValueError(f"max_results must be >= 1, got {self.max_results}")

    def max_to_fetch(self) -> int:
        if self.max_results is not None:
            return self.max_results
        return SYNC_ALL_MAX_RESULTS if self.sync_all else DEFAULT_MAX_RESULTS


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


class BackgroundSyncManager:
    """
    Drives one user's Gmail sync through the durable queue.

    Construct one per user and hold on to it for as long as syncs may be
    started or stopped; there is no module-level instance.

    Args:
        client: Message source with list_message_ids() and get_message()
        queue: SyncQueue scoped to this user
        user_id: Owner of the fetched emails
        save_emails: Persists one batch of fetched emails, called as
            save_emails(user_id, emails); defaults to db.connection.upsert_emails
        rate_limiter: Admission controller (defaults from config)
        retry_config: Base retry policy for remote calls; on_retry is replaced
            with the limiter/progress hook
        batch_size: Queue items claimed per batch
    """

    def __init__(
        self,
        client: GmailClient,
        queue: SyncQueue,
        user_id: str,
        save_emails: Optional[Callable[[str, List[Email]], int]] = None,
        rate_limiter: Optional[AdaptiveRateLimiter] = None,
        retry_config: Optional[RetryConfig] = None,
        batch_size: int = config.SYNC_BATCH_SIZE,
    ):
        if save_emails is None:
            from ..db.connection import upsert_emails
            save_emails = upsert_emails

        self.client = client
        self.queue = queue
        self.user_id = user_id
        self.save_emails = save_emails
        self.rate_limiter = rate_limiter or AdaptiveRateLimiter(
            min_concurrency=config.SYNC_MIN_CONCURRENCY,
            max_concurrency=config.SYNC_MAX_CONCURRENCY,
        )
        self.batch_size = batch_size
        self._retry_config = replace(
            retry_config or RetryConfig(max_retries=FETCH_MAX_RETRIES),
            on_retry=self._on_retry,
        )
        self._is_running = False
        self._should_stop = False
        self._options = SyncOptions()
        self.progress = SyncProgress(current_concurrency=self.rate_limiter.get_concurrency())

    @property
    def is_running(self) -> bool:
        return self._is_running

    def stop(self) -> None:
        """Stop starting new work; in-flight fetches are allowed to finish."""
        if self._is_running:
            logger.info(f"Stop requested for sync of {self.user_id}")
        self._should_stop = True

    def get_progress(self) -> SyncProgress:
        return self.progress.model_copy(deep=True)

    def get_stats(self) -> QueueStats:
        return self.queue.stats()

    def cleanup(self) -> int:
        """Delete done items from the queue."""
        return self.queue.delete_done()

    def _emit(self) -> None:
        self.progress.current_concurrency = self.rate_limiter.get_concurrency()
        if self._options.on_progress:
            self._options.on_progress(self.get_progress())

    def _on_retry(self, attempt: int, delay: float, error: BaseException) -> None:
        self.progress.retry_count += 1
        self.rate_limiter.record_error(is_rate_limit_error(error))
        self._emit()

    def _begin(self, options: SyncOptions, stage: str, **counts) -> None:
        self._is_running = True
        self._should_stop = False
        self._options = options
        self.progress = SyncProgress(stage=stage, is_running=True, **counts)
        self._emit()

    def _finish(self) -> None:
        self.progress.stage = "complete"
        self.progress.is_running = False
        self._is_running = False
        self._emit()
        logger.info(
            f"Sync for {self.user_id} complete: {self.progress.total_synced} synced, "
            f"{self.progress.total_failed} failed, {len(self.progress.errors)} errors"
        )

    async def start_sync(self, options: Optional[SyncOptions] = None) -> SyncProgress:
        """List messages into the queue, then drain it."""
        if self._is_running:
            logger.info(f"Sync for {self.user_id} already running, ignoring start_sync")
            return self.get_progress()

        self._begin(options or SyncOptions(), "listing")
        try:
            listed = await self._list_and_queue_messages()
            if listed:
                self.progress.stage = "syncing"
                self._emit()
                await self._process_queue()
        except Exception as e:
            logger.exception(f"Sync for {self.user_id} failed")
            self.progress.errors.append(_error_message(e))
            self._emit()
        finally:
            self._finish()
        return self.get_progress()

    async def resume_sync(self, options: Optional[SyncOptions] = None) -> SyncProgress:
        """Drain whatever the queue still holds, e.g. after a restart."""
        if self._is_running:
            logger.info(f"Sync for {self.user_id} already running, ignoring resume_sync")
            return self.get_progress()

        self.queue.reset_stale()
        stats = self.queue.stats()
        if stats.pending == 0:
            logger.info(f"Nothing to resume for {self.user_id}")
            return self.get_progress()

        logger.info(f"Resuming sync for {self.user_id}: {stats.pending} pending")
        self._begin(
            options or SyncOptions(),
            "syncing",
            total_queued=stats.pending + stats.done,
            total_synced=stats.done,
        )
        try:
            await self._process_queue()
        except Exception as e:
            logger.exception(f"Resumed sync for {self.user_id} failed")
            self.progress.errors.append(_error_message(e))
            self._emit()
        finally:
            self._finish()
        return self.get_progress()

    def _flush(self, buffer: List[str]) -> None:
        if not buffer:
            return
        self.queue.enqueue(buffer)
        self.progress.total_queued += len(buffer)
        buffer.clear()
        self._emit()

    async def _list_and_queue_messages(self) -> int:
        """
        Page through the listing API, enqueueing ids as they arrive.

        A page that still fails after retries ends the listing phase; ids
        already listed stay queued.

        Returns:
            Number of ids listed
        """
        options = self._options
        query = options.build_query()
        max_to_fetch = options.max_to_fetch()
        listed = 0
        buffer: List[str] = []
        page_token: Optional[str] = None
        page_number = 0

        try:
            while not self._should_stop:
                page_number += 1
                try:
                    result: RetryResult[MessagePage] = await with_retry(
                        lambda: self.client.list_message_ids(
                            query=query,
                            page_token=page_token,
                            max_results=min(PAGE_SIZE, max_to_fetch - listed),
                            label_ids=options.label_ids,
                        ),
                        self._retry_config,
                    )
                except Exception as e:
                    message = f"Failed to list messages on page {page_number}: {_error_message(e)}"
                    logger.error(message)
                    self.progress.errors.append(message)
                    break

                if result.attempts == 1:
                    self.rate_limiter.record_success()

                page_ids = result.value.ids[:max_to_fetch - listed]
                buffer.extend(page_ids)
                listed += len(page_ids)
                page_token = result.value.next_page_token

                if len(buffer) >= ENQUEUE_FLUSH_SIZE:
                    self._flush(buffer)

                if not page_token or listed >= max_to_fetch:
                    break
        finally:
            self._flush(buffer)

        logger.info(f"Listed {listed} messages for {self.user_id} over {page_number} pages")
        return listed

    async def _fetch_message(self, natural_id: str) -> Email:
        result: RetryResult[Email] = await with_retry(
            lambda: self.client.get_message(natural_id),
            self._retry_config,
        )
        if result.attempts == 1:
            self.rate_limiter.record_success()
        return result.value

    async def _process_queue(self) -> None:
        """Claim batches until the queue is empty or a stop is requested."""
        batch_number = 0

        while not self._should_stop:
            items = self.queue.claim_batch(self.batch_size)
            if not items:
                break

            batch_number += 1
            self.progress.current_batch = batch_number
            self._emit()

            fetched: List[Email] = []
            fetched_ids: List[str] = []

            def on_complete(item: QueueItem, email: Optional[Email], error: Optional[BaseException]) -> None:
                if error is None:
                    # stays claimed until the batch is stored
                    fetched.append(email.model_copy(update={"user_id": self.user_id}))
                    fetched_ids.append(item.natural_id)
                else:
                    message = _error_message(error)
                    outcome = self.queue.mark_failed(item.natural_id, message)
                    if outcome.permanently_dropped:
                        self.progress.total_failed += 1
                        self.progress.errors.append(
                            f"Email {item.natural_id} failed after {outcome.retry_count} retries: {message}"
                        )
                    else:
                        logger.warning(
                            f"Fetch of {item.natural_id} failed (attempt {outcome.retry_count}), requeued: {message}"
                        )
                self._emit()

            not_started = await run_adaptive_pool(
                items,
                lambda item: self._fetch_message(item.natural_id),
                on_complete,
                self.rate_limiter.get_concurrency,
                should_stop=lambda: self._should_stop,
            )
            if not_started:
                self.queue.release([item.natural_id for item in not_started])

            if fetched:
                self._store_batch(batch_number, fetched_ids, fetched)

    def _store_batch(self, batch_number: int, natural_ids: List[str], fetched: List[Email]) -> None:
        """Persist fetched emails, then mark their queue items done.

        If the write fails the items go back to pending so a later run
        fetches them again.
        """
        try:
            self.save_emails(self.user_id, fetched)
        except Exception:
            self.queue.release(natural_ids)
            raise

        for natural_id in natural_ids:
            self.queue.mark_done(natural_id)
        self.progress.total_synced += len(natural_ids)
        self._emit()
        logger.debug(f"Batch {batch_number}: stored {len(fetched)} emails")
