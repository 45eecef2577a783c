"""
Bounded dynamic worker pool.

Keeps a set of in-flight asyncio tasks topped up to a limit that is re-read on
every scheduling decision, and waits for the first task to finish rather than
the whole set. A limit that drops mid-batch therefore takes effect as soon as
enough tasks complete; a limit that rises is filled on the next round.

Completion handlers run one at a time from the pool loop, so they may mutate
shared state (rate limiter, queue, progress) without locking.
"""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def run_adaptive_pool(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    on_complete: Callable[[T, Optional[R], Optional[BaseException]], None],
    get_limit: Callable[[], int],
    should_stop: Optional[Callable[[], bool]] = None,
) -> List[T]:
    """
    Run worker(item) for every item with adaptive concurrency.

    Args:
        items: Work items, started in order
        worker: Async function processing one item
        on_complete: Called once per finished item with (item, result, error);
            exactly one of result/error is meaningful
        get_limit: Returns the current concurrency ceiling (values < 1 count as 1)
        should_stop: Checked before each scheduling round; once true no new
            work is started and in-flight tasks are allowed to finish

    Returns:
        Items that were never started because of should_stop
    """
    pending = deque(items)
    in_flight: dict = {}

    try:
        while pending or in_flight:
            stopping = should_stop is not None and should_stop()

            if not stopping:
                limit = max(1, get_limit())
                while pending and len(in_flight) < limit:
                    item = pending.popleft()
                    in_flight[asyncio.ensure_future(worker(item))] = item

            if not in_flight:
                break

            done, _ = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                item = in_flight.pop(task)
                if task.cancelled():
                    on_complete(item, None, asyncio.CancelledError())
                elif task.exception() is not None:
                    on_complete(item, None, task.exception())
                else:
                    on_complete(item, task.result(), None)
    finally:
        # Only reached with tasks left if the pool itself was cancelled
        for task in in_flight:
            task.cancel()

    if pending:
        logger.info(f"Worker pool stopped with {len(pending)} items not started")
    return list(pending)
