"""
Worker Pool & Cancellation
==========================

Bounded concurrency for one stage of a run.

Design Decisions:
-----------------
1. One asyncio.Queue per stage, drained by `concurrency` workers; the
   stage ends when the queue is empty and every handler has returned
2. Handlers return a list of follow-up items (or None), enqueued only
   after the handler's own write is confirmed (an OU's children after
   the OU); any other return value is a TypeError
3. Cancellation is cooperative: once the token is set nothing new is
   started or enqueued, and in-flight handlers run to completion
4. An unexpected exception in a handler stops the stage and is re-raised
   once the workers have wound down
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """Run-wide cancellation flag, set by SIGINT/SIGTERM in the CLI."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("Cancellation requested")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


Handler = Callable[[Any], Awaitable[Optional[list]]]


class WorkerPool:
    """Processes queued items with bounded concurrency.

    Usage:
        pool = WorkerPool(concurrency=4, token=token)
        await pool.run(top_level_ous, create_ou)   # create_ou returns children
    """

    def __init__(self, concurrency: int, token: Optional[CancellationToken] = None):
        """Initialize the pool.

        Args:
            concurrency: Number of workers (concurrent handlers)
            token: Run cancellation token
        """
        self.concurrency = max(1, concurrency)
        self.token = token or CancellationToken()

        self.processed = 0
        self.dropped = 0
        self._error: Optional[BaseException] = None

    async def run(self, items: Iterable, handler: Handler) -> int:
        """Run `handler` on every item and on every follow-up it returns.

        Returns:
            Number of items handled

        Raises:
            Exception: The first unexpected exception raised by a handler
        """
        queue: asyncio.Queue = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)
        if queue.empty():
            return 0

        workers = [asyncio.create_task(self._worker(queue, handler)) for _ in range(self.concurrency)]
        try:
            await queue.join()
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        if self._error is not None:
            error, self._error = self._error, None
            raise error
        return self.processed

    async def _worker(self, queue: asyncio.Queue, handler: Handler) -> None:
        while True:
            item = await queue.get()
            try:
                if self.token.cancelled or self._error is not None:
                    self.dropped += 1
                    continue

                follow_ups = await handler(item)
                self.processed += 1
                if follow_ups is not None and not isinstance(follow_ups, list):
                    raise TypeError(
                        f"handler returned {type(follow_ups).__name__}; expected a list of follow-up items or None"
                    )
                if follow_ups and not self.token.cancelled:
                    for follow_up in follow_ups:
                        queue.put_nowait(follow_up)
            except Exception as e:
                if self._error is None:
                    self._error = e
                logger.error("Worker stopped on unexpected error: %s", e)
            finally:
                queue.task_done()
