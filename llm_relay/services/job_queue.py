"""Processing trigger queue.

Submissions enqueue the job id and return immediately; consumer tasks pull
ids and run the worker. Delivery is at-least-once (the manual trigger and
reconciliation may enqueue a job again). An id already waiting in the queue
is not queued twice; anything else is resolved by the worker's claim, which
refuses jobs that are terminal or freshly claimed.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Awaitable, Callable, Optional

from llm_relay.api.exceptions import JobNotFoundError, JobStateError

logger = logging.getLogger(__name__)

JOB_QUEUE_CONSUMERS = int(os.getenv("JOB_QUEUE_CONSUMERS", "2"))

JobHandler = Callable[[str], Awaitable[object]]


async def _default_handler(job_id: str) -> object:
    from .worker import process_job
    return await process_job(job_id)


class JobQueue:
    """asyncio queue of job ids with a fixed pool of consumer tasks.

    Usage:
        queue = JobQueue()
        await queue.start()
        await queue.enqueue("req_abc")
        ...
        await queue.stop()
    """

    def __init__(
        self,
        handler: Optional[JobHandler] = None,
        consumers: Optional[int] = None,
    ):
        """Initialize queue.

        Args:
            handler: Coroutine run per job id (default: worker.process_job).
            consumers: Number of consumer tasks.
        """
        self._handler = handler or _default_handler
        self._consumers = JOB_QUEUE_CONSUMERS if consumers is None else consumers
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._pending: set[str] = set()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def qsize(self) -> int:
        return self._queue.qsize()

    async def enqueue(self, job_id: str) -> bool:
        """Schedule a job for processing. Returns immediately.

        Returns False when the id is already waiting in the queue.
        """
        if job_id in self._pending:
            logger.debug(f"Job {job_id} already queued")
            return False
        self._pending.add(job_id)
        self._queue.put_nowait(job_id)
        logger.debug(f"Enqueued job {job_id}")
        return True

    async def start(self) -> None:
        """Start the consumer tasks."""
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._consume(i)) for i in range(self._consumers)
        ]
        logger.info(f"Job queue started with {self._consumers} consumers")

    async def stop(self) -> None:
        """Cancel the consumer tasks. Jobs still queued stay queued in the store."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Job queue stopped")

    async def join(self) -> None:
        """Wait until every enqueued job has been handled."""
        await self._queue.join()

    async def _consume(self, consumer_id: int) -> None:
        while True:
            job_id = await self._queue.get()
            self._pending.discard(job_id)
            try:
                await self._handler(job_id)
            except (JobNotFoundError, JobStateError) as e:
                logger.info(f"Skipped job {job_id}: {e}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Consumer {consumer_id} failed on job {job_id}: {e}")
            finally:
                self._queue.task_done()


# Module-level singleton instance
_job_queue: Optional[JobQueue] = None


def get_job_queue() -> JobQueue:
    """Get the default job queue singleton."""
    global _job_queue
    if _job_queue is None:
        _job_queue = JobQueue()
    return _job_queue


def set_job_queue(queue: Optional[JobQueue]) -> None:
    """Set the job queue instance (for testing)."""
    global _job_queue
    _job_queue = queue
