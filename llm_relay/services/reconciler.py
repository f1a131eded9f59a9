"""Reconciliation monitor.

Completion notices are best-effort, so a periodic sweep re-pushes notices for
completed jobs whose result has not been fetched. Each job gets at most
MAX_DELIVERY_RETRIES re-pushes, only inside a recent window, so a caller that
has gone away is not notified forever.

The sweep also re-enqueues jobs that stopped moving: queued jobs whose
trigger was lost and processing jobs whose worker died. The worker's claim
keeps that idempotent.

Runs are triggered by POST /api/reconcile (external scheduler) or by the
in-process ReconciliationLoop.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field

from llm_relay.models import RelayJob

from .job_queue import JobQueue, get_job_queue
from .job_store import BaseJobStore, get_job_store
from .rate_limit import rate_limit_key
from .webhook import WebhookDeliverer, get_deliverer
from .worker import STUCK_JOB_THRESHOLD_SECONDS

logger = logging.getLogger(__name__)

# Selection window: completed at least 2 minutes ago, at most 30 minutes ago
MIN_AGE_SECONDS = 120
MAX_AGE_SECONDS = 1800

# Per-run limits
BATCH_LIMIT = 50
BATCH_SIZE = 5
BATCH_DELAY_SECONDS = 1.0
TIME_BUDGET_SECONDS = 100.0

# Queued this long without a claim means the trigger was lost
QUEUED_STALL_SECONDS = 120

RECONCILE_INTERVAL_SECONDS = float(os.getenv("RECONCILE_INTERVAL_SECONDS", "120"))

BACKLOG_NOTE = "Backlog detected - remaining jobs will be picked up by the next run"


class ReconciliationSummary(BaseModel):
    """Outcome of one reconciliation run."""

    total_found: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    requeued: int = 0
    stopped_early: bool = False
    processing_time_seconds: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    note: Optional[str] = None


async def _redeliver(
    job: RelayJob,
    store: BaseJobStore,
    deliverer: WebhookDeliverer,
) -> Optional[bool]:
    """Count the retry, then re-push. None when the job is no longer eligible."""
    counted = await store.record_delivery_retry(job.job_id)
    if counted is None:
        logger.debug(f"Job {job.job_id} no longer eligible for a webhook retry")
        return None

    logger.info(
        f"Re-sending webhook for job {job.job_id} "
        f"(retry {counted.delivery_retry_count})"
    )
    result = await deliverer.deliver(counted, is_retry=True)
    return result.success


async def requeue_stalled(
    store: BaseJobStore,
    queue: JobQueue,
    now: datetime,
    stale_after: float = STUCK_JOB_THRESHOLD_SECONDS,
    limit: int = BATCH_LIMIT,
) -> int:
    """Re-enqueue queued and processing jobs that stopped moving.

    Returns the number of jobs put back on the queue. Ids still waiting in
    the queue are not counted.
    """
    stalled = await store.find_stalled(
        queued_before=now - timedelta(seconds=QUEUED_STALL_SECONDS),
        processing_before=now - timedelta(seconds=stale_after),
        limit=limit,
    )
    requeued = 0
    for job in stalled:
        if await queue.enqueue(job.job_id):
            logger.warning(f"Re-enqueued stalled job {job.job_id} (status: {job.status.value})")
            requeued += 1
    return requeued


async def run_reconciliation(
    store: Optional[BaseJobStore] = None,
    deliverer: Optional[WebhookDeliverer] = None,
    queue: Optional[JobQueue] = None,
    now: Optional[datetime] = None,
    batch_delay: float = BATCH_DELAY_SECONDS,
    time_budget: float = TIME_BUDGET_SECONDS,
) -> ReconciliationSummary:
    """Run one reconciliation sweep.

    Args:
        store: Job store (default: module singleton).
        deliverer: Webhook deliverer (default: module singleton).
        queue: Job queue for stalled jobs (default: module singleton).
        now: Reference time for the selection window.
        batch_delay: Pause between batches in seconds.
        time_budget: Seconds the run may take. Jobs whose projected send
            time (batch pacing plus per-domain rate limiting) falls past
            the budget are left for the next run.

    Returns:
        Counts for the run. Jobs left over are handled by the next run.
    """
    store = store or get_job_store()
    deliverer = deliverer or get_deliverer()
    queue = queue or get_job_queue()
    now = now or datetime.now(timezone.utc)
    start = time.monotonic()

    summary = ReconciliationSummary(timestamp=now)
    summary.requeued = await requeue_stalled(store, queue, now)

    jobs = await store.find_undelivered(
        completed_after=now - timedelta(seconds=MAX_AGE_SECONDS),
        completed_before=now - timedelta(seconds=MIN_AGE_SECONDS),
        limit=BATCH_LIMIT,
    )
    summary.total_found = len(jobs)

    if not jobs:
        summary.note = "No undelivered results found"
    else:
        logger.info(f"Found {len(jobs)} completed jobs with unfetched results")

    # Projected send time per callback domain, in seconds from the start of
    # the run. Deliveries to one domain queue behind the rate limiter.
    interval = deliverer.rate_limiter.min_interval
    next_free: dict[str, float] = {}

    batches = [jobs[i:i + BATCH_SIZE] for i in range(0, len(jobs), BATCH_SIZE)]
    for index, batch in enumerate(batches):
        elapsed = time.monotonic() - start
        admitted = []
        for job in batch:
            key = rate_limit_key(job.callback_url or "")
            send_at = max(elapsed, next_free.get(key, 0.0))
            if send_at > time_budget:
                continue
            next_free[key] = send_at + interval
            admitted.append(job)
        if len(admitted) < len(batch):
            summary.stopped_early = True

        outcomes = await asyncio.gather(*(_redeliver(job, store, deliverer) for job in admitted))
        for outcome in outcomes:
            if outcome is None:
                continue
            summary.processed += 1
            if outcome:
                summary.successful += 1
            else:
                summary.failed += 1

        if index < len(batches) - 1 and not summary.stopped_early:
            if time.monotonic() - start + batch_delay > time_budget:
                summary.stopped_early = True
            else:
                await asyncio.sleep(batch_delay)

        if summary.stopped_early:
            logger.warning(
                f"Reconciliation time budget spent after {summary.processed} jobs; "
                f"stopping early"
            )
            break

    if summary.stopped_early or summary.total_found >= BATCH_LIMIT:
        summary.note = BACKLOG_NOTE

    summary.processing_time_seconds = round(time.monotonic() - start, 3)
    logger.info(
        f"Reconciliation complete: found={summary.total_found} "
        f"processed={summary.processed} successful={summary.successful} "
        f"failed={summary.failed} requeued={summary.requeued}"
    )
    return summary


class ReconciliationLoop:
    """Runs reconciliation periodically inside the application process."""

    def __init__(self, interval_seconds: Optional[float] = None):
        self._interval = RECONCILE_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return self._interval > 0

    async def start(self) -> None:
        """Start the background loop."""
        if not self.enabled:
            logger.info("Reconciliation loop disabled")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info(f"Reconciliation loop started (every {self._interval:.0f}s)")

    async def stop(self) -> None:
        """Stop the background loop."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.info("Reconciliation loop stopped")

    async def _loop(self) -> None:
        """Periodically reconcile undelivered results."""
        while True:
            try:
                await asyncio.sleep(self._interval)
                await run_reconciliation()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}")
