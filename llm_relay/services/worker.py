"""Relay worker: claim a job, call upstream, normalize, persist, notify.

A job moves queued -> processing -> completed|failed. The claim is the only
guard against duplicate processing; the terminal write is conditional on the
claimed attempt number, so a worker whose claim went stale and was reclaimed
cannot overwrite the newer attempt's outcome.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional

from pymongo.errors import PyMongoError

from llm_relay.llm import LLMError, get_client
from llm_relay.models import ModelPricing, RelayJob, ResponseOptions
from llm_relay.normalizer import normalize_response

from .job_store import get_job_store
from .webhook import get_deliverer

logger = logging.getLogger(__name__)

# A processing claim older than this is considered abandoned (20 minutes)
STUCK_JOB_THRESHOLD_SECONDS = float(os.getenv("STUCK_JOB_THRESHOLD_SECONDS", "1200"))

# Stored error messages are kept short
ERROR_MESSAGE_MAX_CHARS = 2000


async def claim_job(job_id: str, stale_after: Optional[float] = None) -> RelayJob:
    """Claim a job for processing.

    Raises:
        JobNotFoundError, JobAlreadyCompletedError, JobAlreadyFailedError,
        JobBusyError: See BaseJobStore.begin_processing.
    """
    threshold = STUCK_JOB_THRESHOLD_SECONDS if stale_after is None else stale_after
    return await get_job_store().begin_processing(job_id, threshold)


def _options(job: RelayJob) -> tuple[ResponseOptions, Optional[ModelPricing]]:
    options = ResponseOptions.model_validate(job.payload.get("response_options") or {})
    pricing_data = job.payload.get("model_pricing")
    pricing = ModelPricing.model_validate(pricing_data) if pricing_data else None
    return options, pricing


async def execute_job(job: RelayJob) -> Optional[RelayJob]:
    """Run a claimed job to a terminal state and push the completion notice.

    Every upstream or normalization error is stored on the job; only
    cancellation propagates.

    Returns:
        The stored terminal job, or None when a newer attempt owns the job.
    """
    store = get_job_store()
    attempt = job.processing_attempts

    try:
        options, pricing = _options(job)
        response = await get_client().generate(
            job.payload.get("request"),
            correlation_id=job.job_id,
        )
        normalized = normalize_response(response.raw, options, pricing)
    except asyncio.CancelledError:
        raise
    except LLMError as e:
        logger.warning(f"Upstream call failed for job {job.job_id}: {e}")
        stored = await store.fail_job(job.job_id, attempt, str(e)[:ERROR_MESSAGE_MAX_CHARS])
    except Exception as e:
        logger.exception(f"Processing failed for job {job.job_id}: {e}")
        stored = await store.fail_job(
            job.job_id, attempt, f"Processing error: {e}"[:ERROR_MESSAGE_MAX_CHARS]
        )
    else:
        stored = await store.complete_job(job.job_id, attempt, normalized.model_dump(mode="json"))
        if stored is not None:
            logger.info(
                f"Job {job.job_id} completed "
                f"(attempts={response.attempts}, truncated={normalized.truncated})"
            )

    if stored is None:
        logger.warning(
            f"Discarded outcome of job {job.job_id} attempt {attempt}: "
            f"job was reclaimed or already resolved"
        )
        return None

    try:
        await get_deliverer().deliver(stored)
    except PyMongoError as e:
        logger.error(f"Could not record webhook delivery for job {job.job_id}: {e}")

    return stored


async def process_job(job_id: str, stale_after: Optional[float] = None) -> Optional[RelayJob]:
    """Claim and run a job. Raises the claim errors of claim_job."""
    job = await claim_job(job_id, stale_after)
    return await execute_job(job)
