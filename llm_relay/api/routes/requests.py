"""Relay request endpoints.

Provides endpoints for:
- POST /api/requests: Queue a submission
- POST /api/requests/process: Processing trigger
- GET /api/requests/{id}: Status and result lookup
- POST /api/requests/{id}/ack: Receipt acknowledgement
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks

from llm_relay.api.exceptions import (
    JobAlreadyCompletedError,
    JobAlreadyFailedError,
    JobNotCompletedError,
    JobNotFoundError,
)
from llm_relay.api.response import envelope, success_response
from llm_relay.models import ProcessRequest, RelayJob, RelayJobStatus, Submission
from llm_relay.services import dispatcher
from llm_relay.services.job_store import get_job_store
from llm_relay.services.worker import claim_job, execute_job

router = APIRouter(prefix="/requests", tags=["Requests"])


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def job_status_payload(job: RelayJob) -> dict[str, Any]:
    """Status document returned to callers."""
    return {
        "id": job.job_id,
        "status": job.status.value,
        "created_at": _iso(job.created_at),
        "processing_started_at": _iso(job.processing_started_at),
        "completed_at": _iso(job.completed_at),
        "processing_time_seconds": job.processing_time_seconds(),
        "error": job.error,
        "result": job.result if job.status == RelayJobStatus.completed else None,
        "fetched_at": _iso(job.fetched_at),
        "delivery_retry_count": job.delivery_retry_count,
        "last_delivery_retry_at": _iso(job.last_delivery_retry_at),
        "delivery_log": [a.model_dump(mode="json") for a in job.delivery_log],
    }


@router.post("")
async def submit_request(submission: Submission):
    """Queue a request for asynchronous processing.

    Returns 202 as soon as the job is stored; the completion notice is
    pushed to the callback URL later.
    """
    job = await dispatcher.submit(submission)

    return envelope(202, {
        "id": job.job_id,
        "status": job.status.value,
        "message": "Request queued for processing",
    })


@router.post("/process")
async def process_request(request: ProcessRequest, background_tasks: BackgroundTasks):
    """Claim a job and run it in the background.

    Terminal jobs are a successful no-op. A job another worker is still
    processing answers 409 (via the JobBusyError handler).
    """
    try:
        job = await claim_job(request.id)
    except JobAlreadyCompletedError:
        return success_response({
            "id": request.id,
            "status": RelayJobStatus.completed.value,
            "message": "Request already completed",
        })
    except JobAlreadyFailedError as e:
        return success_response({
            "id": request.id,
            "status": RelayJobStatus.failed.value,
            "message": "Request previously failed",
            "error": e.error,
        })

    background_tasks.add_task(execute_job, job)

    return envelope(202, {
        "id": job.job_id,
        "status": job.status.value,
        "attempt": job.processing_attempts,
        "message": "Processing started",
    })


@router.get("/{job_id}")
async def get_request_status(job_id: str) -> dict:
    """Get a job's status, and its result once completed.

    Reading a completed job records that the caller fetched the result,
    which stops webhook reconciliation for it.
    """
    store = get_job_store()
    job = await store.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)

    if job.status == RelayJobStatus.completed and job.fetched_at is None:
        job = await store.mark_fetched(job_id) or job

    return success_response(job_status_payload(job))


@router.post("/{job_id}/ack")
async def acknowledge_request(job_id: str) -> dict:
    """Confirm receipt of a completed result without fetching it."""
    store = get_job_store()
    job = await store.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    if job.status != RelayJobStatus.completed:
        raise JobNotCompletedError(job_id, job.status.value)

    job = await store.mark_fetched(job_id) or job

    return success_response({
        "id": job.job_id,
        "status": job.status.value,
        "fetched_at": _iso(job.fetched_at),
    })
