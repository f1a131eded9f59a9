"""Submission intake.

Validates a submission, records it as a queued job and triggers processing.
The caller gets an acknowledgement long before the upstream call finishes.
"""

from __future__ import annotations

import logging

from llm_relay.api.exceptions import ValidationError
from llm_relay.llm import MalformedRequestError, validate_request_body
from llm_relay.models import RelayJob, Submission

from .job_queue import get_job_queue
from .job_store import get_job_store

logger = logging.getLogger(__name__)


async def submit(submission: Submission) -> RelayJob:
    """Queue a submission.

    Raises:
        ValidationError: The outbound request body is malformed.
        DuplicateJobError: The id was already submitted.
    """
    try:
        validate_request_body(submission.request)
    except MalformedRequestError as e:
        raise ValidationError(str(e)) from e

    job = await get_job_store().create_job(submission.id, submission.to_payload())
    await get_job_queue().enqueue(job.job_id)

    logger.info(
        f"Queued job {job.job_id}",
        extra={"job_id": job.job_id, "model": submission.request.get("model")},
    )
    return job
