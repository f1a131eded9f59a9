"""Unit tests for the relay worker.

Tests cover:
- Successful processing with normalized result and one webhook
- Retries exhausted: failed job with diagnostics, webhook still sent
- Stale attempts cannot overwrite a newer attempt's outcome
- Duplicate triggers cause a single upstream call
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import make_message
from llm_relay.api.exceptions import (
    JobAlreadyCompletedError,
    JobAlreadyFailedError,
    JobBusyError,
    JobNotFoundError,
)
from llm_relay.llm.errors import AuthenticationError, ProviderError
from llm_relay.models import RelayJobStatus, Submission
from llm_relay.services.worker import claim_job, execute_job, process_job


@pytest.fixture
def payload(sample_submission):
    return Submission.model_validate(sample_submission).to_payload()


def _server_error() -> ProviderError:
    return ProviderError("Anthropic server error (503): overloaded", status_code=503, provider="anthropic")


class TestProcessJob:
    """Tests for process_job."""

    @pytest.mark.asyncio
    async def test_success(self, job_store, webhook_receiver, scripted_llm, payload):
        """A successful call stores the normalized result and pushes once."""
        provider = scripted_llm([make_message()])
        await job_store.create_job("req_abc", payload)

        stored = await process_job("req_abc")

        assert stored.status == RelayJobStatus.completed
        assert stored.result["content"] == "Hello from the model"
        assert stored.result["cost"]["total_cost"] == pytest.approx(0.0105)
        assert stored.error is None
        assert stored.completed_at is not None
        assert provider.calls == [payload["request"]]
        assert webhook_receiver.bodies == [{"id": "req_abc", "status": "completed"}]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, job_store, webhook_receiver, scripted_llm, payload):
        """Three 503s fail the job with the diagnostic and still notify."""
        provider = scripted_llm([_server_error()])
        await job_store.create_job("req_abc", payload)

        with patch("asyncio.sleep", new_callable=AsyncMock):
            stored = await process_job("req_abc")

        assert len(provider.calls) == 3
        assert stored.status == RelayJobStatus.failed
        assert stored.result is None
        assert "retries exhausted" in stored.error
        assert "after 3 attempts" in stored.error
        assert webhook_receiver.bodies == [{"id": "req_abc", "status": "failed"}]

    @pytest.mark.asyncio
    async def test_terminal_error_not_retried(self, job_store, webhook_receiver, scripted_llm, payload):
        """A non-retryable upstream error fails the job after one call."""
        provider = scripted_llm([AuthenticationError("Invalid API key", provider="anthropic")])
        await job_store.create_job("req_abc", payload)

        stored = await process_job("req_abc")

        assert len(provider.calls) == 1
        assert stored.status == RelayJobStatus.failed
        assert "Invalid API key" in stored.error

    @pytest.mark.asyncio
    async def test_normalization_error_is_stored(self, job_store, webhook_receiver, scripted_llm, payload):
        """Unexpected processing errors are stored, not raised."""
        scripted_llm([make_message()])
        await job_store.create_job("req_abc", payload)

        with patch(
            "llm_relay.services.worker.normalize_response",
            side_effect=RuntimeError("bad shape"),
        ):
            stored = await process_job("req_abc")

        assert stored.status == RelayJobStatus.failed
        assert stored.error == "Processing error: bad shape"

    @pytest.mark.asyncio
    async def test_long_error_is_capped(self, job_store, webhook_receiver, scripted_llm, payload):
        """Stored error messages are kept short."""
        scripted_llm([AuthenticationError("x" * 5000)])
        await job_store.create_job("req_abc", payload)

        stored = await process_job("req_abc")

        assert len(stored.error) == 2000

    @pytest.mark.asyncio
    async def test_unknown_job(self, job_store, webhook_receiver, scripted_llm):
        scripted_llm([make_message()])

        with pytest.raises(JobNotFoundError):
            await process_job("missing")


class TestClaimRefusals:
    """Tests for triggers on jobs that are not claimable."""

    @pytest.mark.asyncio
    async def test_completed_job_refused(self, job_store, webhook_receiver, scripted_llm, payload):
        provider = scripted_llm([make_message()])
        await job_store.create_job("req_abc", payload)
        await process_job("req_abc")

        with pytest.raises(JobAlreadyCompletedError):
            await process_job("req_abc")

        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_failed_job_refused(self, job_store, webhook_receiver, scripted_llm, payload):
        scripted_llm([AuthenticationError("bad key")])
        await job_store.create_job("req_abc", payload)
        await process_job("req_abc")

        with pytest.raises(JobAlreadyFailedError) as exc_info:
            await claim_job("req_abc")

        assert "bad key" in exc_info.value.error

    @pytest.mark.asyncio
    async def test_processing_job_busy(self, job_store, payload):
        await job_store.create_job("req_abc", payload)
        await claim_job("req_abc")

        with pytest.raises(JobBusyError):
            await claim_job("req_abc")


class TestConcurrency:
    """Tests for duplicate and stale processing."""

    @pytest.mark.asyncio
    async def test_double_trigger_single_upstream_call(
        self, job_store, webhook_receiver, scripted_llm, payload
    ):
        """Two simultaneous triggers: one call, one result, one push."""
        provider = scripted_llm([make_message()])
        await job_store.create_job("req_abc", payload)

        outcomes = await asyncio.gather(
            process_job("req_abc"),
            process_job("req_abc"),
            return_exceptions=True,
        )

        assert len(provider.calls) == 1
        assert sum(isinstance(o, (JobBusyError, JobAlreadyCompletedError)) for o in outcomes) == 1
        assert len(webhook_receiver.requests) == 1

    @pytest.mark.asyncio
    async def test_stale_attempt_discarded(self, job_store, webhook_receiver, scripted_llm, payload):
        """A reclaimed job ignores the outcome of the abandoned attempt."""
        scripted_llm([make_message(text="first")])
        await job_store.create_job("req_abc", payload)

        first = await claim_job("req_abc")
        second = await claim_job("req_abc", stale_after=0)
        assert second.processing_attempts == 2

        assert await execute_job(first) is None
        job = await job_store.get_job("req_abc")
        assert job.status == RelayJobStatus.processing
        assert webhook_receiver.requests == []

        stored = await execute_job(second)
        assert stored.status == RelayJobStatus.completed
        assert stored.processing_attempts == 2
        assert len(webhook_receiver.requests) == 1

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, job_store, webhook_receiver, scripted_llm, payload):
        """Cancellation is not stored as a failure."""
        scripted_llm([asyncio.CancelledError()])
        await job_store.create_job("req_abc", payload)
        job = await claim_job("req_abc")

        with pytest.raises(asyncio.CancelledError):
            await execute_job(job)

        stored = await job_store.get_job("req_abc")
        assert stored.status == RelayJobStatus.processing
