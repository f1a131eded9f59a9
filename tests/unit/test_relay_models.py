"""Unit tests for relay job and submission models."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from llm_relay.models import (
    RelayJob,
    RelayJobStatus,
    ResponseOptions,
    Submission,
    ensure_tz_aware,
)


class TestRelayJob:
    """Tests for RelayJob helpers."""

    def test_defaults(self):
        job = RelayJob(job_id="req_abc")

        assert job.status == RelayJobStatus.queued
        assert job.processing_attempts == 0
        assert job.delivery_retry_count == 0
        assert job.delivery_log == []
        assert job.is_terminal() is False

    @pytest.mark.parametrize("status, terminal", [
        (RelayJobStatus.queued, False),
        (RelayJobStatus.processing, False),
        (RelayJobStatus.completed, True),
        (RelayJobStatus.failed, True),
    ])
    def test_is_terminal(self, status, terminal):
        assert RelayJob(job_id="j", status=status).is_terminal() is terminal

    def test_is_stale(self):
        """Only processing jobs past the threshold are stale."""
        now = datetime.now(timezone.utc)
        job = RelayJob(
            job_id="j",
            status=RelayJobStatus.processing,
            processing_started_at=now - timedelta(minutes=25),
        )

        assert job.is_stale(1200, now) is True
        assert job.is_stale(3600, now) is False
        assert RelayJob(job_id="q").is_stale(0, now) is False

    def test_processing_without_start_is_stale(self):
        job = RelayJob(job_id="j", status=RelayJobStatus.processing)
        assert job.is_stale(1200) is True

    def test_processing_time_seconds(self):
        created = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        job = RelayJob(
            job_id="j",
            created_at=created,
            completed_at=created + timedelta(seconds=95.6),
        )

        assert job.processing_time_seconds() == 96
        assert RelayJob(job_id="k").processing_time_seconds() is None

    def test_callback_fields_from_payload(self):
        job = RelayJob(
            job_id="j",
            payload={"callback_url": "https://hooks.example.com/x", "callback_token": "t"},
        )

        assert job.callback_url == "https://hooks.example.com/x"
        assert job.callback_token == "t"

    def test_retry_count_bounded(self):
        with pytest.raises(ValidationError):
            RelayJob(job_id="j", delivery_retry_count=4)

    def test_extra_fields_forbidden(self):
        with pytest.raises(ValidationError):
            RelayJob(job_id="j", unknown="x")

    def test_ensure_tz_aware(self):
        naive = datetime(2025, 1, 1, 12, 0, 0)

        assert ensure_tz_aware(naive).tzinfo == timezone.utc
        assert ensure_tz_aware(None) is None


class TestSubmission:
    """Tests for the submission body."""

    def test_snake_case(self, sample_submission):
        submission = Submission.model_validate(sample_submission)

        assert submission.id == "req_abc"
        assert submission.model_pricing.input == 3
        assert submission.response_options == ResponseOptions()

    def test_camel_case_aliases(self):
        submission = Submission.model_validate({
            "id": "req_abc",
            "callbackUrl": "https://hooks.example.com/relay",
            "callbackToken": "secret-token",
            "request": {"model": "m", "messages": [{"role": "user", "content": "x"}]},
            "responseOptions": {"citations": True, "jsonContent": True},
        })

        assert submission.callback_token == "secret-token"
        assert submission.response_options.citations is True
        assert submission.response_options.json_content is True

    def test_payload_is_plain_json(self, sample_submission):
        payload = Submission.model_validate(sample_submission).to_payload()

        assert payload["callback_url"] == "https://hooks.example.com/relay"
        assert payload["request"] == sample_submission["request"]
        assert payload["response_options"]["include_wrapper"] is False

    @pytest.mark.parametrize("missing", ["id", "callback_url", "callback_token", "request"])
    def test_required_fields(self, sample_submission, missing):
        body = dict(sample_submission)
        del body[missing]

        with pytest.raises(ValidationError):
            Submission.model_validate(body)

    def test_invalid_callback_url(self, sample_submission):
        with pytest.raises(ValidationError):
            Submission.model_validate({**sample_submission, "callback_url": "not a url"})
