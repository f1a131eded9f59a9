"""Unit tests for webhook delivery and rate limiting.

Tests cover:
- Notice body and headers
- Failure handling (non-2xx, transport errors) without raising
- Delivery log entries
- Per-domain rate limiting (in-memory and MongoDB)
"""

import asyncio
import time
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

from conftest import WebhookRecorder
from llm_relay import __version__
from llm_relay.db import mongo
from llm_relay.models import RelayJobStatus
from llm_relay.services.job_store import InMemoryJobStore
from llm_relay.services.rate_limit import (
    InMemoryRateLimiter,
    MongoRateLimiter,
    rate_limit_key,
)
from llm_relay.services.webhook import WebhookDeliverer, build_notice

PAYLOAD = {
    "callback_url": "https://hooks.example.com/relay",
    "callback_token": "secret-token",
    "request": {"model": "m", "messages": [{"role": "user", "content": "x"}]},
}


async def _completed(store: InMemoryJobStore, job_id: str = "req_abc", payload=None):
    await store.create_job(job_id, payload or PAYLOAD)
    job = await store.begin_processing(job_id, 1200)
    return await store.complete_job(job_id, job.processing_attempts, {"content": "hi"})


def _deliverer(store, handler) -> WebhookDeliverer:
    return WebhookDeliverer(
        rate_limiter=InMemoryRateLimiter(min_interval=0),
        transport=httpx.MockTransport(handler),
        store=store,
    )


class TestBuildNotice:
    """Tests for the notice body."""

    @pytest.mark.asyncio
    async def test_first_push(self):
        """A first push carries only id and status."""
        store = InMemoryJobStore()
        job = await _completed(store)

        assert build_notice(job) == {"id": "req_abc", "status": "completed"}

    @pytest.mark.asyncio
    async def test_retry_push(self):
        """A reconciliation push is flagged with its retry count."""
        store = InMemoryJobStore()
        await _completed(store)
        job = await store.record_delivery_retry("req_abc")

        assert build_notice(job, is_retry=True) == {
            "id": "req_abc",
            "status": "completed",
            "is_retry": True,
            "retry_count": 1,
        }


class TestWebhookDeliverer:
    """Tests for WebhookDeliverer.deliver."""

    @pytest.mark.asyncio
    async def test_successful_delivery(self):
        """A 2xx answer is a success and is logged on the job."""
        store = InMemoryJobStore()
        job = await _completed(store)
        recorder = WebhookRecorder()

        result = await _deliverer(store, recorder).deliver(job)

        assert result.success is True
        assert result.status_code == 200
        assert recorder.bodies == [{"id": "req_abc", "status": "completed"}]

        request = recorder.requests[0]
        assert str(request.url) == "https://hooks.example.com/relay"
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert request.headers["User-Agent"] == f"llm-relay/{__version__}"

        stored = await store.get_job("req_abc")
        assert len(stored.delivery_log) == 1
        assert stored.delivery_log[0].success is True

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(self):
        """A 500 answer is recorded as a failure without raising."""
        store = InMemoryJobStore()
        job = await _completed(store)

        result = await _deliverer(store, WebhookRecorder(status_code=500)).deliver(job)

        assert result.success is False
        assert result.status_code == 500
        assert "500" in result.error
        stored = await store.get_job("req_abc")
        assert stored.delivery_log[0].success is False
        assert stored.delivery_log[0].status_code == 500

    @pytest.mark.asyncio
    async def test_transport_error_is_failure(self):
        """Connection errors are captured as failed deliveries."""
        store = InMemoryJobStore()
        job = await _completed(store)

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = await _deliverer(store, refuse).deliver(job)

        assert result.success is False
        assert result.status_code is None
        assert "ConnectError" in result.error

    @pytest.mark.asyncio
    async def test_retry_flag_recorded(self):
        """Retry pushes are marked in the delivery log."""
        store = InMemoryJobStore()
        await _completed(store)
        job = await store.record_delivery_retry("req_abc")
        recorder = WebhookRecorder()

        await _deliverer(store, recorder).deliver(job, is_retry=True)

        assert recorder.bodies[0]["is_retry"] is True
        stored = await store.get_job("req_abc")
        assert stored.delivery_log[0].is_retry is True

    @pytest.mark.asyncio
    async def test_missing_callback_url(self):
        """Jobs without a callback URL are skipped."""
        store = InMemoryJobStore()
        job = await _completed(store, payload={"request": {}})
        recorder = WebhookRecorder()

        result = await _deliverer(store, recorder).deliver(job)

        assert result.success is False
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_failed_job_notice(self):
        """Failed jobs are announced with status failed."""
        store = InMemoryJobStore()
        await store.create_job("req_bad", PAYLOAD)
        claimed = await store.begin_processing("req_bad", 1200)
        job = await store.fail_job("req_bad", claimed.processing_attempts, "boom")
        recorder = WebhookRecorder()

        await _deliverer(store, recorder).deliver(job)

        assert recorder.bodies == [{"id": "req_bad", "status": RelayJobStatus.failed.value}]

    @pytest.mark.asyncio
    async def test_rate_limiter_keyed_by_domain(self):
        """The limiter slot is taken for the callback host."""
        store = InMemoryJobStore()
        job = await _completed(store)
        limiter = InMemoryRateLimiter(min_interval=0)
        deliverer = WebhookDeliverer(
            rate_limiter=limiter,
            transport=httpx.MockTransport(WebhookRecorder()),
            store=store,
        )

        with patch.object(limiter, "acquire", AsyncMock(return_value=0.0)) as mock_acquire:
            await deliverer.deliver(job)

        mock_acquire.assert_awaited_once_with("hooks.example.com")


class TestRateLimitKey:
    """Tests for limiter keys."""

    def test_host_is_key(self):
        assert rate_limit_key("https://Hooks.Example.com/a/b?x=1") == "hooks.example.com"

    def test_same_domain_same_key(self):
        assert rate_limit_key("https://a.example/1") == rate_limit_key("https://a.example/2")


class TestInMemoryRateLimiter:
    """Tests for the process-local limiter."""

    @pytest.mark.asyncio
    async def test_first_call_does_not_wait(self):
        limiter = InMemoryRateLimiter(min_interval=10)

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            waited = await limiter.acquire("a.example")

        assert waited == 0.0
        mock_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_second_call_waits_for_interval(self):
        """A second push to the same domain waits out the interval."""
        limiter = InMemoryRateLimiter(min_interval=10)

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await limiter.acquire("a.example")
            waited = await limiter.acquire("a.example")

        assert 9 < waited <= 10
        mock_sleep.assert_called_once()

    @pytest.mark.asyncio
    async def test_domains_are_independent(self):
        """Different domains do not block each other."""
        limiter = InMemoryRateLimiter(min_interval=10)

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await limiter.acquire("a.example")
            await limiter.acquire("b.example")

        mock_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_real_spacing(self):
        """Concurrent acquisitions are spaced by the interval."""
        limiter = InMemoryRateLimiter(min_interval=0.05)
        start = time.monotonic()

        await asyncio.gather(*(limiter.acquire("a.example") for _ in range(3)))

        assert time.monotonic() - start >= 0.09

    @pytest.mark.asyncio
    async def test_expired_domains_are_dropped(self):
        """Domains whose window has passed do not accumulate."""
        limiter = InMemoryRateLimiter(min_interval=0.01)

        for i in range(20):
            await limiter.acquire(f"d{i}.example")
        await asyncio.sleep(0.02)
        await limiter.acquire("fresh.example")

        assert set(limiter._last_sent) == {"fresh.example"}
        assert set(limiter._locks) == {"fresh.example"}

    @pytest.mark.asyncio
    async def test_recent_domain_is_kept(self):
        """A domain inside its window keeps its spacing."""
        limiter = InMemoryRateLimiter(min_interval=10)

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await limiter.acquire("a.example")
            await limiter.acquire("b.example")
            waited = await limiter.acquire("a.example")

        assert "a.example" in limiter._last_sent
        assert waited > 9
        mock_sleep.assert_called_once()


class TestMongoRateLimiter:
    """Tests for the shared MongoDB limiter."""

    @pytest.fixture(autouse=True)
    def mock_mongo(self):
        mongo.set_client(AsyncMongoMockClient())
        yield
        mongo.set_client(None)

    @pytest.mark.asyncio
    async def test_first_call_takes_slot(self):
        limiter = MongoRateLimiter(min_interval=10)

        with patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            waited = await limiter.acquire("a.example")

        assert waited == 0.0
        mock_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_shared_between_instances(self):
        """Two limiter instances share the window through the database."""
        first = MongoRateLimiter(min_interval=0.05)
        second = MongoRateLimiter(min_interval=0.05)

        await first.acquire("a.example")
        start = time.monotonic()
        waited = await second.acquire("a.example")

        assert waited > 0
        assert time.monotonic() - start >= 0.03

    @pytest.mark.asyncio
    async def test_free_slot_after_interval(self):
        """Once the window has passed the slot is taken without waiting."""
        limiter = MongoRateLimiter(min_interval=0.01)

        await limiter.acquire("a.example")
        await asyncio.sleep(0.02)
        waited = await limiter.acquire("a.example")

        assert waited == 0.0
