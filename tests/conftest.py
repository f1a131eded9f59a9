"""Pytest fixtures for testing."""

import json
from collections.abc import AsyncGenerator, Generator
from datetime import datetime
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from llm_relay.api.main import app
from llm_relay.db import mongo
from llm_relay.llm import LLMClient, set_client
from llm_relay.llm.models import UpstreamResponse
from llm_relay.llm.providers.base import LLMProvider
from llm_relay.models import RelayJob
from llm_relay.services.job_queue import JobQueue, set_job_queue
from llm_relay.services.job_store import InMemoryJobStore, _to_naive, set_job_store
from llm_relay.services.rate_limit import InMemoryRateLimiter, set_rate_limiter
from llm_relay.services.webhook import WebhookDeliverer, set_deliverer


class ScriptedProvider(LLMProvider):
    """Provider that replays a fixed list of outcomes.

    Each outcome is either a raw response dict or an exception to raise.
    The last outcome repeats once the list is used up.
    """

    def __init__(self, outcomes: list[Any]):
        self._outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []
        self.timeouts: list[float] = []

    @property
    def name(self) -> str:
        return "scripted"

    def is_configured(self) -> bool:
        return True

    async def generate(self, body: dict[str, Any], timeout: float) -> UpstreamResponse:
        self.calls.append(body)
        self.timeouts.append(timeout)
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return UpstreamResponse(raw=outcome, provider=self.name, latency_ms=5)


class WebhookRecorder:
    """httpx MockTransport handler that records incoming webhook pushes."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code < 300})

    @property
    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]


def make_message(
    text: str = "Hello from the model",
    input_tokens: int = 1000,
    output_tokens: int = 500,
    model: str = "claude-sonnet-4-5",
    content: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Raw Messages API response body."""
    return {
        "id": "msg_01",
        "type": "message",
        "role": "assistant",
        "model": model,
        "content": content if content is not None else [{"type": "text", "text": text}],
        "stop_reason": "end_turn",
        "stop_sequence": None,
        "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
    }


async def set_job_fields(store, job_id: str, **fields) -> RelayJob:
    """Write job fields straight into the backend, bypassing the transitions.

    Used to backdate timestamps when arranging reconciliation scenarios.
    """
    if isinstance(store, InMemoryJobStore):
        job = store._jobs[job_id]
        for key, value in fields.items():
            setattr(job, key, value)
    else:
        collection = await store._get_collection()
        await collection.update_one(
            {"job_id": job_id},
            {"$set": {
                key: _to_naive(value) if isinstance(value, datetime) else value
                for key, value in fields.items()
            }},
        )
    return await store.get_job(job_id)


@pytest_asyncio.fixture
async def mock_db() -> AsyncGenerator[Any, None]:
    """Provide a mock MongoDB database for testing."""
    # Create mock client
    mock_client = AsyncMongoMockClient()
    mock_database = mock_client["test_llm_relay"]

    # Replace the real client with mock
    mongo.set_client(mock_client)

    yield mock_database

    # Cleanup
    mongo.set_client(None)


@pytest.fixture
def job_store() -> Generator[InMemoryJobStore, None, None]:
    """Fresh in-memory job store installed as the default."""
    store = InMemoryJobStore()
    set_job_store(store)
    yield store
    set_job_store(None)


@pytest.fixture
def job_queue() -> Generator[JobQueue, None, None]:
    """Job queue installed as the default; not started."""
    queue = JobQueue(consumers=1)
    set_job_queue(queue)
    yield queue
    set_job_queue(None)


@pytest.fixture
def webhook_receiver(job_store: InMemoryJobStore) -> Generator[WebhookRecorder, None, None]:
    """Record webhook pushes instead of sending them."""
    recorder = WebhookRecorder()
    limiter = InMemoryRateLimiter(min_interval=0)
    set_rate_limiter(limiter)
    set_deliverer(WebhookDeliverer(
        rate_limiter=limiter,
        transport=httpx.MockTransport(recorder),
        store=job_store,
    ))
    yield recorder
    set_deliverer(None)
    set_rate_limiter(None)


@pytest.fixture
def scripted_llm():
    """Install an LLM client backed by a ScriptedProvider.

    Usage:
        provider = scripted_llm([make_message()])
    """
    def install(outcomes: list[Any], **client_kwargs) -> ScriptedProvider:
        provider = ScriptedProvider(outcomes)
        set_client(LLMClient(provider=provider, **client_kwargs))
        return provider

    yield install
    set_client(None)


@pytest_asyncio.fixture
async def client(job_store, job_queue, webhook_receiver) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def sample_submission() -> dict[str, Any]:
    """Sample submission body."""
    return {
        "id": "req_abc",
        "callback_url": "https://hooks.example.com/relay",
        "callback_token": "secret-token",
        "request": {
            "model": "claude-sonnet-4-5",
            "max_tokens": 1024,
            "messages": [{"role": "user", "content": "Say hello"}],
        },
        "model_pricing": {"input": 3, "output": 15},
    }
