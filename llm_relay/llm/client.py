"""High-level LLM client with retry logic.

Wraps a provider with request validation, bounded exponential backoff and a
per-job time budget so a worker never outlives its host's execution ceiling.
"""

import asyncio
import logging
import os
import time
import uuid
from typing import Any

from .errors import (
    LLMError,
    MalformedRequestError,
    RateLimitError,
    RetriesExhaustedError,
    RETRYABLE_ERRORS,
)
from .models import UpstreamResponse
from .providers.anthropic import AnthropicProvider
from .providers.base import LLMProvider

logger = logging.getLogger(__name__)


def validate_request_body(body: Any) -> None:
    """Check the opaque request has the minimum shape worth sending.

    Raises:
        MalformedRequestError: If the model or messages are missing.
    """
    if not isinstance(body, dict):
        raise MalformedRequestError("Request body must be a JSON object")

    model = body.get("model")
    if not isinstance(model, str) or not model.strip():
        raise MalformedRequestError("Request body is missing a model identifier")

    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        raise MalformedRequestError("Request body must contain at least one message")

    if body.get("stream"):
        raise MalformedRequestError("Streaming requests cannot be relayed")


class LLMClient:
    """High-level LLM client with retry.

    Features:
    - Request shape validation before any network time is spent
    - Exponential backoff (1s, 2s, ... capped) on 429/5xx/timeout/transport errors
    - Per-attempt timeout bounded by an overall processing budget
    - Correlation ID tracking across attempts

    Configuration (env vars):
    - LLM_MAX_RETRIES: Retries after the first attempt (default: 2)
    - LLM_ATTEMPT_TIMEOUT_SECONDS: Timeout per attempt (default: 660)
    - LLM_TOTAL_BUDGET_SECONDS: Budget across all attempts (default: 780)
    """

    # Default configuration
    DEFAULT_MAX_RETRIES = 2
    DEFAULT_ATTEMPT_TIMEOUT = 660.0  # 11 minutes
    DEFAULT_TOTAL_BUDGET = 780.0  # 13 minutes
    DEFAULT_BASE_DELAY = 1.0  # Base delay for exponential backoff
    DEFAULT_MAX_DELAY = 5.0  # Maximum delay between retries

    def __init__(
        self,
        provider: LLMProvider | None = None,
        max_retries: int | None = None,
        attempt_timeout: float | None = None,
        total_budget: float | None = None,
    ):
        """Initialize LLM client.

        Args:
            provider: Upstream provider. Defaults to AnthropicProvider().
            max_retries: Retries after the first attempt. Defaults to LLM_MAX_RETRIES.
            attempt_timeout: Seconds per attempt. Defaults to LLM_ATTEMPT_TIMEOUT_SECONDS.
            total_budget: Seconds for all attempts. Defaults to LLM_TOTAL_BUDGET_SECONDS.
        """
        self._provider = provider or AnthropicProvider()
        self._max_retries = (
            max_retries
            if max_retries is not None
            else int(os.environ.get("LLM_MAX_RETRIES", self.DEFAULT_MAX_RETRIES))
        )
        self._attempt_timeout = (
            attempt_timeout
            if attempt_timeout is not None
            else float(os.environ.get("LLM_ATTEMPT_TIMEOUT_SECONDS", self.DEFAULT_ATTEMPT_TIMEOUT))
        )
        self._total_budget = (
            total_budget
            if total_budget is not None
            else float(os.environ.get("LLM_TOTAL_BUDGET_SECONDS", self.DEFAULT_TOTAL_BUDGET))
        )

    @property
    def provider(self) -> LLMProvider:
        return self._provider

    async def generate(
        self,
        body: dict[str, Any],
        correlation_id: str | None = None,
    ) -> UpstreamResponse:
        """Send the request with validation and retry.

        Args:
            body: Provider-native request body.
            correlation_id: Optional ID for tracking across retry attempts.

        Returns:
            The raw upstream response.

        Raises:
            MalformedRequestError: Body failed validation (no network call made).
            RetriesExhaustedError: Every attempt failed with a retryable error.
            LLMError: Non-retryable errors pass through on first occurrence.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        validate_request_body(body)

        provider_name = self._provider.name
        start = time.monotonic()
        last_error: LLMError | None = None
        attempts_made = 0

        for attempt in range(self._max_retries + 1):
            remaining = self._total_budget - (time.monotonic() - start)
            if remaining <= 0:
                logger.warning(
                    "Processing budget exhausted before attempt %d",
                    attempt + 1,
                    extra={"correlation_id": correlation_id, "provider": provider_name},
                )
                break

            timeout = min(self._attempt_timeout, remaining)
            attempts_made = attempt + 1
            try:
                logger.debug(
                    "Attempting request to %s (attempt %d/%d, timeout %.0fs)",
                    provider_name,
                    attempt + 1,
                    self._max_retries + 1,
                    timeout,
                    extra={
                        "correlation_id": correlation_id,
                        "provider": provider_name,
                        "attempt": attempt + 1,
                    },
                )

                response = await self._provider.generate(body, timeout=timeout)

                logger.info(
                    "LLM request succeeded",
                    extra={
                        "correlation_id": correlation_id,
                        "provider": response.provider,
                        "model": response.model,
                        "latency_ms": response.latency_ms,
                        "attempt": attempt + 1,
                    },
                )
                return response.model_copy(update={"attempts": attempt + 1})

            except RETRYABLE_ERRORS as e:
                last_error = e
                e.correlation_id = correlation_id

                logger.warning(
                    "Retryable error on attempt %d/%d: %s",
                    attempt + 1,
                    self._max_retries + 1,
                    str(e),
                    extra={
                        "correlation_id": correlation_id,
                        "provider": provider_name,
                        "attempt": attempt + 1,
                        "error_type": type(e).__name__,
                    },
                )

                if attempt < self._max_retries:
                    delay = self._calculate_backoff(attempt, e)
                    if time.monotonic() - start + delay >= self._total_budget:
                        break
                    logger.debug(
                        "Waiting %.2f seconds before retry",
                        delay,
                        extra={"correlation_id": correlation_id},
                    )
                    await asyncio.sleep(delay)

            except LLMError as e:
                # Non-retryable errors pass through immediately
                e.correlation_id = correlation_id
                raise

        elapsed = time.monotonic() - start
        if last_error is not None:
            raise RetriesExhaustedError(
                last_error,
                attempts=attempts_made,
                elapsed_seconds=elapsed,
                correlation_id=correlation_id,
            ) from last_error

        raise LLMError(
            f"Processing budget of {self._total_budget:.0f}s exhausted before any attempt",
            provider=provider_name,
            correlation_id=correlation_id,
        )

    def _calculate_backoff(self, attempt: int, error: Exception) -> float:
        """Exponential backoff: base * 2^attempt, capped.

        Args:
            attempt: Current attempt number (0-indexed).
            error: The error that triggered the retry.

        Returns:
            Delay in seconds.
        """
        if isinstance(error, RateLimitError) and error.retry_after:
            return min(error.retry_after, self.DEFAULT_MAX_DELAY)

        return min(self.DEFAULT_BASE_DELAY * (2 ** attempt), self.DEFAULT_MAX_DELAY)


# Convenience functions for module-level access
_default_client: LLMClient | None = None


def get_client() -> LLMClient:
    """Get the default LLM client singleton."""
    global _default_client
    if _default_client is None:
        _default_client = LLMClient()
    return _default_client


def set_client(client: LLMClient | None) -> None:
    """Set the LLM client instance (for testing)."""
    global _default_client
    _default_client = client
