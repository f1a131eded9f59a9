"""Anthropic provider implementation.

Implements the LLMProvider interface for Anthropic's Messages API. The
caller's request body is forwarded as-is; this module only owns transport,
timeouts and error mapping.
"""

import inspect
import os
import time
from typing import Any

from anthropic import (
    AsyncAnthropic,
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
)
from anthropic.resources import AsyncMessages

from ..errors import (
    AuthenticationError,
    ContentFilterError,
    InvalidRequestError,
    LLMError,
    ModelNotFoundError,
    NetworkError,
    ProviderError,
    RateLimitError,
    TimeoutError,
)
from ..models import UpstreamResponse
from .base import LLMProvider

# Keyword arguments the SDK accepts for a Messages request body. Anything
# else in a caller body travels through extra_body untouched.
_REQUEST_OPTIONS = {"extra_headers", "extra_query", "extra_body", "timeout"}
_CREATE_PARAMS = frozenset(
    name
    for name, param in inspect.signature(AsyncMessages.create).parameters.items()
    if param.kind is inspect.Parameter.KEYWORD_ONLY and name not in _REQUEST_OPTIONS
)


def split_body(body: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a request body into SDK keyword arguments and extra body fields."""
    known = {key: value for key, value in body.items() if key in _CREATE_PARAMS}
    extra = {key: value for key, value in body.items() if key not in _CREATE_PARAMS}
    return known, extra


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API provider.

    The SDK's own retry loop is disabled (``max_retries=0``) so that
    LLMClient's policy is the only one in effect.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        """Initialize Anthropic provider.

        Args:
            api_key: Anthropic API key. Defaults to ANTHROPIC_API_KEY env var.
            base_url: Optional API base URL override (proxies, tests).
        """
        self._api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        self._base_url = base_url or os.environ.get("ANTHROPIC_BASE_URL")
        self._client: AsyncAnthropic | None = None

    @property
    def name(self) -> str:
        """Provider identifier."""
        return "anthropic"

    @property
    def client(self) -> AsyncAnthropic:
        """Lazy-initialized Anthropic client."""
        if self._client is None:
            if not self._api_key:
                raise AuthenticationError(
                    "Anthropic API key not configured. Set ANTHROPIC_API_KEY environment variable.",
                    provider=self.name,
                )
            self._client = AsyncAnthropic(
                api_key=self._api_key,
                base_url=self._base_url,
                max_retries=0,
            )
        return self._client

    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def generate(self, body: dict[str, Any], timeout: float) -> UpstreamResponse:
        """Send the request body to Anthropic.

        Args:
            body: Messages API request body.
            timeout: Timeout for this attempt in seconds.

        Returns:
            Raw response dict with latency and request id.

        Raises:
            Various LLMError subclasses based on the error type.
        """
        start_time = time.perf_counter()

        try:
            known, extra = split_body(body)
            if extra:
                known["extra_body"] = extra
            response = await self.client.messages.create(**known, timeout=timeout)
        except APITimeoutError as e:
            raise TimeoutError(
                f"Anthropic request timed out after {timeout:.0f}s",
                provider=self.name,
            ) from e
        except APIConnectionError as e:
            raise NetworkError(
                f"Failed to connect to Anthropic: {e}",
                provider=self.name,
            ) from e
        except APIStatusError as e:
            self._handle_api_error(e)

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        raw = response.model_dump(mode="json")
        return UpstreamResponse(
            raw=raw,
            provider=self.name,
            latency_ms=latency_ms,
            request_id=raw.get("id"),
        )

    def _handle_api_error(self, error: APIStatusError) -> None:
        """Convert Anthropic API errors to LLMError types."""
        status_code = error.status_code
        message = str(error.message) if hasattr(error, "message") else str(error)
        request_id = getattr(error, "request_id", None)

        if status_code == 401:
            raise AuthenticationError(
                "Invalid Anthropic API key",
                provider=self.name,
                request_id=request_id,
            ) from error

        if status_code == 403:
            raise AuthenticationError(
                f"Anthropic access denied: {message}",
                provider=self.name,
                request_id=request_id,
            ) from error

        if status_code == 404:
            raise ModelNotFoundError(
                f"Model not found: {message}",
                provider=self.name,
                request_id=request_id,
            ) from error

        if status_code == 429:
            retry_after = None
            if getattr(error, "response", None) is not None:
                retry_after_str = error.response.headers.get("retry-after")
                if retry_after_str:
                    try:
                        retry_after = float(retry_after_str)
                    except ValueError:
                        retry_after = None

            raise RateLimitError(
                f"Anthropic rate limit exceeded: {message}",
                retry_after=retry_after,
                provider=self.name,
                request_id=request_id,
            ) from error

        if status_code >= 500:
            raise ProviderError(
                f"Anthropic server error ({status_code}): {message}",
                status_code=status_code,
                provider=self.name,
                request_id=request_id,
            ) from error

        if 400 <= status_code < 500:
            if "safety" in message.lower() or "harmful" in message.lower():
                raise ContentFilterError(
                    f"Content blocked by Anthropic safety filters: {message}",
                    provider=self.name,
                    request_id=request_id,
                ) from error

            raise InvalidRequestError(
                f"Invalid request to Anthropic ({status_code}): {message}",
                provider=self.name,
                request_id=request_id,
            ) from error

        raise LLMError(
            f"Anthropic error ({status_code}): {message}",
            provider=self.name,
            request_id=request_id,
        ) from error
