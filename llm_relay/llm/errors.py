"""LLM error hierarchy.

Custom exceptions for upstream calls with provider context.
Used for retry logic and for the error text stored on failed jobs.
"""


class LLMError(Exception):
    """Base exception for LLM operations."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        request_id: str | None = None,
        correlation_id: str | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.request_id = request_id
        self.correlation_id = correlation_id

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.provider:
            parts.append(f"provider={self.provider}")
        if self.request_id:
            parts.append(f"request_id={self.request_id}")
        return " ".join(parts)


class AuthenticationError(LLMError):
    """401/403 - Invalid or missing API key.

    Non-retryable. Check API key configuration.
    """

    pass


class RateLimitError(LLMError):
    """429 - Rate limit exceeded.

    Retryable with exponential backoff. Respect retry_after if provided.
    """

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        provider: str | None = None,
        request_id: str | None = None,
        correlation_id: str | None = None,
    ):
        super().__init__(message, provider, request_id, correlation_id)
        self.retry_after = retry_after


class TimeoutError(LLMError):
    """Request exceeded the per-attempt timeout.

    Retryable.
    """

    pass


class NetworkError(LLMError):
    """Transport-level failure (DNS, refused connection, reset).

    Retryable.
    """

    pass


class InvalidRequestError(LLMError):
    """4xx other than 401/403/404/429 - Malformed request.

    Non-retryable. Fix the request parameters.
    """

    pass


class MalformedRequestError(InvalidRequestError):
    """Request body lacks a model or messages; rejected before any network call."""

    pass


class ContentFilterError(LLMError):
    """Response blocked by safety filters.

    Non-retryable.
    """

    pass


class ProviderError(LLMError):
    """5xx - Provider-side failure.

    Retryable. May be transient server issues.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider: str | None = None,
        request_id: str | None = None,
        correlation_id: str | None = None,
    ):
        super().__init__(message, provider, request_id, correlation_id)
        self.status_code = status_code


class ModelNotFoundError(LLMError):
    """Model identifier not recognized.

    Non-retryable. Check model name.
    """

    pass


class RetriesExhaustedError(LLMError):
    """Every attempt failed with a retryable error.

    Carries the diagnostics operators need: how many attempts ran, how long
    they took, and whether the last one timed out or failed to connect.
    """

    def __init__(
        self,
        last_error: LLMError,
        attempts: int,
        elapsed_seconds: float,
        correlation_id: str | None = None,
    ):
        self.last_error = last_error
        self.attempts = attempts
        self.elapsed_seconds = elapsed_seconds
        self.failure_kind = classify_failure(last_error)
        super().__init__(
            f"Upstream request failed after {attempts} attempts "
            f"(retries exhausted, elapsed {elapsed_seconds:.1f}s, "
            f"last failure: {self.failure_kind}): {last_error}",
            provider=last_error.provider,
            request_id=last_error.request_id,
            correlation_id=correlation_id,
        )

    def __str__(self) -> str:
        # Provider context is already part of the embedded last error
        return self.args[0]


def classify_failure(error: Exception) -> str:
    """Short label for a retryable failure, used in diagnostics."""
    if isinstance(error, TimeoutError):
        return "timeout"
    if isinstance(error, NetworkError):
        return "connection"
    if isinstance(error, RateLimitError):
        return "rate_limit"
    if isinstance(error, ProviderError):
        return "server_error"
    return "error"


# Error classification for retry logic
RETRYABLE_ERRORS = (RateLimitError, TimeoutError, NetworkError, ProviderError)
NON_RETRYABLE_ERRORS = (AuthenticationError, InvalidRequestError, ContentFilterError, ModelNotFoundError)
