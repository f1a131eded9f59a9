"""Unit tests for the LLM error hierarchy."""

import pytest

from llm_relay.llm.errors import (
    NON_RETRYABLE_ERRORS,
    RETRYABLE_ERRORS,
    AuthenticationError,
    ContentFilterError,
    InvalidRequestError,
    LLMError,
    ModelNotFoundError,
    NetworkError,
    ProviderError,
    RateLimitError,
    RetriesExhaustedError,
    TimeoutError,
    classify_failure,
)


class TestErrorClassification:
    """Tests for retryable/terminal classification."""

    @pytest.mark.parametrize("error_class", [RateLimitError, TimeoutError, NetworkError, ProviderError])
    def test_retryable(self, error_class):
        assert issubclass(error_class, RETRYABLE_ERRORS)

    @pytest.mark.parametrize(
        "error_class",
        [AuthenticationError, InvalidRequestError, ContentFilterError, ModelNotFoundError],
    )
    def test_terminal(self, error_class):
        assert issubclass(error_class, NON_RETRYABLE_ERRORS)
        assert not issubclass(error_class, RETRYABLE_ERRORS)

    @pytest.mark.parametrize("error, kind", [
        (TimeoutError("t"), "timeout"),
        (NetworkError("n"), "connection"),
        (RateLimitError("r"), "rate_limit"),
        (ProviderError("p", status_code=503), "server_error"),
        (LLMError("x"), "error"),
    ])
    def test_classify_failure(self, error, kind):
        assert classify_failure(error) == kind


class TestErrorMessages:
    """Tests for error string formatting."""

    def test_provider_context_in_message(self):
        """Provider and request id are appended to the message."""
        error = ProviderError("server error", provider="anthropic", request_id="req_1")

        assert str(error) == "server error provider=anthropic request_id=req_1"

    def test_retries_exhausted_message(self):
        """The exhausted error summarizes attempts, elapsed time and cause."""
        last = TimeoutError("Anthropic request timed out after 660s", provider="anthropic")
        error = RetriesExhaustedError(last, attempts=3, elapsed_seconds=1981.04)

        assert str(error) == (
            "Upstream request failed after 3 attempts (retries exhausted, "
            "elapsed 1981.0s, last failure: timeout): "
            "Anthropic request timed out after 660s provider=anthropic"
        )
        assert error.provider == "anthropic"
