"""LLM provider abstraction layer.

This module provides the upstream call used by workers: request validation,
retry with backoff, and provider error mapping.
"""

from .client import LLMClient, get_client, set_client, validate_request_body
from .errors import (
    AuthenticationError,
    ContentFilterError,
    InvalidRequestError,
    LLMError,
    MalformedRequestError,
    ModelNotFoundError,
    NetworkError,
    ProviderError,
    RateLimitError,
    RetriesExhaustedError,
    TimeoutError,
)
from .models import UpstreamResponse

__all__ = [
    "LLMClient",
    "get_client",
    "set_client",
    "validate_request_body",
    "UpstreamResponse",
    "LLMError",
    "AuthenticationError",
    "RateLimitError",
    "TimeoutError",
    "NetworkError",
    "InvalidRequestError",
    "MalformedRequestError",
    "ModelNotFoundError",
    "ContentFilterError",
    "ProviderError",
    "RetriesExhaustedError",
]
