"""Abstract base class for LLM providers.

Defines the interface the retrying client relies on.
"""

from abc import ABC, abstractmethod
from typing import Any

from ..models import UpstreamResponse


class LLMProvider(ABC):
    """Base interface for upstream text-generation providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier: 'anthropic', etc."""
        ...

    @abstractmethod
    async def generate(self, body: dict[str, Any], timeout: float) -> UpstreamResponse:
        """Send one request body and return the raw response.

        Args:
            body: Provider-native request body, sent as-is.
            timeout: Timeout for this single attempt, in seconds.

        Returns:
            The raw response with call metadata.

        Raises:
            AuthenticationError: Invalid or missing API key.
            RateLimitError: Rate limit exceeded (retryable).
            TimeoutError: Request timed out (retryable).
            NetworkError: Transport failure (retryable).
            InvalidRequestError: Malformed request (non-retryable).
            ProviderError: Provider-side failure (retryable).
        """
        ...

    @abstractmethod
    def is_configured(self) -> bool:
        """True when credentials are available."""
        ...
