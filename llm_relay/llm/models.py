"""LLM data models.

The relay forwards the caller's Messages API body untouched, so the request
side is a plain dict; only the response envelope is modelled.
"""

from typing import Any

from pydantic import BaseModel


class UpstreamResponse(BaseModel):
    """Raw provider response plus call metadata."""

    raw: dict[str, Any]
    provider: str
    latency_ms: int
    attempts: int = 1
    request_id: str | None = None

    @property
    def model(self) -> str | None:
        return self.raw.get("model")

    @property
    def usage(self) -> dict[str, Any]:
        return self.raw.get("usage") or {}
