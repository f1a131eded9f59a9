"""Normalized response models.

Every completed job stores exactly this shape, whatever features the request
enabled, so consumers parse one structure.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class CostBreakdown(BaseModel):
    """Cost of one upstream call in USD."""
    model_config = ConfigDict(extra="forbid")

    input_tokens: int = Field(ge=0)
    output_tokens: int = Field(ge=0)
    input_cost: float = Field(ge=0)
    output_cost: float = Field(ge=0)
    total_cost: float = Field(ge=0)
    currency: str = "USD"


class SourceCitation(BaseModel):
    """A numbered entry of the consolidated Sources section."""
    model_config = ConfigDict(extra="forbid")

    number: int = Field(ge=1)
    url: Optional[str] = None
    title: Optional[str] = None
    cited_text: Optional[str] = None
    document_index: Optional[int] = None
    placeholder: bool = False


class UsageStats(BaseModel):
    """Token usage reported by the upstream provider."""
    model_config = ConfigDict(extra="ignore")

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: Optional[int] = None
    cache_read_input_tokens: Optional[int] = None


class NormalizedResponse(BaseModel):
    """Stable, bounded result stored on completed jobs."""
    model_config = ConfigDict(extra="forbid")

    request_id: Optional[str] = Field(default=None, description="Upstream message id")
    model: Optional[str] = None
    stop_reason: Optional[str] = None

    content: str = Field(default="", description="Consolidated text content")
    thinking: Optional[str] = Field(default=None, description="Reasoning trace, if requested")
    citations: list[SourceCitation] = Field(default_factory=list)

    parsed_content: Any = Field(
        default=None,
        description="Parsed JSON when structured content was requested and valid"
    )
    structured_content_valid: Optional[bool] = Field(
        default=None,
        description="None unless structured content was requested"
    )

    usage: Optional[UsageStats] = None
    cost: Optional[CostBreakdown] = None
    truncated: bool = Field(default=False, description="True if any field was capped")

    raw: Optional[dict[str, Any]] = Field(
        default=None,
        description="Stripped upstream response when the full wrapper was requested"
    )
