"""Submission and API request models.

The submission is what the caller-side integration posts to queue a request.
Fields are snake_case; camelCase aliases are accepted so existing callers
that send ``callbackUrl`` / ``responseOptions`` keep working.

Pydantic v2.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ModelPricing(BaseModel):
    """Per-model prices in USD per 1M tokens."""
    model_config = ConfigDict(extra="ignore")

    input: float = Field(ge=0, description="USD per 1M input tokens")
    output: float = Field(ge=0, description="USD per 1M output tokens")


class ResponseOptions(BaseModel):
    """Response formatting flags chosen by the caller."""
    model_config = ConfigDict(
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    citations: bool = Field(
        default=False,
        description="Consolidate search citations into a numbered Sources section"
    )
    json_content: bool = Field(
        default=False,
        description="Content is expected to be a JSON document"
    )
    include_wrapper: bool = Field(
        default=False,
        description="Attach the (stripped, bounded) upstream response"
    )
    include_thinking: bool = Field(
        default=False,
        description="Include the reasoning trace when the model produced one"
    )


class Submission(BaseModel):
    """Request body for POST /api/requests."""
    model_config = ConfigDict(
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str = Field(min_length=1, max_length=200, description="Caller-chosen unique id")
    callback_url: AnyHttpUrl = Field(description="Webhook receiving completion notices")
    callback_token: str = Field(min_length=1, description="Bearer token for the webhook")
    request: dict[str, Any] = Field(description="Outbound Messages API request body")
    model_pricing: Optional[ModelPricing] = None
    response_options: ResponseOptions = Field(default_factory=ResponseOptions)

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the immutable payload stored on the job."""
        return self.model_dump(mode="json")


class ProcessRequest(BaseModel):
    """Request body for the processing trigger."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
