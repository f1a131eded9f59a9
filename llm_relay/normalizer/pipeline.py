"""Response normalization pipeline.

strip, parse, citations, bounding, shape, cost. Each stage is a pure
function; the submission's response options select which stages run.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from llm_relay.models import (
    ModelPricing,
    NormalizedResponse,
    ResponseOptions,
    SourceCitation,
    UsageStats,
)

from .blocks import ThinkingBlock, parse_blocks
from .bounding import MAX_FIELD_CHARS, bound_optional, bound_raw, bound_text, parse_structured
from .citations import consolidate, plain_text
from .pricing import compute_cost
from .stripping import strip_sensitive

logger = logging.getLogger(__name__)


def _thinking_text(blocks: list) -> Optional[str]:
    parts = [b.thinking for b in blocks if isinstance(b, ThinkingBlock) and b.thinking]
    if not parts:
        return None
    return "\n\n".join(parts)


def _bound_citations(
    citations: list[SourceCitation],
    limit: int,
) -> tuple[list[SourceCitation], bool]:
    bounded = []
    cut = False
    for citation in citations:
        title, title_cut = bound_optional(citation.title, limit)
        cited_text, text_cut = bound_optional(citation.cited_text, limit)
        bounded.append(citation.model_copy(update={"title": title, "cited_text": cited_text}))
        cut = cut or title_cut or text_cut
    return bounded, cut


def _usage(raw: dict[str, Any]) -> Optional[UsageStats]:
    usage = raw.get("usage")
    if not isinstance(usage, dict):
        return None
    return UsageStats.model_validate(usage)


def normalize_response(
    raw: dict[str, Any],
    options: Optional[ResponseOptions] = None,
    pricing: Optional[ModelPricing] = None,
    max_field_chars: int = MAX_FIELD_CHARS,
) -> NormalizedResponse:
    """Turn a raw Messages API response into the stored result shape.

    Args:
        raw: Response body as returned by the provider.
        options: Formatting flags from the submission.
        pricing: Per-1M-token prices for cost computation.
        max_field_chars: Cap for every text field.

    Returns:
        A NormalizedResponse. Deterministic for identical inputs.
    """
    options = options or ResponseOptions()
    if not isinstance(raw, dict):
        raw = {}

    stripped = strip_sensitive(raw)
    blocks = parse_blocks(stripped.get("content"))

    # Citations
    citations: list[SourceCitation] = []
    if options.citations:
        content, citations = consolidate(blocks, append_sources=not options.json_content)
    else:
        content = plain_text(blocks)

    # Structured content
    parsed_content: Any = None
    structured_valid: Optional[bool] = None
    content_exempt = False
    if options.json_content:
        structured_valid, parsed_content = parse_structured(content)
        if structured_valid:
            content_exempt = True
        else:
            logger.info("Structured content requested but response is not valid JSON; returning raw text")

    # Bounding
    truncated = False
    if not content_exempt:
        content, truncated = bound_text(content, max_field_chars)

    thinking = _thinking_text(blocks) if options.include_thinking else None
    thinking, thinking_cut = bound_optional(thinking, max_field_chars)
    citations, citations_cut = _bound_citations(citations, max_field_chars)
    truncated = truncated or thinking_cut or citations_cut

    wrapper = None
    if options.include_wrapper:
        wrapper, wrapper_cut = bound_raw(stripped, max_field_chars)
        truncated = truncated or wrapper_cut

    usage = _usage(stripped)

    return NormalizedResponse(
        request_id=stripped.get("id") if isinstance(stripped.get("id"), str) else None,
        model=stripped.get("model") if isinstance(stripped.get("model"), str) else None,
        stop_reason=stripped.get("stop_reason") if isinstance(stripped.get("stop_reason"), str) else None,
        content=content,
        thinking=thinking,
        citations=citations,
        parsed_content=parsed_content,
        structured_content_valid=structured_valid,
        usage=usage,
        cost=compute_cost(usage, pricing),
        truncated=truncated,
        raw=wrapper,
    )
