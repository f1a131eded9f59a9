"""Token cost computation for completed requests."""

from __future__ import annotations

from typing import Optional

from llm_relay.models import CostBreakdown, ModelPricing, UsageStats

COST_DECIMALS = 6
TOKENS_PER_UNIT = 1_000_000


def compute_cost(
    usage: Optional[UsageStats],
    pricing: Optional[ModelPricing],
) -> Optional[CostBreakdown]:
    """Cost in USD from token usage and per-1M-token prices.

    Returns None unless both usage and pricing are present.
    """
    if usage is None or pricing is None:
        return None

    input_cost = (usage.input_tokens / TOKENS_PER_UNIT) * pricing.input
    output_cost = (usage.output_tokens / TOKENS_PER_UNIT) * pricing.output

    return CostBreakdown(
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        input_cost=round(input_cost, COST_DECIMALS),
        output_cost=round(output_cost, COST_DECIMALS),
        total_cost=round(input_cost + output_cost, COST_DECIMALS),
    )
