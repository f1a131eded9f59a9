"""Relay models package.

Note: keep these models as the source-of-truth schemas for the HTTP surface
and the stored job documents.
"""

from .normalized import (
    CostBreakdown,
    NormalizedResponse,
    SourceCitation,
    UsageStats,
)
from .relay_job import (
    MAX_DELIVERY_RETRIES,
    TERMINAL_STATUSES,
    DeliveryAttempt,
    RelayJob,
    RelayJobStatus,
    ensure_tz_aware,
)
from .submission import (
    ModelPricing,
    ProcessRequest,
    ResponseOptions,
    Submission,
)

__all__ = [
    "CostBreakdown",
    "NormalizedResponse",
    "SourceCitation",
    "UsageStats",
    "MAX_DELIVERY_RETRIES",
    "TERMINAL_STATUSES",
    "DeliveryAttempt",
    "RelayJob",
    "RelayJobStatus",
    "ensure_tz_aware",
    "ModelPricing",
    "ProcessRequest",
    "ResponseOptions",
    "Submission",
]
