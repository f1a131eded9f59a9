"""Relay job model for async LLM requests.

This model tracks a single submission from queueing to terminal resolution,
plus the delivery bookkeeping used by webhook reconciliation.

Pydantic v2. Extra fields are forbidden to prevent drift.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# Reconciliation attempts allowed per job
MAX_DELIVERY_RETRIES = 3


class RelayJobStatus(str, Enum):
    """Status of a relay job."""
    queued = "queued"            # Stored, waiting for a worker
    processing = "processing"    # Worker claimed it, upstream call in flight
    completed = "completed"      # Result stored, webhook sent (best-effort)
    failed = "failed"            # Error stored


TERMINAL_STATUSES = (RelayJobStatus.completed, RelayJobStatus.failed)


def _utcnow() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_tz_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware (assume UTC if naive)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class DeliveryAttempt(BaseModel):
    """One webhook push attempt, kept on the job for observability."""
    model_config = ConfigDict(extra="forbid")

    attempted_at: datetime = Field(default_factory=_utcnow)
    is_retry: bool = False
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class RelayJob(BaseModel):
    """Durable state for one relayed LLM request.

    The job record is the single source of truth: workers, the status
    endpoint and the reconciliation monitor all read and write it through
    the job store's conditional transitions.
    """
    model_config = ConfigDict(extra="forbid")

    # Identity
    job_id: str = Field(description="Caller-supplied unique identifier")

    # Status
    status: RelayJobStatus = Field(
        default=RelayJobStatus.queued,
        description="Current job status"
    )

    # Request
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Complete submission as received (opaque to the relay core)"
    )

    # Outcome
    result: Optional[dict[str, Any]] = Field(
        default=None,
        description="Normalized response (set only when completed)"
    )
    error: Optional[str] = Field(
        default=None,
        description="Error message (set only when failed)"
    )

    # Timestamps
    created_at: datetime = Field(default_factory=_utcnow)
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Processing bookkeeping
    processing_attempts: int = Field(
        default=0,
        ge=0,
        description="Number of times a worker claimed this job"
    )

    # Delivery bookkeeping
    fetched_at: Optional[datetime] = Field(
        default=None,
        description="When the caller confirmed receipt of the result"
    )
    delivery_retry_count: int = Field(
        default=0,
        ge=0,
        le=MAX_DELIVERY_RETRIES,
        description="Reconciliation attempts so far"
    )
    last_delivery_retry_at: Optional[datetime] = None
    delivery_log: list[DeliveryAttempt] = Field(default_factory=list)

    def is_terminal(self) -> bool:
        """Check if job is in a terminal state (no more worker updates)."""
        return self.status in TERMINAL_STATUSES

    def is_stale(self, threshold_seconds: float, now: Optional[datetime] = None) -> bool:
        """Check if a processing job has exceeded the stuck-job threshold."""
        if self.status != RelayJobStatus.processing:
            return False
        started = ensure_tz_aware(self.processing_started_at)
        if started is None:
            return True
        now = now or _utcnow()
        return (now - started).total_seconds() >= threshold_seconds

    def processing_time_seconds(self) -> Optional[int]:
        """Whole seconds from submission to terminal state."""
        if not self.completed_at or not self.created_at:
            return None
        delta = ensure_tz_aware(self.completed_at) - ensure_tz_aware(self.created_at)
        return round(delta.total_seconds())

    @property
    def callback_url(self) -> Optional[str]:
        return self.payload.get("callback_url")

    @property
    def callback_token(self) -> Optional[str]:
        return self.payload.get("callback_token")
