"""Webhook delivery of completion notices.

The notice carries only the job id and status; the caller pulls the result
through the status endpoint. Delivery is best-effort: failures are logged
and recorded on the job, and the reconciliation monitor re-pushes notices
whose result was never fetched.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from llm_relay import __version__
from llm_relay.models import DeliveryAttempt, RelayJob

from .job_store import BaseJobStore, get_job_store
from .rate_limit import BaseRateLimiter, get_rate_limiter, rate_limit_key

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))

USER_AGENT = f"llm-relay/{__version__}"


class DeliveryError(Exception):
    """A webhook push was rejected or could not be sent."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class DeliveryResult:
    """Outcome of one webhook push."""

    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    waited_seconds: float = 0.0


def build_notice(job: RelayJob, is_retry: bool = False) -> dict[str, Any]:
    """Body of the completion notice."""
    notice: dict[str, Any] = {"id": job.job_id, "status": job.status.value}
    if is_retry:
        notice["is_retry"] = True
        notice["retry_count"] = job.delivery_retry_count
    return notice


class WebhookDeliverer:
    """Posts completion notices to callers' webhooks.

    Usage:
        deliverer = WebhookDeliverer()
        result = await deliverer.deliver(job)
    """

    def __init__(
        self,
        rate_limiter: Optional[BaseRateLimiter] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        store: Optional[BaseJobStore] = None,
    ):
        """Initialize deliverer.

        Args:
            rate_limiter: Per-domain limiter (default: module singleton).
            timeout: Request timeout in seconds.
            transport: Custom httpx transport (tests use MockTransport).
            store: Job store for the delivery log (default: module singleton).
        """
        self._rate_limiter = rate_limiter
        self._timeout = WEBHOOK_TIMEOUT_SECONDS if timeout is None else timeout
        self._transport = transport
        self._store = store

    @property
    def rate_limiter(self) -> BaseRateLimiter:
        return self._rate_limiter or get_rate_limiter()

    @property
    def store(self) -> BaseJobStore:
        return self._store or get_job_store()

    async def _send(self, url: str, token: Optional[str], notice: dict[str, Any]) -> int:
        headers = {"User-Agent": USER_AGENT}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.post(url, json=notice, headers=headers)
            except httpx.HTTPError as e:
                raise DeliveryError(f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise DeliveryError(
                f"Webhook returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.status_code

    async def deliver(self, job: RelayJob, is_retry: bool = False) -> DeliveryResult:
        """Push the completion notice for a job. Never raises DeliveryError."""
        url = job.callback_url
        if not url:
            logger.warning(f"Job {job.job_id} has no callback URL; skipping webhook")
            return DeliveryResult(success=False, error="No callback URL")

        waited = await self.rate_limiter.acquire(rate_limit_key(url))
        notice = build_notice(job, is_retry=is_retry)

        try:
            status_code = await self._send(url, job.callback_token, notice)
            result = DeliveryResult(success=True, status_code=status_code, waited_seconds=waited)
            logger.info(
                f"Webhook delivered for job {job.job_id}",
                extra={"job_id": job.job_id, "is_retry": is_retry, "status_code": status_code},
            )
        except DeliveryError as e:
            result = DeliveryResult(
                success=False,
                status_code=e.status_code,
                error=str(e),
                waited_seconds=waited,
            )
            logger.warning(
                f"Webhook delivery failed for job {job.job_id}: {e}",
                extra={"job_id": job.job_id, "is_retry": is_retry, "status_code": e.status_code},
            )

        await self.store.append_delivery_attempt(
            job.job_id,
            DeliveryAttempt(
                is_retry=is_retry,
                success=result.success,
                status_code=result.status_code,
                error=result.error,
            ),
        )
        return result


# Module-level singleton instance
_deliverer: Optional[WebhookDeliverer] = None


def get_deliverer() -> WebhookDeliverer:
    """Get the default webhook deliverer singleton."""
    global _deliverer
    if _deliverer is None:
        _deliverer = WebhookDeliverer()
    return _deliverer


def set_deliverer(deliverer: Optional[WebhookDeliverer]) -> None:
    """Set the webhook deliverer instance (for testing)."""
    global _deliverer
    _deliverer = deliverer
