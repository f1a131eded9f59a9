"""Reconciliation trigger for external schedulers."""

from fastapi import APIRouter

from llm_relay.api.response import success_response
from llm_relay.services.reconciler import run_reconciliation

router = APIRouter(tags=["Reconciliation"])


@router.post("/reconcile")
async def reconcile() -> dict:
    """Run one reconciliation sweep and return its summary."""
    summary = await run_reconciliation()
    return success_response(summary.model_dump(mode="json"))
