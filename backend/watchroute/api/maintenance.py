"""
maintenance.py

Manual triggers for the approval maintenance sweep and the deferred queue drain.
"""
from fastapi import APIRouter, HTTPException, Request
import logging

from watchroute.api.status import get_workflow
from watchroute.schemas import DrainResultSchema, SweepResultSchema
from watchroute.services.errors import PersistenceError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/approvals/sweep", response_model=SweepResultSchema)
async def run_approval_sweep(request: Request):
    """Expire or auto-approve overdue requests and purge old rows now.

    Returns skipped=true when a sweep is already running.
    """
    workflow = get_workflow(request)
    try:
        return await workflow.run_maintenance()
    except PersistenceError as e:
        logger.error(f"Approval sweep failed: {e}")
        raise HTTPException(status_code=500, detail=f"Approval sweep failed: {e}")


@router.post("/deferred/drain", response_model=DrainResultSchema)
async def drain_deferred_queue(request: Request):
    workflow = get_workflow(request)
    processed = await workflow.drain_deferred()
    return {"processed": len(processed), "remaining": workflow.queue.size}
