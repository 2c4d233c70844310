import logging
from fastapi import APIRouter, HTTPException, Request

from watchroute.core import metrics
from watchroute.schemas import WorkflowStatusSchema
from watchroute.services.errors import PersistenceError

router = APIRouter()
logger = logging.getLogger(__name__)


def get_workflow(request: Request):
    workflow = getattr(request.app.state, "workflow", None)
    if workflow is None:
        raise HTTPException(status_code=503, detail="Workflow not started")
    return workflow


@router.get("/workflow", response_model=WorkflowStatusSchema)
async def workflow_status(request: Request):
    """Pollers, cache, deferred queue and maintenance state of the running workflow."""
    workflow = get_workflow(request)
    data = workflow.status()
    try:
        data["approvals"] = workflow.store.count_requests_by_status()
    except PersistenceError as e:
        logger.warning(f"Approval counts unavailable: {e}")
        data["approvals"] = {}
    data["counters"] = await metrics.counters_snapshot()
    return data
