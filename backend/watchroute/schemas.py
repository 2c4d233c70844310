"""
schemas.py

Pydantic response schemas for the workflow status and maintenance endpoints.
"""
from pydantic import BaseModel
from typing import Optional, Dict, Any, List


class FeedStatusSchema(BaseModel):
    feed: str
    consecutive_failures: int
    fallback: bool
    paused_until: float


class DeferredStatusSchema(BaseModel):
    size: int
    dropped: int
    draining: bool


class MaintenanceStatusSchema(BaseModel):
    in_progress: bool
    last_result: Optional[Dict[str, Any]] = None


class WorkflowStatusSchema(BaseModel):
    running: bool
    feeds: List[FeedStatusSchema]
    cache: Dict[str, Dict[str, Any]]
    deferred: DeferredStatusSchema
    maintenance: MaintenanceStatusSchema
    approvals: Dict[str, int] = {}
    counters: Dict[str, int] = {}


class SweepResultSchema(BaseModel):
    skipped: bool
    expired: int = 0
    auto_approved: int = 0
    purged_requests: int = 0
    purged_usage: int = 0


class DrainResultSchema(BaseModel):
    processed: int
    remaining: int
