"""
approval_maintenance.py

Recurring sweep over approval requests and the quota usage log:
expire (or auto-approve) pending requests past expires_at, purge resolved
requests past the cleanup window, purge usage rows past retention.
A run that starts while another is in progress is skipped.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from watchroute.core.config import settings as default_settings
from watchroute.domain import STATUS_EXPIRED
from watchroute.services.approval import ApprovalGate
from watchroute.services.errors import InvalidApprovalTransition
from watchroute.utils.timezone import utc_now

logger = logging.getLogger(__name__)

ACTION_EXPIRE = "expire"
ACTION_AUTO_APPROVE = "auto_approve"


class MaintenanceSweep:
    def __init__(self, store, gate: ApprovalGate, config=None):
        self.store = store
        self.gate = gate
        self.config = config or default_settings
        self.in_progress = False
        self.last_result: Optional[Dict[str, Any]] = None

    async def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        if self.in_progress:
            logger.info("[ApprovalMaintenance] Previous sweep still running, skipping")
            return {"skipped": True}

        self.in_progress = True
        try:
            now = now or utc_now()
            result = {"skipped": False, "expired": 0, "auto_approved": 0, "purged_requests": 0, "purged_usage": 0}

            action = self.config.approval_expiration_action
            for request in self.store.find_expired_pending(now):
                try:
                    if action == ACTION_AUTO_APPROVE:
                        await self.gate.auto_approve(request.id, reason="Auto-approved after expiration")
                        result["auto_approved"] += 1
                    else:
                        updated = self.store.transition_request(
                            request.id, STATUS_EXPIRED, reason="Expired without a decision", now=now
                        )
                        await self.gate.notify_request("approval.expired", updated)
                        result["expired"] += 1
                except InvalidApprovalTransition as e:
                    # Resolved by an approver between the query and the update
                    logger.info(f"[ApprovalMaintenance] Skipping request {request.id}: {e}")

            result["purged_requests"] = self.store.purge_resolved(
                now - timedelta(days=self.config.approval_cleanup_days)
            )
            result["purged_usage"] = self.store.purge_usage(
                now - timedelta(days=self.config.quota_usage_retention_days)
            )

            logger.info(
                f"[ApprovalMaintenance] Sweep done: {result['expired']} expired, {result['auto_approved']} auto-approved, "
                f"{result['purged_requests']} requests and {result['purged_usage']} usage rows purged"
            )
            self.last_result = result
            return result
        finally:
            self.in_progress = False
