"""
approval.py

Quota/approval gate. Every (decisions, user, item) triple ends in exactly one
outcome: dispatch now, or a pending ApprovalRequest. Checks run in order:

  1. a matched rule with always_require_approval  -> router_rule
  2. the user is flagged requires_approval         -> manual_flag
  3. the content type quota is reached             -> quota_exceeded
     (skipped when a rule bypasses quotas or the quota bypasses approval)
  4. otherwise dispatch and append a usage row

Only PersistenceError escapes; the duplicate-pending case returns the
existing request.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from watchroute.core.config import settings as default_settings
from watchroute.domain import (
    STATUS_APPROVED,
    STATUS_AUTO_APPROVED,
    STATUS_REJECTED,
    TRIGGER_CONTENT_CRITERIA,
    TRIGGER_MANUAL_FLAG,
    TRIGGER_QUOTA_EXCEEDED,
    TRIGGER_ROUTER_RULE,
    ApprovalRequest,
    RoutingDecision,
    UserInfo,
    WatchlistItem,
)
from watchroute.services.errors import DuplicateApprovalRequest
from watchroute.services.quota import QuotaService
from watchroute.utils.timezone import utc_now

logger = logging.getLogger(__name__)

Dispatcher = Callable[[WatchlistItem, RoutingDecision], Awaitable[bool]]


@dataclass
class GateResult:
    dispatch_now: List[RoutingDecision] = field(default_factory=list)
    approval_created: Optional[ApprovalRequest] = None
    # False when an existing pending request was returned
    created: bool = False

    @property
    def requires_approval(self) -> bool:
        return self.approval_created is not None


def item_from_request(request: ApprovalRequest) -> WatchlistItem:
    return WatchlistItem(
        title=request.content_title,
        content_type=request.content_type,
        external_ids=frozenset(request.content_guids),
        owner_user_id=request.user_id,
        plex_key=request.content_key,
    )


class ApprovalGate:
    def __init__(self, store, quota_service: Optional[QuotaService] = None, dispatcher: Optional[Dispatcher] = None,
                 notifier=None, config=None):
        self.store = store
        self.quota = quota_service or QuotaService(store)
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.config = config or default_settings

    def expiration_for(self, trigger: str, now: datetime) -> Optional[datetime]:
        if not self.config.approval_expiration_enabled:
            return None
        overrides = {
            TRIGGER_QUOTA_EXCEEDED: self.config.approval_quota_exceeded_expiration_hours,
            TRIGGER_ROUTER_RULE: self.config.approval_router_rule_expiration_hours,
            TRIGGER_MANUAL_FLAG: self.config.approval_manual_flag_expiration_hours,
            TRIGGER_CONTENT_CRITERIA: self.config.approval_content_criteria_expiration_hours,
        }
        hours = overrides.get(trigger)
        if hours is None:
            hours = self.config.approval_default_expiration_hours
        return now + timedelta(hours=hours)

    async def gate(self, decisions: List[RoutingDecision], user: UserInfo, item: WatchlistItem,
                   now: Optional[datetime] = None) -> GateResult:
        now = now or utc_now()

        required = [d for d in decisions if d.always_require_approval]
        if required:
            names = ", ".join(sorted({d.rule_name or str(d.rule_id) for d in required}))
            return await self._require(decisions, user, item, TRIGGER_ROUTER_RULE,
                                       f"Router rule requires approval: {names}", now)

        if user.requires_approval:
            return await self._require(decisions, user, item, TRIGGER_MANUAL_FLAG,
                                       f"User {user.name or user.id} requires approval for all content", now)

        quota = user.quota_for(item.content_type)
        if quota is not None and not quota.unlimited:
            bypass = quota.bypass_approval or any(d.bypass_user_quotas for d in decisions)
            if bypass:
                logger.debug(f"[ApprovalGate] Quota bypassed for user {user.id} on '{item.title}'")
            elif self.quota.is_exceeded(user.id, item.content_type, quota, now):
                return await self._require(
                    decisions, user, item, TRIGGER_QUOTA_EXCEEDED,
                    f"{quota.quota_type} {item.content_type} quota of {quota.quota_limit} reached",
                    now,
                )

        if decisions:
            self.quota.record_usage(user.id, item.content_type, now)
        return GateResult(dispatch_now=list(decisions))

    async def _require(self, decisions, user, item, trigger, reason, now) -> GateResult:
        try:
            request = self.store.create_approval_request(
                user.id,
                item,
                decisions,
                triggered_by=trigger,
                reason=reason,
                expires_at=self.expiration_for(trigger, now),
            )
        except DuplicateApprovalRequest as e:
            logger.info(f"[ApprovalGate] Pending approval request {e.existing.id} already exists for '{item.title}'")
            return GateResult(approval_created=e.existing, created=False)

        logger.info(f"[ApprovalGate] Approval request {request.id} created for '{item.title}' ({trigger})")
        await self.notify_request("approval.created", request)
        return GateResult(approval_created=request, created=True)

    async def notify_request(self, event: str, request: ApprovalRequest) -> None:
        if self.notifier is None:
            return
        await self.notifier.notify(event, {
            "request_id": request.id,
            "user_id": request.user_id,
            "content_key": request.content_key,
            "title": request.content_title,
            "content_type": request.content_type,
            "triggered_by": request.triggered_by,
            "status": request.status,
        })

    async def approve(self, request_id: int, reason: Optional[str] = None) -> ApprovalRequest:
        request = self.store.transition_request(request_id, STATUS_APPROVED, reason=reason)
        await self.notify_request("approval.approved", request)
        await self.process_approved(request)
        return request

    async def reject(self, request_id: int, reason: Optional[str] = None) -> ApprovalRequest:
        request = self.store.transition_request(request_id, STATUS_REJECTED, reason=reason)
        await self.notify_request("approval.rejected", request)
        return request

    async def auto_approve(self, request_id: int, reason: Optional[str] = None) -> ApprovalRequest:
        request = self.store.transition_request(request_id, STATUS_AUTO_APPROVED, reason=reason)
        await self.notify_request("approval.auto_approved", request)
        await self.process_approved(request)
        return request

    async def process_approved(self, request: ApprovalRequest) -> int:
        """Dispatch the stored decisions of an approved request, then log usage.

        Returns the number of successful dispatches.
        """
        if request.status not in (STATUS_APPROVED, STATUS_AUTO_APPROVED):
            logger.warning(f"[ApprovalGate] Request {request.id} is {request.status}, not dispatching")
            return 0
        if self.dispatcher is None:
            logger.warning(f"[ApprovalGate] No dispatcher configured, request {request.id} left for manual routing")
            return 0

        item = item_from_request(request)
        dispatched = 0
        for decision in request.decisions:
            try:
                if await self.dispatcher(item, decision):
                    dispatched += 1
            except Exception as e:
                logger.error(
                    f"[ApprovalGate] Dispatch of request {request.id} to instance {decision.instance_id} failed: {e}",
                    exc_info=True,
                )
        if dispatched:
            self.quota.record_usage(request.user_id, request.content_type)
        logger.info(f"[ApprovalGate] Request {request.id} processed: {dispatched}/{len(request.decisions)} dispatched")
        return dispatched
