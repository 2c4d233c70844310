"""
store.py

SQLAlchemy-backed persistence for the routing pipeline. Reads users, feeds,
router rules and Sonarr/Radarr instances; appends quota usage rows; owns the
approval request lifecycle. Every database failure surfaces as PersistenceError.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from watchroute.core.database import get_session_factory
from watchroute.domain import (
    STATUS_PENDING,
    TERMINAL_STATUSES,
    ApprovalRequest,
    FeedRef,
    InstanceInfo,
    QuotaConfig,
    RoutingDecision,
    RoutingRule,
    UserInfo,
    WatchlistItem,
)
from watchroute import models
from watchroute.services.errors import DuplicateApprovalRequest, InvalidApprovalTransition, PersistenceError
from watchroute.utils.timezone import ensure_utc, utc_now

logger = logging.getLogger(__name__)


def _user_to_domain(user: models.User) -> UserInfo:
    quotas = {
        q.content_type: QuotaConfig(
            quota_type=q.quota_type,
            quota_limit=q.quota_limit or 0,
            bypass_approval=bool(q.bypass_approval),
        )
        for q in user.quotas
    }
    return UserInfo(
        id=user.id,
        name=user.name,
        can_sync=bool(user.can_sync),
        requires_approval=bool(user.requires_approval),
        quotas=quotas,
    )


def _rule_to_domain(rule: models.RouterRule) -> RoutingRule:
    return RoutingRule(
        id=rule.id,
        kind=rule.kind,
        target_type=rule.target_type,
        target_instance_id=rule.target_instance_id,
        name=rule.name,
        criteria=dict(rule.criteria or {}),
        root_folder=rule.root_folder,
        quality_profile=rule.quality_profile,
        order=rule.order if rule.order is not None else 50,
        enabled=bool(rule.enabled),
        tags=tuple(rule.tags or ()),
        always_require_approval=bool(rule.always_require_approval),
        bypass_user_quotas=bool(rule.bypass_user_quotas),
        content_type=rule.content_type,
    )


def _instance_to_domain(inst: models.ArrInstance) -> InstanceInfo:
    return InstanceInfo(
        id=inst.id,
        instance_type=inst.instance_type,
        name=inst.name,
        base_url=inst.base_url,
        api_key=inst.api_key,
        is_default=bool(inst.is_default),
        quality_profile=inst.quality_profile,
        root_folder=inst.root_folder,
        tags=tuple(inst.tags or ()),
        enabled=bool(inst.enabled),
    )


def _request_to_domain(req: models.ApprovalRequest) -> ApprovalRequest:
    return ApprovalRequest(
        id=req.id,
        user_id=req.user_id,
        content_key=req.content_key,
        content_type=req.content_type,
        content_title=req.content_title,
        triggered_by=req.triggered_by,
        status=req.status,
        router_decision=list(req.router_decision or []),
        content_guids=tuple(req.content_guids or ()),
        approval_reason=req.approval_reason,
        expires_at=ensure_utc(req.expires_at),
        created_at=ensure_utc(req.created_at),
        updated_at=ensure_utc(req.updated_at),
        resolved_at=ensure_utc(req.resolved_at),
    )


class SqlStore:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        factory = self._session_factory or get_session_factory()
        db = factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[Store] Database error: {e}")
            raise PersistenceError(str(e)) from e
        finally:
            db.close()

    # --- read side -------------------------------------------------------

    def get_user(self, user_id: int) -> Optional[UserInfo]:
        with self._session() as db:
            user = db.query(models.User).filter(models.User.id == user_id).first()
            return _user_to_domain(user) if user else None

    def list_feeds(self, enabled_only: bool = True) -> List[FeedRef]:
        with self._session() as db:
            q = db.query(models.WatchlistFeed)
            if enabled_only:
                q = q.filter(models.WatchlistFeed.enabled == True)  # noqa: E712
            return [
                FeedRef(source=f.source, user_id=f.user_id, url=f.url, token=f.token)
                for f in q.order_by(models.WatchlistFeed.id).all()
            ]

    def get_router_rules(self, enabled_only: bool = True) -> List[RoutingRule]:
        with self._session() as db:
            q = db.query(models.RouterRule)
            if enabled_only:
                q = q.filter(models.RouterRule.enabled == True)  # noqa: E712
            return [_rule_to_domain(r) for r in q.order_by(models.RouterRule.id).all()]

    def list_instances(self, enabled_only: bool = True) -> List[InstanceInfo]:
        with self._session() as db:
            q = db.query(models.ArrInstance)
            if enabled_only:
                q = q.filter(models.ArrInstance.enabled == True)  # noqa: E712
            return [_instance_to_domain(i) for i in q.order_by(models.ArrInstance.id).all()]

    # --- quota usage -----------------------------------------------------

    def record_usage(self, user_id: int, content_type: str, when: Optional[datetime] = None) -> None:
        with self._session() as db:
            db.add(models.QuotaUsage(user_id=user_id, content_type=content_type, request_date=when or utc_now()))
            db.commit()

    def count_usage(self, user_id: int, content_type: str, since: datetime, until: Optional[datetime] = None) -> int:
        with self._session() as db:
            q = db.query(func.count(models.QuotaUsage.id)).filter(
                models.QuotaUsage.user_id == user_id,
                models.QuotaUsage.content_type == content_type,
                models.QuotaUsage.request_date >= since,
            )
            if until is not None:
                q = q.filter(models.QuotaUsage.request_date <= until)
            return int(q.scalar() or 0)

    def purge_usage(self, older_than: datetime) -> int:
        with self._session() as db:
            deleted = db.query(models.QuotaUsage).filter(
                models.QuotaUsage.request_date < older_than
            ).delete(synchronize_session=False)
            db.commit()
            return int(deleted or 0)

    # --- approval requests -----------------------------------------------

    def get_pending_request(self, user_id: int, content_key: str) -> Optional[ApprovalRequest]:
        with self._session() as db:
            req = db.query(models.ApprovalRequest).filter(
                models.ApprovalRequest.user_id == user_id,
                models.ApprovalRequest.content_key == content_key,
                models.ApprovalRequest.status == STATUS_PENDING,
            ).first()
            return _request_to_domain(req) if req else None

    def get_approval_request(self, request_id: int) -> Optional[ApprovalRequest]:
        with self._session() as db:
            req = db.query(models.ApprovalRequest).filter(models.ApprovalRequest.id == request_id).first()
            return _request_to_domain(req) if req else None

    def create_approval_request(
        self,
        user_id: int,
        item: WatchlistItem,
        decisions: Iterable[RoutingDecision],
        triggered_by: str,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> ApprovalRequest:
        """Insert a pending request.

        Raises DuplicateApprovalRequest carrying the existing row when a pending
        request for the same user and content key is already stored.
        """
        existing = self.get_pending_request(user_id, item.key)
        if existing is not None:
            raise DuplicateApprovalRequest(existing)

        factory = self._session_factory or get_session_factory()
        db = factory()
        try:
            req = models.ApprovalRequest(
                user_id=user_id,
                content_key=item.key,
                content_type=item.content_type,
                content_title=item.title,
                content_guids=sorted(item.external_ids),
                router_decision=[d.to_dict() for d in decisions],
                triggered_by=triggered_by,
                approval_reason=reason,
                status=STATUS_PENDING,
                expires_at=expires_at,
            )
            db.add(req)
            db.commit()
            db.refresh(req)
            return _request_to_domain(req)
        except IntegrityError:
            # Lost the race against a concurrent insert
            db.rollback()
            logger.info(f"[Store] Pending approval for user {user_id} / {item.key} created concurrently")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[Store] Failed to create approval request: {e}")
            raise PersistenceError(str(e)) from e
        finally:
            db.close()

        existing = self.get_pending_request(user_id, item.key)
        if existing is None:
            raise PersistenceError(f"Approval insert conflicted but no pending row for user {user_id} / {item.key}")
        raise DuplicateApprovalRequest(existing)

    def transition_request(
        self,
        request_id: int,
        new_status: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalRequest:
        """Move a pending request into a terminal state, exactly once."""
        if new_status not in TERMINAL_STATUSES:
            raise InvalidApprovalTransition(f"Unknown target status: {new_status}")
        now = now or utc_now()
        with self._session() as db:
            values = {"status": new_status, "resolved_at": now, "updated_at": now}
            if reason is not None:
                values["approval_reason"] = reason
            updated = db.query(models.ApprovalRequest).filter(
                models.ApprovalRequest.id == request_id,
                models.ApprovalRequest.status == STATUS_PENDING,
            ).update(values, synchronize_session=False)
            db.commit()

            req = db.query(models.ApprovalRequest).filter(models.ApprovalRequest.id == request_id).first()
            if req is None:
                raise LookupError(f"Approval request {request_id} not found")
            if not updated:
                raise InvalidApprovalTransition(
                    f"Approval request {request_id} is {req.status}, cannot move to {new_status}"
                )
            return _request_to_domain(req)

    def find_expired_pending(self, now: datetime) -> List[ApprovalRequest]:
        with self._session() as db:
            rows = db.query(models.ApprovalRequest).filter(
                models.ApprovalRequest.status == STATUS_PENDING,
                models.ApprovalRequest.expires_at.isnot(None),
                models.ApprovalRequest.expires_at < now,
            ).order_by(models.ApprovalRequest.id).all()
            return [_request_to_domain(r) for r in rows]

    def purge_resolved(self, older_than: datetime) -> int:
        with self._session() as db:
            deleted = db.query(models.ApprovalRequest).filter(
                models.ApprovalRequest.status.in_(TERMINAL_STATUSES),
                models.ApprovalRequest.resolved_at.isnot(None),
                models.ApprovalRequest.resolved_at < older_than,
            ).delete(synchronize_session=False)
            db.commit()
            return int(deleted or 0)

    def count_requests_by_status(self) -> Dict[str, int]:
        with self._session() as db:
            rows = db.query(models.ApprovalRequest.status, func.count(models.ApprovalRequest.id)).group_by(
                models.ApprovalRequest.status
            ).all()
            return {status: int(count) for status, count in rows}
