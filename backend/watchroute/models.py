"""
models.py

SQLAlchemy models for users, quotas, watchlist feeds, router rules, Sonarr/Radarr
instances, quota usage rows and approval requests.
"""
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, Text, JSON, UniqueConstraint, Index, text
from sqlalchemy.orm import declarative_base, relationship
from watchroute.utils.timezone import utc_now

Base = declarative_base()


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    can_sync = Column(Boolean, default=True, nullable=False)
    requires_approval = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    quotas = relationship("UserQuota", back_populates="user", cascade="all, delete-orphan")


class UserQuota(Base):
    __tablename__ = "user_quotas"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    content_type = Column(String, nullable=False)  # 'movie' or 'show'
    quota_type = Column(String, nullable=False)  # daily | weekly_rolling | monthly
    quota_limit = Column(Integer, nullable=False, default=0)  # <= 0 means unlimited
    bypass_approval = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    user = relationship("User", back_populates="quotas")

    __table_args__ = (UniqueConstraint("user_id", "content_type", name="uq_user_quota_content"),)


class WatchlistFeed(Base):
    __tablename__ = "watchlist_feeds"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    source = Column(String, nullable=False, default="plex")
    url = Column(String, nullable=False)
    token = Column(String, nullable=True)
    enabled = Column(Boolean, default=True, nullable=False)

    __table_args__ = (UniqueConstraint("source", "user_id", name="uq_watchlist_feed_source_user"),)


class ArrInstance(Base):
    __tablename__ = "arr_instances"
    id = Column(Integer, primary_key=True)
    instance_type = Column(String, nullable=False, index=True)  # 'sonarr' or 'radarr'
    name = Column(String, nullable=False)
    base_url = Column(String, nullable=False)
    api_key = Column(String, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    quality_profile = Column(String, nullable=True)
    root_folder = Column(String, nullable=True)
    tags = Column(JSON, nullable=True)
    enabled = Column(Boolean, default=True, nullable=False)


class RouterRule(Base):
    __tablename__ = "router_rules"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    kind = Column(String, nullable=False, index=True)  # genre | user | guid | year | content_type | conditional
    criteria = Column(JSON, nullable=False, default=dict)
    target_type = Column(String, nullable=False)  # 'sonarr' or 'radarr'
    target_instance_id = Column(Integer, ForeignKey("arr_instances.id"), nullable=False)
    content_type = Column(String, nullable=True)
    root_folder = Column(String, nullable=True)
    quality_profile = Column(String, nullable=True)
    tags = Column(JSON, nullable=True)
    order = Column(Integer, nullable=False, default=50)  # priority, also the decision weight
    enabled = Column(Boolean, default=True, nullable=False)
    always_require_approval = Column(Boolean, default=False, nullable=False)
    bypass_user_quotas = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class QuotaUsage(Base):
    """Append-only request log; rolling counts are derived from it, never stored."""
    __tablename__ = "quota_usage"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    content_type = Column(String, nullable=False)
    request_date = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (Index("ix_quota_usage_user_type_date", "user_id", "content_type", "request_date"),)


class ApprovalRequest(Base):
    __tablename__ = "approval_requests"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    content_key = Column(String, nullable=False)
    content_type = Column(String, nullable=False)
    content_title = Column(String, nullable=False)
    content_guids = Column(JSON, nullable=True)
    router_decision = Column(JSON, nullable=False)  # snapshot of the candidate decisions
    triggered_by = Column(String, nullable=False)
    approval_reason = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # At most one pending request per user/content
        Index(
            "uq_approval_pending_user_content",
            "user_id",
            "content_key",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )
