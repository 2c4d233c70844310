"""
domain.py

Value objects passed between the feed, routing, gate and queue services.
Durable rows live in models.py; these are the in-process shapes.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

MOVIE = "movie"
SHOW = "show"
CONTENT_TYPES = (MOVIE, SHOW)

SONARR = "sonarr"
RADARR = "radarr"

# content type -> manager type that acquires it
MANAGER_FOR_CONTENT = {SHOW: SONARR, MOVIE: RADARR}

QUOTA_DAILY = "daily"
QUOTA_WEEKLY_ROLLING = "weekly_rolling"
QUOTA_MONTHLY = "monthly"

TRIGGER_QUOTA_EXCEEDED = "quota_exceeded"
TRIGGER_ROUTER_RULE = "router_rule"
TRIGGER_MANUAL_FLAG = "manual_flag"
TRIGGER_CONTENT_CRITERIA = "content_criteria"

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_EXPIRED = "expired"
STATUS_AUTO_APPROVED = "auto_approved"
TERMINAL_STATUSES = (STATUS_APPROVED, STATUS_REJECTED, STATUS_EXPIRED, STATUS_AUTO_APPROVED)

DEFERRED_ETAG_CHANGE = "etag-change"
DEFERRED_ITEMS = "items"


def parse_content_type(raw: Optional[str]) -> Optional[str]:
    """Map feed category strings onto movie/show; None when unknown."""
    if not raw:
        return None
    normalized = str(raw).lower().strip()
    if normalized in ("movie", "movies"):
        return MOVIE
    if normalized in ("show", "shows", "tv", "series"):
        return SHOW
    return None


def normalize_guid(guid: str) -> str:
    """Lowercase "imdb://tt123" / "IMDB:tt123" style ids to "imdb:tt123"."""
    value = str(guid).strip()
    if "://" in value:
        prefix, rest = value.split("://", 1)
        value = f"{prefix}:{rest}"
    prefix, sep, rest = value.partition(":")
    if not sep:
        return value.lower()
    return f"{prefix.lower()}:{rest}"


def normalize_genre(genre: str) -> str:
    return " ".join(part.capitalize() for part in str(genre).strip().split())


@dataclass(frozen=True)
class FeedRef:
    source: str
    user_id: int
    url: str
    token: Optional[str] = None

    @property
    def key(self) -> Tuple[str, int]:
        return (self.source, self.user_id)

    def __str__(self) -> str:
        return f"{self.source}:{self.user_id}"


@dataclass(frozen=True)
class WatchlistItem:
    title: str
    content_type: str
    external_ids: FrozenSet[str] = frozenset()
    genres: FrozenSet[str] = frozenset()
    owner_user_id: Optional[int] = None
    plex_key: Optional[str] = None
    year: Optional[int] = None

    @property
    def key(self) -> str:
        """Stable content key: the Plex key when known, else the first GUID."""
        if self.plex_key:
            return self.plex_key
        if self.external_ids:
            return sorted(self.external_ids)[0]
        return f"{self.content_type}:{self.title.lower()}"

    def with_metadata(self, plex_key: Optional[str] = None, genres=None) -> "WatchlistItem":
        return replace(
            self,
            plex_key=plex_key if plex_key is not None else self.plex_key,
            genres=frozenset(genres) if genres is not None else self.genres,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "type": self.content_type,
            "guids": sorted(self.external_ids),
            "genres": sorted(self.genres),
            "user_id": self.owner_user_id,
            "key": self.plex_key,
            "year": self.year,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WatchlistItem":
        return cls(
            title=data["title"],
            content_type=data["type"],
            external_ids=frozenset(data.get("guids") or ()),
            genres=frozenset(data.get("genres") or ()),
            owner_user_id=data.get("user_id"),
            plex_key=data.get("key"),
            year=data.get("year"),
        )


@dataclass(frozen=True)
class ItemRef:
    key: str
    title: str
    content_type: str
    owner_user_id: Optional[int] = None


@dataclass
class FeedDiff:
    added: List[WatchlistItem] = field(default_factory=list)
    removed: List[ItemRef] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.added and not self.removed


@dataclass(frozen=True)
class QuotaConfig:
    quota_type: str
    quota_limit: int
    bypass_approval: bool = False

    @property
    def unlimited(self) -> bool:
        return self.quota_limit <= 0


@dataclass(frozen=True)
class UserInfo:
    id: int
    name: str = ""
    can_sync: bool = True
    requires_approval: bool = False
    quotas: Dict[str, QuotaConfig] = field(default_factory=dict)

    def quota_for(self, content_type: str) -> Optional[QuotaConfig]:
        return self.quotas.get(content_type)


@dataclass(frozen=True)
class RoutingRule:
    id: int
    kind: str
    target_type: str
    target_instance_id: int
    name: str = ""
    criteria: Dict[str, Any] = field(default_factory=dict)
    root_folder: Optional[str] = None
    quality_profile: Optional[str] = None
    order: int = 50
    enabled: bool = True
    tags: Tuple[str, ...] = ()
    always_require_approval: bool = False
    bypass_user_quotas: bool = False
    content_type: Optional[str] = None

    def applies_to(self, content_type: str) -> bool:
        if self.content_type and self.content_type != content_type:
            return False
        return MANAGER_FOR_CONTENT.get(content_type) == self.target_type


@dataclass(frozen=True)
class InstanceInfo:
    id: int
    instance_type: str
    name: str
    base_url: str
    api_key: str
    is_default: bool = False
    quality_profile: Optional[str] = None
    root_folder: Optional[str] = None
    tags: Tuple[str, ...] = ()
    enabled: bool = True


@dataclass(frozen=True)
class RoutingContext:
    user_id: Optional[int] = None
    user_name: Optional[str] = None
    content_type: Optional[str] = None
    item_key: Optional[str] = None


@dataclass(frozen=True)
class RoutingDecision:
    instance_id: int
    instance_type: str
    weight: int = 0
    quality_profile: Optional[str] = None
    root_folder: Optional[str] = None
    tags: Tuple[str, ...] = ()
    rule_id: Optional[int] = None
    rule_name: Optional[str] = None
    evaluator_order: int = 0
    always_require_approval: bool = False
    bypass_user_quotas: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "instance_type": self.instance_type,
            "weight": self.weight,
            "quality_profile": self.quality_profile,
            "root_folder": self.root_folder,
            "tags": list(self.tags),
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "evaluator_order": self.evaluator_order,
            "always_require_approval": self.always_require_approval,
            "bypass_user_quotas": self.bypass_user_quotas,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoutingDecision":
        return cls(
            instance_id=int(data["instance_id"]),
            instance_type=data["instance_type"],
            weight=int(data.get("weight") or 0),
            quality_profile=data.get("quality_profile"),
            root_folder=data.get("root_folder"),
            tags=tuple(data.get("tags") or ()),
            rule_id=data.get("rule_id"),
            rule_name=data.get("rule_name"),
            evaluator_order=int(data.get("evaluator_order") or 0),
            always_require_approval=bool(data.get("always_require_approval")),
            bypass_user_quotas=bool(data.get("bypass_user_quotas")),
        )


@dataclass(frozen=True)
class ApprovalRequest:
    id: int
    user_id: int
    content_key: str
    content_type: str
    content_title: str
    triggered_by: str
    status: str
    router_decision: List[Dict[str, Any]] = field(default_factory=list)
    content_guids: Tuple[str, ...] = ()
    approval_reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @property
    def decisions(self) -> List[RoutingDecision]:
        return [RoutingDecision.from_dict(d) for d in self.router_decision]


@dataclass
class DeferredEntry:
    type: str
    payload: Dict[str, Any]
    attempts: int = 0
