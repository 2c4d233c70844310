"""Shared builders and fakes for the unit tests."""
from types import SimpleNamespace

from sqlalchemy.orm import sessionmaker

from watchroute import models
from watchroute.core.database import build_engine, create_schema
from watchroute.services.feed_client import FetchResult
from watchroute.services.store import SqlStore


def make_store():
    engine = build_engine("sqlite://")
    create_schema(engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    return SqlStore(factory), factory


def seed_user(factory, name="alice", requires_approval=False, can_sync=True, quotas=()):
    """quotas: iterable of (content_type, quota_type, limit, bypass_approval)."""
    db = factory()
    try:
        user = models.User(name=name, requires_approval=requires_approval, can_sync=can_sync)
        for content_type, quota_type, limit, bypass in quotas:
            user.quotas.append(models.UserQuota(
                content_type=content_type, quota_type=quota_type, quota_limit=limit, bypass_approval=bypass,
            ))
        db.add(user)
        db.commit()
        return user.id
    finally:
        db.close()


def seed_instance(factory, instance_type="radarr", name="radarr-main", is_default=True,
                  base_url="http://radarr:7878", root_folder="/movies", quality_profile="HD-1080p"):
    db = factory()
    try:
        inst = models.ArrInstance(
            instance_type=instance_type, name=name, base_url=base_url, api_key="key",
            is_default=is_default, root_folder=root_folder, quality_profile=quality_profile, tags=[],
        )
        db.add(inst)
        db.commit()
        return inst.id
    finally:
        db.close()


def seed_rule(factory, **kwargs):
    db = factory()
    try:
        rule = models.RouterRule(**kwargs)
        db.add(rule)
        db.commit()
        return rule.id
    finally:
        db.close()


def seed_feed(factory, user_id, url="http://plex/watchlist", source="plex"):
    db = factory()
    try:
        feed = models.WatchlistFeed(user_id=user_id, url=url, source=source)
        db.add(feed)
        db.commit()
        return feed.id
    finally:
        db.close()


def workflow_config(**overrides):
    values = dict(
        feed_prime_baseline=False,
        deferred_drain_interval=120,
        deferred_retry_ceiling=3,
        approval_maintenance_interval=14400,
        approval_maintenance_in_process=True,
        approval_expiration_enabled=False,
        approval_default_expiration_hours=72,
        approval_quota_exceeded_expiration_hours=None,
        approval_router_rule_expiration_hours=None,
        approval_manual_flag_expiration_hours=None,
        approval_content_criteria_expiration_hours=None,
        approval_expiration_action="expire",
        approval_cleanup_days=30,
        quota_usage_retention_days=90,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def count_rows(factory, model, **filters):
    db = factory()
    try:
        q = db.query(model)
        for attr, value in filters.items():
            q = q.filter(getattr(model, attr) == value)
        return q.count()
    finally:
        db.close()


class FakeNotifier:
    def __init__(self):
        self.events = []

    async def notify(self, event, payload):
        self.events.append((event, payload))

    def names(self):
        return [e for e, _ in self.events]


class FakeMetrics:
    def __init__(self):
        self.counters = {}
        self.timings = []

    async def increment(self, name, amount=1):
        self.counters[name] = self.counters.get(name, 0) + amount

    async def timing(self, name, milliseconds):
        self.timings.append((name, milliseconds))


class FakeArr:
    def __init__(self, unavailable=()):
        self.unavailable = set(unavailable)
        self.routed = []
        self.health_calls = 0
        self.fail_instances = set()

    async def check_instances_health(self, instance_ids=None):
        self.health_calls += 1
        ids = set(instance_ids) if instance_ids is not None else set(self.unavailable)
        down = sorted(ids & self.unavailable)
        return {"available": sorted(ids - self.unavailable), "unavailable": down}

    async def route_item(self, item, decision):
        from watchroute.services.errors import ArrAPIError
        if decision.instance_id in self.fail_instances:
            raise ArrAPIError(f"instance {decision.instance_id} rejected the add")
        self.routed.append((item.key, decision.instance_id))
        return True


class FakeFeedClient:
    """Returns queued FetchResults (or raises queued exceptions) in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.tokens = []

    async def fetch(self, feed, freshness_token=None):
        self.tokens.append(freshness_token)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def changed(token, *items):
    return FetchResult(unchanged=False, freshness_token=token, items=list(items))


def unchanged(token):
    return FetchResult(unchanged=True, freshness_token=token)
