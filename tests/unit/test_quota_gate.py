import asyncio
import unittest
from unittest import mock
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from watchroute import models
from watchroute.domain import QuotaConfig, RoutingDecision, UserInfo, WatchlistItem
from watchroute.services.approval import ApprovalGate
from watchroute.services.errors import DuplicateApprovalRequest, InvalidApprovalTransition
from watchroute.services.quota import QuotaService, window_start

from support import FakeNotifier, count_rows, make_store, seed_user

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


def config(**overrides):
    values = dict(
        approval_expiration_enabled=False,
        approval_default_expiration_hours=72,
        approval_quota_exceeded_expiration_hours=None,
        approval_router_rule_expiration_hours=None,
        approval_manual_flag_expiration_hours=None,
        approval_content_criteria_expiration_hours=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def movie(key="tmdb:348", title="Alien"):
    return WatchlistItem(title=title, content_type="movie", external_ids=frozenset({key}), owner_user_id=1, plex_key=key)


DECISION = RoutingDecision(instance_id=10, instance_type="radarr", weight=50, rule_id=1, rule_name="horror")


class TestQuotaWindows(unittest.TestCase):
    def setUp(self):
        self.store, self.factory = make_store()
        self.user_id = seed_user(self.factory)
        self.quota = QuotaService(self.store)

    def test_rolling_window_counts(self):
        for age in (8, 6, 1):
            self.store.record_usage(self.user_id, "movie", NOW - timedelta(days=age))

        self.assertEqual(self.quota.get_usage(self.user_id, "movie", "weekly_rolling", now=NOW), 2)
        self.assertEqual(self.quota.get_usage(self.user_id, "movie", "daily", now=NOW), 0)

    def test_daily_counts_calendar_day_only(self):
        self.store.record_usage(self.user_id, "movie", datetime(2025, 3, 14, 23, 30, tzinfo=timezone.utc))
        self.store.record_usage(self.user_id, "movie", datetime(2025, 3, 15, 0, 0, tzinfo=timezone.utc))
        self.store.record_usage(self.user_id, "movie", datetime(2025, 3, 15, 8, 0, tzinfo=timezone.utc))

        self.assertEqual(self.quota.get_usage(self.user_id, "movie", "daily", now=NOW), 2)
        self.assertEqual(self.quota.get_usage(self.user_id, "show", "daily", now=NOW), 0)
        self.assertEqual(window_start("daily", NOW), datetime(2025, 3, 15, tzinfo=timezone.utc))

    def test_monthly_uses_calendar_month(self):
        self.store.record_usage(self.user_id, "movie", datetime(2025, 2, 28, 23, 0, tzinfo=timezone.utc))
        self.store.record_usage(self.user_id, "movie", datetime(2025, 3, 1, 0, 30, tzinfo=timezone.utc))
        self.store.record_usage(self.user_id, "movie", datetime(2025, 3, 14, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(self.quota.get_usage(self.user_id, "movie", "monthly", now=NOW), 2)
        self.assertEqual(window_start("monthly", NOW), datetime(2025, 3, 1, tzinfo=timezone.utc))

    def test_unlimited_never_exceeds(self):
        for _ in range(5):
            self.store.record_usage(self.user_id, "movie", NOW - timedelta(hours=1))
        self.assertFalse(self.quota.is_exceeded(self.user_id, "movie", QuotaConfig("daily", 0), now=NOW))
        self.assertTrue(self.quota.is_exceeded(self.user_id, "movie", QuotaConfig("daily", 5), now=NOW))

    def test_unknown_quota_type_rejected(self):
        with self.assertRaises(ValueError):
            window_start("yearly", NOW)


class TestApprovalGate(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store, self.factory = make_store()
        self.notifier = FakeNotifier()
        self.gate = ApprovalGate(self.store, notifier=self.notifier, config=config())

    async def test_gate_with_plain_user_and_no_quota_dispatches(self):
        seed_user(self.factory)
        user = UserInfo(id=1, name="alice")
        result = await self.gate.gate([DECISION], user, movie())
        self.assertEqual(result.dispatch_now, [DECISION])
        self.assertEqual(count_rows(self.factory, models.QuotaUsage), 1)

    async def test_daily_quota_scenario(self):
        user_id = seed_user(self.factory, quotas=[("movie", "daily", 1, False)])
        user = self.store.get_user(user_id)

        first = await self.gate.gate([DECISION], user, movie("tmdb:1", "First"))
        self.assertEqual(first.dispatch_now, [DECISION])
        self.assertEqual(count_rows(self.factory, models.QuotaUsage, user_id=user_id), 1)

        second = await self.gate.gate([DECISION], user, movie("tmdb:2", "Second"))
        self.assertTrue(second.requires_approval)
        self.assertEqual(second.approval_created.triggered_by, "quota_exceeded")
        self.assertEqual(second.approval_created.status, "pending")
        self.assertEqual(count_rows(self.factory, models.QuotaUsage, user_id=user_id), 1)
        self.assertIn("approval.created", self.notifier.names())

    async def test_unlimited_quota_never_requires_approval(self):
        user_id = seed_user(self.factory, quotas=[("movie", "daily", 0, False)])
        for _ in range(4):
            self.store.record_usage(user_id, "movie")
        result = await self.gate.gate([DECISION], self.store.get_user(user_id), movie())
        self.assertFalse(result.requires_approval)
        self.assertEqual(count_rows(self.factory, models.ApprovalRequest), 0)

    async def test_concurrent_gate_creates_one_pending_request(self):
        user_id = seed_user(self.factory, quotas=[("movie", "daily", 1, False)])
        self.store.record_usage(user_id, "movie")
        user = self.store.get_user(user_id)

        a, b = await asyncio.gather(
            self.gate.gate([DECISION], user, movie()),
            self.gate.gate([DECISION], user, movie()),
        )
        self.assertEqual(a.approval_created.id, b.approval_created.id)
        self.assertEqual(sorted([a.created, b.created]), [False, True])
        self.assertEqual(count_rows(self.factory, models.ApprovalRequest, status="pending"), 1)

    def test_store_rejects_second_pending_request(self):
        user_id = seed_user(self.factory)
        first = self.store.create_approval_request(user_id, movie(), [DECISION], triggered_by="manual_flag")
        with self.assertRaises(DuplicateApprovalRequest) as ctx:
            self.store.create_approval_request(user_id, movie(), [DECISION], triggered_by="quota_exceeded")
        self.assertEqual(ctx.exception.existing.id, first.id)

    async def test_insert_losing_race_returns_existing_request(self):
        user_id = seed_user(self.factory, requires_approval=True)
        winner = self.store.create_approval_request(user_id, movie(), [DECISION], triggered_by="manual_flag")
        real_lookup = self.store.get_pending_request
        # First lookup misses the concurrent insert, so the unique index decides
        lookups = [None]

        def racing_lookup(uid, key):
            return lookups.pop() if lookups else real_lookup(uid, key)

        with mock.patch.object(self.store, "get_pending_request", side_effect=racing_lookup):
            result = await self.gate.gate([DECISION], self.store.get_user(user_id), movie())

        self.assertFalse(result.created)
        self.assertEqual(result.approval_created.id, winner.id)
        self.assertEqual(count_rows(self.factory, models.ApprovalRequest), 1)
        self.assertNotIn("approval.created", self.notifier.names())

    async def test_rule_requiring_approval_wins_over_quota_bypass(self):
        user_id = seed_user(self.factory, quotas=[("movie", "daily", 5, True)])
        decision = RoutingDecision(instance_id=10, instance_type="radarr", rule_id=3, rule_name="4k",
                                   always_require_approval=True)
        result = await self.gate.gate([decision], self.store.get_user(user_id), movie())
        self.assertEqual(result.approval_created.triggered_by, "router_rule")
        self.assertEqual(result.approval_created.decisions, [decision])

    async def test_user_flag_requires_manual_approval(self):
        user_id = seed_user(self.factory, requires_approval=True)
        result = await self.gate.gate([DECISION], self.store.get_user(user_id), movie())
        self.assertEqual(result.approval_created.triggered_by, "manual_flag")

    async def test_quota_bypass_dispatches(self):
        user_id = seed_user(self.factory, quotas=[("movie", "daily", 1, True)])
        self.store.record_usage(user_id, "movie")
        result = await self.gate.gate([DECISION], self.store.get_user(user_id), movie())
        self.assertEqual(result.dispatch_now, [DECISION])

        other = seed_user(self.factory, name="bob", quotas=[("movie", "daily", 1, False)])
        self.store.record_usage(other, "movie")
        bypassing = RoutingDecision(instance_id=10, instance_type="radarr", rule_id=4, bypass_user_quotas=True)
        result = await self.gate.gate([bypassing], self.store.get_user(other), movie())
        self.assertFalse(result.requires_approval)

    async def test_expiration_hours_per_trigger(self):
        gate = ApprovalGate(self.store, config=config(approval_expiration_enabled=True,
                                                       approval_manual_flag_expiration_hours=6))
        user_id = seed_user(self.factory, requires_approval=True)
        result = await gate.gate([DECISION], self.store.get_user(user_id), movie(), now=NOW)
        self.assertEqual(result.approval_created.expires_at, NOW + timedelta(hours=6))
        self.assertEqual(gate.expiration_for("quota_exceeded", NOW), NOW + timedelta(hours=72))

    async def test_approve_dispatches_and_terminal_states_are_final(self):
        dispatched = []

        async def dispatcher(item, decision):
            dispatched.append((item.key, decision.instance_id))
            return True

        gate = ApprovalGate(self.store, dispatcher=dispatcher, notifier=self.notifier, config=config())
        user_id = seed_user(self.factory, requires_approval=True)
        created = (await gate.gate([DECISION], self.store.get_user(user_id), movie())).approval_created

        approved = await gate.approve(created.id, reason="looks fine")
        self.assertEqual(approved.status, "approved")
        self.assertEqual(dispatched, [("tmdb:348", 10)])
        self.assertEqual(count_rows(self.factory, models.QuotaUsage, user_id=user_id), 1)

        with self.assertRaises(InvalidApprovalTransition):
            await gate.reject(created.id)

    async def test_new_request_allowed_after_resolution(self):
        user_id = seed_user(self.factory, requires_approval=True)
        user = self.store.get_user(user_id)
        first = (await self.gate.gate([DECISION], user, movie())).approval_created
        await self.gate.reject(first.id, reason="no")
        second = await self.gate.gate([DECISION], user, movie())
        self.assertTrue(second.created)
        self.assertNotEqual(second.approval_created.id, first.id)


if __name__ == "__main__":
    unittest.main()
