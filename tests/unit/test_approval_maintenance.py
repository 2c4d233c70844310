import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from watchroute import models
from watchroute.domain import RoutingDecision, WatchlistItem
from watchroute.services.approval import ApprovalGate
from watchroute.services.approval_maintenance import MaintenanceSweep

from support import FakeNotifier, count_rows, make_store, seed_user

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
DECISION = RoutingDecision(instance_id=10, instance_type="radarr", weight=50, rule_id=1)


def config(action="expire"):
    return SimpleNamespace(
        approval_expiration_enabled=True,
        approval_default_expiration_hours=24,
        approval_quota_exceeded_expiration_hours=None,
        approval_router_rule_expiration_hours=None,
        approval_manual_flag_expiration_hours=None,
        approval_content_criteria_expiration_hours=None,
        approval_expiration_action=action,
        approval_cleanup_days=30,
        quota_usage_retention_days=90,
    )


def item(key):
    return WatchlistItem(title=key, content_type="movie", external_ids=frozenset({key}), owner_user_id=1, plex_key=key)


class TestMaintenanceSweep(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store, self.factory = make_store()
        self.user_id = seed_user(self.factory, requires_approval=True)
        self.dispatched = []
        self.notifier = FakeNotifier()

    def make(self, action="expire"):
        async def dispatcher(it, decision):
            self.dispatched.append(it.key)
            return True

        cfg = config(action)
        gate = ApprovalGate(self.store, dispatcher=dispatcher, notifier=self.notifier, config=cfg)
        return gate, MaintenanceSweep(self.store, gate, config=cfg)

    async def test_expires_overdue_pending_requests(self):
        gate, sweep = self.make()
        user = self.store.get_user(self.user_id)
        old = (await gate.gate([DECISION], user, item("tmdb:1"), now=NOW - timedelta(days=2))).approval_created
        fresh = (await gate.gate([DECISION], user, item("tmdb:2"), now=NOW)).approval_created

        result = await sweep.run(now=NOW)

        self.assertEqual(result["expired"], 1)
        self.assertEqual(self.store.get_approval_request(old.id).status, "expired")
        self.assertEqual(self.store.get_approval_request(fresh.id).status, "pending")
        self.assertIn("approval.expired", self.notifier.names())
        self.assertEqual(self.dispatched, [])

        again = await sweep.run(now=NOW)
        self.assertEqual(again["expired"], 0)

    async def test_auto_approve_policy_dispatches(self):
        gate, sweep = self.make("auto_approve")
        user = self.store.get_user(self.user_id)
        req = (await gate.gate([DECISION], user, item("tmdb:1"), now=NOW - timedelta(days=2))).approval_created

        result = await sweep.run(now=NOW)

        self.assertEqual(result["auto_approved"], 1)
        self.assertEqual(self.store.get_approval_request(req.id).status, "auto_approved")
        self.assertEqual(self.dispatched, ["tmdb:1"])
        self.assertEqual(count_rows(self.factory, models.QuotaUsage, user_id=self.user_id), 1)

    async def test_purges_old_resolved_requests_and_usage(self):
        gate, sweep = self.make()
        user = self.store.get_user(self.user_id)
        old = (await gate.gate([DECISION], user, item("tmdb:1"), now=NOW)).approval_created
        recent = (await gate.gate([DECISION], user, item("tmdb:2"), now=NOW)).approval_created
        self.store.transition_request(old.id, "rejected", now=NOW - timedelta(days=31))
        self.store.transition_request(recent.id, "rejected", now=NOW - timedelta(days=5))
        self.store.record_usage(self.user_id, "movie", NOW - timedelta(days=91))
        self.store.record_usage(self.user_id, "movie", NOW - timedelta(days=10))

        result = await sweep.run(now=NOW)

        self.assertEqual(result["purged_requests"], 1)
        self.assertEqual(result["purged_usage"], 1)
        self.assertIsNone(self.store.get_approval_request(old.id))
        self.assertIsNotNone(self.store.get_approval_request(recent.id))

    async def test_overlapping_run_is_skipped(self):
        gate, sweep = self.make()
        user = self.store.get_user(self.user_id)
        await gate.gate([DECISION], user, item("tmdb:1"), now=NOW - timedelta(days=2))

        release = asyncio.Event()

        class BlockingNotifier(FakeNotifier):
            async def notify(inner, event, payload):
                await release.wait()

        gate.notifier = BlockingNotifier()
        first = asyncio.create_task(sweep.run(now=NOW))
        await asyncio.sleep(0)

        self.assertTrue(sweep.in_progress)
        self.assertEqual(await sweep.run(now=NOW), {"skipped": True})

        release.set()
        result = await first
        self.assertEqual(result["expired"], 1)
        self.assertFalse(sweep.in_progress)


if __name__ == "__main__":
    unittest.main()
