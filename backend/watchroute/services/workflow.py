"""
workflow.py

Watchlist workflow orchestrator. One instance is built at startup; it owns the
feed cache, the per-feed pollers, the deferred routing queue and the periodic
drain/maintenance tasks.

Flow per feed diff:
  added items -> router (or default instance) -> health check of every
  implicated instance -> gate -> dispatch to Sonarr/Radarr -> notify
If any implicated instance is down, or the store cannot be read, the whole batch
is deferred and replayed when every instance reports healthy again.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from watchroute.core import metrics as default_metrics
from watchroute.core.config import settings as default_settings
from watchroute.domain import (
    DEFERRED_ETAG_CHANGE,
    DEFERRED_ITEMS,
    ApprovalRequest,
    DeferredEntry,
    FeedDiff,
    FeedRef,
    RoutingContext,
    RoutingDecision,
    UserInfo,
    WatchlistItem,
)
from watchroute.services.approval import ApprovalGate
from watchroute.services.approval_maintenance import MaintenanceSweep
from watchroute.services.arr_manager import ArrManager
from watchroute.services.deferred_queue import DeferredRoutingQueue
from watchroute.services.errors import ArrAPIError, FeedFetchError, InstanceUnavailable, PersistenceError
from watchroute.services.feed_cache import FeedCache
from watchroute.services.feed_client import FeedClient
from watchroute.services.feed_poller import FeedPoller
from watchroute.services.notifications import Notifier
from watchroute.services.quota import QuotaService
from watchroute.services.router import ContentRouter, default_decisions, unique_by_instance
from watchroute.services.store import SqlStore
from watchroute.services.watchlist_diff import WatchlistDiffEngine

logger = logging.getLogger(__name__)


@dataclass
class RoutingOutcome:
    should_route: bool = True
    deferred: bool = False
    dispatched: int = 0
    approvals: List[ApprovalRequest] = field(default_factory=list)
    skipped: int = 0
    failed: List[WatchlistItem] = field(default_factory=list)


class WatchlistWorkflow:
    def __init__(
        self,
        store=None,
        feed_client: Optional[FeedClient] = None,
        arr_manager: Optional[ArrManager] = None,
        notifier=None,
        router: Optional[ContentRouter] = None,
        config=None,
        metrics=None,
    ):
        self.config = config or default_settings
        self.store = store or SqlStore()
        self.cache = FeedCache()
        self.diff_engine = WatchlistDiffEngine(self.cache, feed_client)
        self.router = router or ContentRouter()
        self.arr = arr_manager or ArrManager(self.store)
        self.notifier = notifier or Notifier()
        self.metrics = metrics or default_metrics
        self.quota = QuotaService(self.store)
        self.gate = ApprovalGate(
            self.store,
            quota_service=self.quota,
            dispatcher=self.dispatch_decision,
            notifier=self.notifier,
            config=self.config,
        )
        self.sweep = MaintenanceSweep(self.store, self.gate, config=self.config)
        self.queue = DeferredRoutingQueue(
            self.replay_entry,
            retry_ceiling=self.config.deferred_retry_ceiling,
            on_drained=self._on_drained,
        )
        self.pollers: Dict[Tuple[str, int], FeedPoller] = {}
        self._tasks: List[asyncio.Task] = []
        self.running = False

    # --- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        feeds = self.store.list_feeds()
        for feed in feeds:
            if self.config.feed_prime_baseline:
                try:
                    await self.diff_engine.establish_baseline(feed)
                except FeedFetchError as e:
                    logger.warning(f"[Workflow] Could not prime feed {feed}, first poll will report all items: {e}")
            poller = FeedPoller(feed, self.diff_engine, self.handle_diff)
            self.pollers[feed.key] = poller
            poller.start()

        self._tasks.append(asyncio.create_task(
            self._periodic(self.config.deferred_drain_interval, self.drain_deferred, "deferred-drain")
        ))
        if self.config.approval_maintenance_in_process:
            self._tasks.append(asyncio.create_task(
                self._periodic(self.config.approval_maintenance_interval, self.run_maintenance, "approval-maintenance")
            ))
        logger.info(f"[Workflow] Started with {len(feeds)} feeds")

    async def stop(self) -> None:
        for poller in self.pollers.values():
            await poller.stop()
        self.pollers.clear()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        dropped = self.queue.stop()
        self.cache.clear()
        self.running = False
        logger.info(f"[Workflow] Stopped, {dropped} deferred entries dropped")

    async def _periodic(self, interval: float, job, label: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception as e:
                logger.error(f"[Workflow] Periodic job {label} failed: {e}", exc_info=True)

    # --- feed diffs ------------------------------------------------------

    async def handle_diff(self, feed: FeedRef, diff: FeedDiff) -> RoutingOutcome:
        outcome = RoutingOutcome(should_route=bool(diff.added))
        if diff.added:
            outcome = await self.route_items(feed.user_id, diff.added)
            if outcome.deferred:
                self.queue.enqueue(DeferredEntry(
                    type=DEFERRED_ETAG_CHANGE,
                    payload={
                        "source": feed.source,
                        "user_id": feed.user_id,
                        "items": [i.to_dict() for i in diff.added],
                    },
                ))
        for ref in diff.removed:
            await self.notifier.notify("watchlist.removed", {
                "user_id": feed.user_id,
                "source": feed.source,
                "content_key": ref.key,
                "title": ref.title,
                "content_type": ref.content_type,
            })
        return outcome

    def _decisions_for(self, item: WatchlistItem, user: UserInfo, rules, instances) -> List[RoutingDecision]:
        context = RoutingContext(user_id=user.id, user_name=user.name, content_type=item.content_type, item_key=item.key)
        decisions = self.router.evaluate(item, context, rules)
        if not decisions:
            decisions = default_decisions(item.content_type, instances)
        return unique_by_instance(decisions)

    async def route_items(self, user_id: int, items: List[WatchlistItem], attempts: int = 0) -> RoutingOutcome:
        """Route a batch for one user. should_route is False when the batch was not routed.

        Items whose gate write fails are queued again as a separate entry
        carrying the attempt count; a deferred batch is left for the caller to
        enqueue.
        """
        outcome = RoutingOutcome()
        try:
            user = self.store.get_user(user_id)
            if user is not None and user.can_sync:
                rules = self.store.get_router_rules()
                instances = self.store.list_instances()
        except PersistenceError as e:
            # The feed cache has already moved past these items
            logger.error(f"[Workflow] Store read failed, deferring {len(items)} items for user {user_id}: {e}")
            await self.metrics.increment("routing.deferred")
            return RoutingOutcome(should_route=False, deferred=True)
        if user is None or not user.can_sync:
            logger.info(f"[Workflow] User {user_id} missing or sync disabled, skipping {len(items)} items")
            return RoutingOutcome(should_route=False, skipped=len(items))

        plan = []
        for item in items:
            decisions = self._decisions_for(item, user, rules, instances)
            if not decisions:
                logger.warning(f"[Workflow] No instance configured for {item.content_type} '{item.title}'")
                outcome.skipped += 1
                continue
            plan.append((item, decisions))
        if not plan:
            outcome.should_route = False
            return outcome

        try:
            await self._ensure_healthy({d.instance_id for _, decisions in plan for d in decisions})
        except InstanceUnavailable as e:
            logger.warning(f"[Workflow] Deferring {len(items)} items for user {user_id}: {e}")
            await self.metrics.increment("routing.deferred")
            return RoutingOutcome(should_route=False, deferred=True)

        for item, decisions in plan:
            try:
                result = await self.gate.gate(decisions, user, item)
            except PersistenceError as e:
                logger.error(f"[Workflow] Gate write failed for '{item.title}', queued for retry: {e}")
                outcome.failed.append(item)
                continue

            if result.requires_approval:
                outcome.approvals.append(result.approval_created)
                await self.metrics.increment("routing.approval_required")
                continue
            for decision in result.dispatch_now:
                if await self.dispatch_decision(item, decision):
                    outcome.dispatched += 1
                else:
                    self.queue.enqueue(DeferredEntry(
                        type=DEFERRED_ITEMS,
                        payload={"user_id": user_id, "item": item.to_dict(), "decision": decision.to_dict()},
                    ))

        if outcome.failed:
            if attempts > self.queue.retry_ceiling:
                logger.error(
                    f"[Workflow] Giving up on {len(outcome.failed)} items for user {user_id} after {attempts} attempts"
                )
            else:
                self.queue.enqueue(DeferredEntry(
                    type=DEFERRED_ITEMS,
                    payload={"user_id": user_id, "items": [i.to_dict() for i in outcome.failed]},
                    attempts=attempts,
                ))
        return outcome

    async def _ensure_healthy(self, instance_ids) -> None:
        health = await self.arr.check_instances_health(instance_ids)
        if health.get("unavailable"):
            raise InstanceUnavailable(
                f"Instances unavailable: {health['unavailable']}", instance_ids=health["unavailable"]
            )

    async def dispatch_decision(self, item: WatchlistItem, decision: RoutingDecision) -> bool:
        started = time.perf_counter()
        try:
            await self.arr.route_item(item, decision)
        except ArrAPIError as e:
            logger.error(f"[Workflow] Dispatch of '{item.title}' to instance {decision.instance_id} failed: {e}")
            await self.metrics.increment("routing.failed")
            await self.notifier.notify("routing.failed", {
                "user_id": item.owner_user_id,
                "title": item.title,
                "instance_id": decision.instance_id,
                "error": str(e),
            })
            return False
        await self.metrics.increment("routing.dispatched")
        await self.metrics.timing("routing.dispatch_ms", (time.perf_counter() - started) * 1000.0)
        await self.notifier.notify("routing.dispatched", {
            "user_id": item.owner_user_id,
            "title": item.title,
            "content_type": item.content_type,
            "instance_id": decision.instance_id,
            "instance_type": decision.instance_type,
            "rule": decision.rule_name,
        })
        return True

    # --- deferred queue --------------------------------------------------

    async def replay_entry(self, entry: DeferredEntry) -> bool:
        payload = entry.payload
        user_id = payload["user_id"]
        if "decision" in payload:
            item = WatchlistItem.from_dict(payload["item"])
            return await self.dispatch_decision(item, RoutingDecision.from_dict(payload["decision"]))

        items = [WatchlistItem.from_dict(d) for d in payload.get("items", [])]
        outcome = await self.route_items(user_id, items, attempts=entry.attempts + 1)
        return not outcome.deferred

    async def check_all_healthy(self) -> bool:
        health = await self.arr.check_instances_health()
        return not health.get("unavailable")

    async def drain_deferred(self) -> List[DeferredEntry]:
        return await self.queue.drain(self.check_all_healthy)

    async def _on_drained(self, processed: List[DeferredEntry]) -> None:
        logger.info(f"[Workflow] Replayed {len(processed)} deferred entries")
        await self.notifier.notify("deferred.drained", {"count": len(processed), "remaining": self.queue.size})

    # --- maintenance -----------------------------------------------------

    async def run_maintenance(self) -> Dict[str, Any]:
        return await self.sweep.run()

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "feeds": [
                {
                    "feed": str(p.feed),
                    "consecutive_failures": p.consecutive_failures,
                    "fallback": p.in_fallback,
                    "paused_until": p.paused_until,
                }
                for p in self.pollers.values()
            ],
            "cache": self.cache.stats(),
            "deferred": {"size": self.queue.size, "dropped": self.queue.dropped, "draining": self.queue.draining},
            "maintenance": {"in_progress": self.sweep.in_progress, "last_result": self.sweep.last_result},
        }
