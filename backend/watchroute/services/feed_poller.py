"""
feed_poller.py

Per-feed polling timer. Every feed shares the base interval but starts at its
own random offset and jitters each tick so feeds do not hit the origin
together. A tick that finds the previous poll still running is skipped.
"""
import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional

from watchroute.core.config import settings
from watchroute.domain import FeedDiff, FeedRef
from watchroute.services.errors import FeedFetchError, RateLimitExhausted
from watchroute.services.watchlist_diff import WatchlistDiffEngine

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 1.0

DiffHandler = Callable[[FeedRef, FeedDiff], Awaitable[None]]


class FeedPoller:
    def __init__(
        self,
        feed: FeedRef,
        engine: WatchlistDiffEngine,
        on_diff: DiffHandler,
        interval: Optional[float] = None,
        jitter_ratio: Optional[float] = None,
        fallback_interval: Optional[float] = None,
        failure_threshold: Optional[int] = None,
        cooldown: Optional[float] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.feed = feed
        self.engine = engine
        self.on_diff = on_diff
        self.interval = interval if interval is not None else settings.feed_poll_interval
        self.jitter_ratio = jitter_ratio if jitter_ratio is not None else settings.feed_jitter_ratio
        self.fallback_interval = fallback_interval if fallback_interval is not None else settings.feed_fallback_interval
        self.failure_threshold = failure_threshold if failure_threshold is not None else settings.feed_failure_threshold
        self.cooldown = cooldown if cooldown is not None else settings.feed_rate_limit_cooldown
        self._rng = rng or random.Random()
        self._clock = clock

        self.consecutive_failures = 0
        self.paused_until = 0.0
        self._in_flight = False
        self._task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None

    @property
    def in_fallback(self) -> bool:
        return self.consecutive_failures >= self.failure_threshold

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def initial_delay(self) -> float:
        return self._rng.uniform(0, self.interval)

    def next_delay(self) -> float:
        base = self.fallback_interval if self.in_fallback else self.interval
        jitter = base * self.jitter_ratio * self._rng.uniform(-1.0, 1.0)
        delay = max(MIN_INTERVAL_SECONDS, base + jitter)
        remaining_pause = self.paused_until - self._clock()
        if remaining_pause > delay:
            delay = remaining_pause
        return delay

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"feed-poller-{self.feed}")

    async def stop(self) -> None:
        for task in (self._task, self._current):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._current = None

    async def _run(self) -> None:
        delay = self.initial_delay()
        logger.debug(f"[FeedPoller] Feed {self.feed} first poll in {delay:.1f}s")
        await asyncio.sleep(delay)
        while True:
            if self._in_flight:
                logger.info(f"[FeedPoller] Feed {self.feed} still polling, skipping tick")
            else:
                self._current = asyncio.create_task(self.tick())
            await asyncio.sleep(self.next_delay())

    async def tick(self) -> str:
        """Run one poll. Returns an outcome label; never raises."""
        if self._in_flight:
            return "skipped"
        if self._clock() < self.paused_until:
            return "cooldown"

        self._in_flight = True
        try:
            return await self._poll_once()
        finally:
            # Also reached on cancellation
            self._in_flight = False

    async def _poll_once(self) -> str:
        try:
            diff = await self.engine.poll(self.feed)
        except RateLimitExhausted as e:
            pause = max(self.cooldown, e.retry_after or 0)
            self.paused_until = self._clock() + pause
            logger.warning(f"[FeedPoller] Feed {self.feed} rate limited, pausing for {pause:.0f}s")
            return "rate_limited"
        except FeedFetchError as e:
            self._record_failure(str(e))
            return "failed"
        except Exception as e:
            logger.error(f"[FeedPoller] Unexpected error polling feed {self.feed}: {e}", exc_info=True)
            self._record_failure(str(e))
            return "failed"

        if self.in_fallback:
            logger.info(f"[FeedPoller] Feed {self.feed} recovered, back to {self.interval:.0f}s interval")
        self.consecutive_failures = 0

        try:
            if not diff.empty:
                await self.on_diff(self.feed, diff)
        except Exception as e:
            logger.error(f"[FeedPoller] Diff handler failed for feed {self.feed}: {e}", exc_info=True)
        return "ok"

    def _record_failure(self, reason: str) -> None:
        self.consecutive_failures += 1
        logger.warning(
            f"[FeedPoller] Feed {self.feed} poll failed ({self.consecutive_failures} in a row): {reason}"
        )
        if self.consecutive_failures == self.failure_threshold:
            logger.warning(
                f"[FeedPoller] Feed {self.feed} switching to fallback interval {self.fallback_interval:.0f}s"
            )
