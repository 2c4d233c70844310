"""
deferred_queue.py

In-memory FIFO of routing attempts blocked on unhealthy Sonarr/Radarr
instances. Drained front-to-back with one health check per drain cycle.
Contents live for the process lifetime only; stop() drops them.
"""
import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, List, Optional, Union

from watchroute.core.config import settings
from watchroute.domain import DeferredEntry
from watchroute.services.errors import RetryCeilingExceeded

logger = logging.getLogger(__name__)

Replay = Callable[[DeferredEntry], Awaitable[Any]]
HealthCheck = Union[bool, Callable[[], Any]]


class DeferredRoutingQueue:
    def __init__(self, replay: Replay, retry_ceiling: Optional[int] = None,
                 on_drained: Optional[Callable[[List[DeferredEntry]], Awaitable[None]]] = None):
        self._replay = replay
        self.retry_ceiling = retry_ceiling if retry_ceiling is not None else settings.deferred_retry_ceiling
        self._on_drained = on_drained
        self._entries: Deque[DeferredEntry] = deque()
        self._draining = False
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def size(self) -> int:
        return len(self._entries)

    @property
    def draining(self) -> bool:
        return self._draining

    def enqueue(self, entry: DeferredEntry) -> None:
        self._entries.append(entry)
        logger.info(f"[DeferredQueue] Queued {entry.type} entry (attempt {entry.attempts}), {len(self._entries)} waiting")

    def snapshot(self) -> List[DeferredEntry]:
        return list(self._entries)

    async def _check_health(self, is_healthy: HealthCheck) -> bool:
        if callable(is_healthy):
            result = is_healthy()
            if inspect.isawaitable(result):
                result = await result
            return bool(result)
        return bool(is_healthy)

    def _requeue(self, entry: DeferredEntry) -> None:
        entry.attempts += 1
        if entry.attempts > self.retry_ceiling:
            raise RetryCeilingExceeded(
                f"{entry.type} entry failed {entry.attempts} times (ceiling {self.retry_ceiling})"
            )
        self._entries.append(entry)

    async def drain(self, is_healthy: HealthCheck) -> List[DeferredEntry]:
        """Replay every queued entry if the health check passes.

        Returns the entries replayed successfully. Entries enqueued while the
        drain runs wait for the next cycle. Never raises.
        """
        if self._draining:
            logger.debug("[DeferredQueue] Drain already in progress")
            return []
        if not self._entries:
            return []

        self._draining = True
        processed: List[DeferredEntry] = []
        try:
            try:
                healthy = await self._check_health(is_healthy)
            except Exception as e:
                logger.warning(f"[DeferredQueue] Health check failed: {e}")
                healthy = False
            if not healthy:
                logger.debug(f"[DeferredQueue] Instances still unhealthy, {len(self._entries)} entries waiting")
                return []

            batch = list(self._entries)
            self._entries.clear()
            logger.info(f"[DeferredQueue] Instances healthy, replaying {len(batch)} entries")

            for entry in batch:
                try:
                    ok = await self._replay(entry)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"[DeferredQueue] Replay of {entry.type} entry failed: {e}")
                    ok = False
                if ok is False:
                    try:
                        self._requeue(entry)
                    except RetryCeilingExceeded as e:
                        self.dropped += 1
                        logger.error(f"[DeferredQueue] Dropping entry: {e}")
                    continue
                processed.append(entry)

            if processed and self._on_drained is not None:
                try:
                    await self._on_drained(processed)
                except Exception as e:
                    logger.warning(f"[DeferredQueue] on_drained callback failed: {e}")
            return processed
        finally:
            self._draining = False

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        if count:
            logger.info(f"[DeferredQueue] Dropped {count} queued entries")
        return count

    def stop(self) -> int:
        return self.clear()
