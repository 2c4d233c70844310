"""
watchlist_diff.py

Incremental change detection over watchlist feeds.

Each poll issues a conditional fetch with the cached freshness token. An
unchanged feed yields an empty diff without parsing; a changed feed is diffed
by stable content key against the cached snapshot. Removals are debounced: an
item must be missing from REMOVAL_DEBOUNCE consecutive successful fetches
before it is reported, so a single stale response never fabricates a removal
burst.
"""
import logging
import time
from typing import Callable, Dict, Optional

from watchroute.domain import FeedDiff, FeedRef, ItemRef, WatchlistItem
from watchroute.services.feed_cache import FeedCache, FeedSnapshot
from watchroute.services.feed_client import FeedClient, FetchResult

logger = logging.getLogger(__name__)

REMOVAL_DEBOUNCE = 2


def _to_ref(item: WatchlistItem) -> ItemRef:
    return ItemRef(key=item.key, title=item.title, content_type=item.content_type, owner_user_id=item.owner_user_id)


class WatchlistDiffEngine:
    def __init__(self, cache: FeedCache, client: Optional[FeedClient] = None, clock: Callable[[], float] = time.time):
        self.cache = cache
        self.client = client or FeedClient()
        self._clock = clock

    async def poll(self, feed: FeedRef) -> FeedDiff:
        """Fetch the feed and return what was added and removed since the last poll.

        FeedFetchError subclasses propagate to the caller with the cache left
        exactly as it was.
        """
        snapshot = self.cache.get(feed)
        token = snapshot.freshness_token if snapshot else None
        if snapshot and snapshot.missing:
            # Pending removals need a real body to be confirmed or cleared
            token = None

        result = await self.client.fetch(feed, token)

        if result.unchanged and snapshot is not None:
            snapshot.last_fetch = self._clock()
            logger.debug(f"[DiffEngine] Feed {feed} unchanged (token={token})")
            return FeedDiff()

        diff, new_snapshot = self._apply(snapshot, result)
        self.cache.put(feed, new_snapshot)

        if not diff.empty:
            logger.info(f"[DiffEngine] Feed {feed}: +{len(diff.added)} added, -{len(diff.removed)} removed")
        return diff

    def _apply(self, snapshot: Optional[FeedSnapshot], result: FetchResult):
        previous = snapshot.items if snapshot else {}
        previous_missing = snapshot.missing if snapshot else {}

        remote: Dict[str, WatchlistItem] = {}
        for item in result.items:
            # First occurrence wins when a feed lists the same title twice
            remote.setdefault(item.key, item)

        added = []
        items: Dict[str, WatchlistItem] = {}
        for key, item in remote.items():
            known = previous.get(key)
            if known is None:
                added.append(item)
                items[key] = item
            else:
                items[key] = known.with_metadata(plex_key=item.plex_key, genres=item.genres)

        removed = []
        missing: Dict[str, int] = {}
        for key, item in previous.items():
            if key in remote:
                continue
            count = previous_missing.get(key, 0) + 1
            if count >= REMOVAL_DEBOUNCE:
                removed.append(_to_ref(item))
            else:
                missing[key] = count
                items[key] = item

        new_snapshot = FeedSnapshot(
            freshness_token=result.freshness_token,
            items=items,
            missing=missing,
            last_fetch=self._clock(),
        )
        return FeedDiff(added=added, removed=removed), new_snapshot

    async def establish_baseline(self, feed: FeedRef) -> int:
        """Fill the cache from a full fetch without emitting any events.

        Returns the number of items now known for the feed.
        """
        result = await self.client.fetch(feed, None)
        items: Dict[str, WatchlistItem] = {}
        for item in result.items:
            items.setdefault(item.key, item)
        self.cache.put(feed, FeedSnapshot(
            freshness_token=result.freshness_token,
            items=items,
            last_fetch=self._clock(),
        ))
        logger.info(f"[DiffEngine] Baseline for feed {feed}: {len(items)} items")
        return len(items)
