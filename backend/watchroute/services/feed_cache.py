"""
feed_cache.py

Per-source, per-user snapshot of watchlist feed contents plus the freshness
token (ETag) the origin handed out with it. Owned by the workflow orchestrator;
only the diff engine mutates it.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from watchroute.domain import FeedRef, WatchlistItem


@dataclass
class FeedSnapshot:
    freshness_token: Optional[str] = None
    items: Dict[str, WatchlistItem] = field(default_factory=dict)
    # key -> consecutive successful fetches the item was absent from
    missing: Dict[str, int] = field(default_factory=dict)
    last_fetch: float = 0.0

    @property
    def item_ids(self) -> set:
        return set(self.items)


class FeedCache:
    def __init__(self):
        self._snapshots: Dict[Tuple[str, int], FeedSnapshot] = {}

    def get(self, feed: FeedRef) -> Optional[FeedSnapshot]:
        return self._snapshots.get(feed.key)

    def has(self, feed: FeedRef) -> bool:
        return feed.key in self._snapshots

    def put(self, feed: FeedRef, snapshot: FeedSnapshot) -> None:
        self._snapshots[feed.key] = snapshot

    def invalidate(self, feed: FeedRef) -> None:
        self._snapshots.pop(feed.key, None)

    def clear(self) -> None:
        self._snapshots.clear()

    def stats(self) -> Dict[str, Dict[str, object]]:
        return {
            f"{source}:{user_id}": {
                "items": len(snap.items),
                "pending_removals": len(snap.missing),
                "has_token": snap.freshness_token is not None,
                "last_fetch": snap.last_fetch,
            }
            for (source, user_id), snap in self._snapshots.items()
        }
