"""
feed_client.py

Async client for the origin watchlist feed. Issues conditional GETs with the
cached freshness token (If-None-Match) so an unchanged feed costs one 304 and no
parsing. Failures are mapped onto the feed error taxonomy.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from watchroute.core.config import settings
from watchroute.domain import FeedRef, WatchlistItem, normalize_genre, normalize_guid, parse_content_type
from watchroute.services.errors import RateLimitExhausted, TransientFetchError

logger = logging.getLogger(__name__)

USER_AGENT = "watchroute/1.0"


@dataclass
class FetchResult:
    unchanged: bool
    freshness_token: Optional[str] = None
    items: List[WatchlistItem] = field(default_factory=list)


def _extract_guids(entry: Dict[str, Any]) -> List[str]:
    raw = entry.get("externalIds") or entry.get("guids") or entry.get("Guid") or []
    if isinstance(raw, str):
        raw = [raw]
    guids = []
    for g in raw:
        if isinstance(g, dict):
            g = g.get("id")
        if g:
            guids.append(normalize_guid(g))
    return guids


def _extract_genres(entry: Dict[str, Any]) -> List[str]:
    raw = entry.get("genres") or entry.get("Genre") or []
    if isinstance(raw, str):
        raw = [part for part in raw.split(",")]
    genres = []
    for g in raw:
        if isinstance(g, dict):
            g = g.get("tag") or g.get("name")
        if g and str(g).strip():
            genres.append(normalize_genre(g))
    return genres


def _extract_year(entry: Dict[str, Any]) -> Optional[int]:
    raw = entry.get("year")
    if raw is None or isinstance(raw, bool):
        return None
    try:
        year = int(raw)
    except (TypeError, ValueError):
        return None
    return year if year > 0 else None


def parse_feed_items(payload: Any, owner_user_id: Optional[int] = None) -> List[WatchlistItem]:
    """Turn a decoded feed body into WatchlistItems.

    Accepts a bare list or an object with an "items" array. Entries with an
    unknown content type are skipped; a body of the wrong shape raises ValueError.
    """
    if isinstance(payload, dict):
        entries = payload.get("items")
        if entries is None:
            raise ValueError("feed body has no 'items' array")
    else:
        entries = payload
    if not isinstance(entries, list):
        raise ValueError(f"feed items must be a list, got {type(entries).__name__}")

    items: List[WatchlistItem] = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError("feed entry is not an object")
        title = entry.get("title")
        content_type = parse_content_type(entry.get("type") or entry.get("category"))
        if not title or not content_type:
            logger.debug(f"[FeedClient] Skipping entry with unknown type: {entry.get('title')!r}")
            continue
        key = entry.get("key") or entry.get("ratingKey") or entry.get("plexKey")
        items.append(WatchlistItem(
            title=str(title),
            content_type=content_type,
            external_ids=frozenset(_extract_guids(entry)),
            genres=frozenset(_extract_genres(entry)),
            owner_user_id=owner_user_id,
            plex_key=str(key) if key else None,
            year=_extract_year(entry),
        ))
    return items


class FeedClient:
    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout if timeout is not None else settings.feed_request_timeout
        # Tests hand in an httpx.MockTransport
        self._transport = transport

    def _headers(self, feed: FeedRef, freshness_token: Optional[str]) -> Dict[str, str]:
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        }
        if feed.token:
            headers["X-Plex-Token"] = feed.token
        if freshness_token:
            headers["If-None-Match"] = freshness_token
        return headers

    async def fetch(self, feed: FeedRef, freshness_token: Optional[str] = None) -> FetchResult:
        """Conditionally fetch a feed.

        Returns FetchResult(unchanged=True) without touching the body when the
        origin answers 304 or echoes the same ETag.
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport, follow_redirects=True) as client:
                resp = await client.get(feed.url, headers=self._headers(feed, freshness_token))
        except httpx.TimeoutException:
            logger.warning(f"[FeedClient] Timeout fetching feed {feed}")
            raise TransientFetchError(f"Timeout fetching feed {feed}")
        except httpx.RequestError as e:
            logger.warning(f"[FeedClient] Network error fetching feed {feed}: {e}")
            raise TransientFetchError(f"Network error fetching feed {feed}: {e}")

        if resp.status_code == 304:
            return FetchResult(unchanged=True, freshness_token=freshness_token)

        if resp.status_code == 429:
            retry_after = None
            try:
                retry_after = float(resp.headers.get("Retry-After")) if resp.headers.get("Retry-After") else None
            except ValueError:
                retry_after = None
            logger.error(f"[FeedClient] Rate limit exhausted for feed {feed}")
            raise RateLimitExhausted(f"Origin rate limit exhausted for feed {feed}", retry_after=retry_after)

        if resp.status_code >= 400:
            logger.warning(f"[FeedClient] Feed {feed} returned HTTP {resp.status_code}")
            raise TransientFetchError(f"Feed {feed} returned HTTP {resp.status_code}")

        new_token = resp.headers.get("etag")
        if new_token and freshness_token and new_token == freshness_token:
            return FetchResult(unchanged=True, freshness_token=freshness_token)

        try:
            payload = resp.json()
            items = parse_feed_items(payload, owner_user_id=feed.user_id)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"[FeedClient] Failed to parse feed {feed}: {e}")
            raise TransientFetchError(f"Failed to parse feed {feed}: {e}")

        if not new_token:
            logger.debug(f"[FeedClient] Feed {feed} response missing ETag header - caching items without token")
        return FetchResult(unchanged=False, freshness_token=new_token, items=items)
