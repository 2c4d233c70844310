"""
arr_client.py

Async Sonarr/Radarr v3 API client for one instance: health check, lookup,
and idempotent add. Adding content the instance already has is a no-op.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from watchroute.core.config import settings
from watchroute.domain import MOVIE, RADARR, InstanceInfo, RoutingDecision, WatchlistItem
from watchroute.services.errors import ArrAPIError

logger = logging.getLogger(__name__)

ALREADY_ADDED_MARKERS = ("already been added", "already exists", "MovieExistsValidator", "SeriesExistsValidator")


def _guid_value(item: WatchlistItem, prefix: str) -> Optional[str]:
    for guid in sorted(item.external_ids):
        if guid.startswith(f"{prefix}:"):
            return guid.split(":", 1)[1]
    return None


class ArrClient:
    def __init__(self, instance: InstanceInfo, timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.instance = instance
        self.timeout = timeout if timeout is not None else settings.arr_request_timeout
        self._transport = transport

    @property
    def is_radarr(self) -> bool:
        return self.instance.instance_type == RADARR

    def _url(self, endpoint: str) -> str:
        return f"{self.instance.base_url.rstrip('/')}/api/v3/{endpoint.lstrip('/')}"

    async def _request(self, method: str, endpoint: str, params: Optional[dict] = None, data: Optional[Any] = None) -> Any:
        headers = {"X-Api-Key": self.instance.api_key, "Accept": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method, self._url(endpoint), params=params, json=data, headers=headers)
        except httpx.RequestError as e:
            logger.warning(f"[ArrClient] {self.instance.name}: network error on {method} {endpoint}: {e}")
            raise ArrAPIError(f"{self.instance.name} unreachable: {e}")

        if resp.status_code >= 400:
            body = resp.text[:500]
            raise ArrAPIError(f"{self.instance.name} {method} {endpoint} returned HTTP {resp.status_code}: {body}")
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            raise ArrAPIError(f"{self.instance.name} {method} {endpoint} returned invalid JSON")

    async def health_check(self) -> bool:
        try:
            await self._request("GET", "system/status")
            return True
        except ArrAPIError as e:
            logger.warning(f"[ArrClient] Health check failed for {self.instance.name}: {e}")
            return False

    def _lookup_terms(self, item: WatchlistItem) -> List[str]:
        terms = []
        if self.is_radarr:
            tmdb = _guid_value(item, "tmdb")
            if tmdb:
                terms.append(f"tmdb:{tmdb}")
            imdb = _guid_value(item, "imdb")
            if imdb:
                terms.append(f"imdb:{imdb}")
        else:
            tvdb = _guid_value(item, "tvdb")
            if tvdb:
                terms.append(f"tvdb:{tvdb}")
        terms.append(item.title)
        return terms

    async def lookup(self, item: WatchlistItem) -> Optional[Dict[str, Any]]:
        endpoint = "movie/lookup" if self.is_radarr else "series/lookup"
        for term in self._lookup_terms(item):
            results = await self._request("GET", endpoint, params={"term": term})
            if isinstance(results, dict):
                results = [results]
            if results:
                return results[0]
        return None

    async def _quality_profile_id(self, wanted: Optional[str]) -> int:
        if wanted and str(wanted).isdigit():
            return int(wanted)
        profiles = await self._request("GET", "qualityprofile") or []
        if wanted:
            for p in profiles:
                if str(p.get("name", "")).lower() == str(wanted).lower():
                    return int(p["id"])
            logger.warning(f"[ArrClient] Quality profile '{wanted}' not found on {self.instance.name}, using first")
        if not profiles:
            raise ArrAPIError(f"{self.instance.name} has no quality profiles")
        return int(profiles[0]["id"])

    async def _root_folder(self, wanted: Optional[str]) -> str:
        if wanted:
            return wanted
        folders = await self._request("GET", "rootfolder") or []
        if not folders:
            raise ArrAPIError(f"{self.instance.name} has no root folders")
        return folders[0]["path"]

    async def _tag_ids(self, labels) -> List[int]:
        if not labels:
            return []
        existing = {str(t.get("label", "")).lower(): int(t["id"]) for t in (await self._request("GET", "tag") or [])}
        ids = []
        for label in labels:
            if str(label).isdigit():
                ids.append(int(label))
                continue
            tag_id = existing.get(str(label).lower())
            if tag_id is None:
                created = await self._request("POST", "tag", data={"label": str(label)})
                tag_id = int(created["id"])
                existing[str(label).lower()] = tag_id
            ids.append(tag_id)
        return ids

    async def add(self, item: WatchlistItem, decision: RoutingDecision) -> bool:
        """Add the item. Returns False when the instance already has it."""
        found = await self.lookup(item)
        if found is None:
            raise ArrAPIError(f"'{item.title}' not found by {self.instance.name} lookup")
        if found.get("id"):
            logger.info(f"[ArrClient] '{item.title}' already present on {self.instance.name}")
            return False

        payload = dict(found)
        payload.update({
            "qualityProfileId": await self._quality_profile_id(decision.quality_profile or self.instance.quality_profile),
            "rootFolderPath": await self._root_folder(decision.root_folder or self.instance.root_folder),
            "tags": await self._tag_ids(decision.tags or self.instance.tags),
            "monitored": True,
        })
        if self.is_radarr:
            payload["addOptions"] = {"searchForMovie": True}
            endpoint = "movie"
        else:
            payload["seasonFolder"] = True
            payload["addOptions"] = {"monitor": "all", "searchForMissingEpisodes": True}
            endpoint = "series"

        try:
            await self._request("POST", endpoint, data=payload)
        except ArrAPIError as e:
            if any(marker in str(e) for marker in ALREADY_ADDED_MARKERS):
                logger.info(f"[ArrClient] '{item.title}' was added to {self.instance.name} concurrently")
                return False
            raise
        logger.info(
            f"[ArrClient] Sent '{item.title}' to {self.instance.name} "
            f"(profile={payload['qualityProfileId']}, root={payload['rootFolderPath']}, tags={payload['tags']})"
        )
        return True

    async def route_item(self, item: WatchlistItem, decision: RoutingDecision) -> bool:
        if (item.content_type == MOVIE) != self.is_radarr:
            raise ArrAPIError(f"{self.instance.name} cannot handle {item.content_type} '{item.title}'")
        await self.add(item, decision)
        return True
