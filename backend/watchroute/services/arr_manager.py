"""
arr_manager.py

Health-check and dispatch facade over every configured Sonarr/Radarr instance.
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional

import httpx

from watchroute.domain import InstanceInfo, RoutingDecision, WatchlistItem
from watchroute.services.arr_client import ArrClient
from watchroute.services.errors import ArrAPIError

logger = logging.getLogger(__name__)


class ArrManager:
    def __init__(self, store, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.store = store
        self.timeout = timeout
        self._transport = transport

    def instances(self) -> List[InstanceInfo]:
        return self.store.list_instances()

    def client_for(self, instance: InstanceInfo) -> ArrClient:
        return ArrClient(instance, timeout=self.timeout, transport=self._transport)

    async def check_instances_health(self, instance_ids: Optional[Iterable[int]] = None) -> Dict[str, List[int]]:
        """Check instances concurrently. Limited to instance_ids when given."""
        instances = self.instances()
        if instance_ids is not None:
            wanted = set(instance_ids)
            known = {i.id for i in instances}
            instances = [i for i in instances if i.id in wanted]
            # Rules pointing at deleted or disabled instances can never succeed
            missing = sorted(wanted - known)
        else:
            missing = []

        results = await asyncio.gather(*(self.client_for(i).health_check() for i in instances))
        available = [i.id for i, ok in zip(instances, results) if ok]
        unavailable = [i.id for i, ok in zip(instances, results) if not ok] + missing
        if unavailable:
            logger.warning(f"[ArrManager] Unavailable instances: {unavailable}")
        return {"available": available, "unavailable": unavailable}

    async def route_item(self, item: WatchlistItem, decision: RoutingDecision) -> bool:
        instance = next((i for i in self.instances() if i.id == decision.instance_id), None)
        if instance is None:
            raise ArrAPIError(f"Instance {decision.instance_id} is not configured or disabled")
        return await self.client_for(instance).route_item(item, decision)
