"""
notifications.py

Fire-and-forget event publisher. Dispatch outcomes and approval transitions
are published as JSON on a Redis pub/sub channel; whatever renders them
(webhooks, Discord, the UI) subscribes there.
"""
import json
import logging
from typing import Any, Callable, Dict, Optional

from watchroute.core.config import settings
from watchroute.core.redis_client import get_redis
from watchroute.utils.timezone import format_iso_utc, utc_now

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(self, channel: Optional[str] = None, redis_factory: Callable = get_redis):
        self.channel = channel or settings.notifications_channel
        self._redis_factory = redis_factory

    async def notify(self, event: str, payload: Dict[str, Any]) -> None:
        message = json.dumps({"event": event, "at": format_iso_utc(utc_now()), "data": payload}, default=str)
        try:
            await self._redis_factory().publish(self.channel, message)
        except Exception as e:
            logger.warning(f"[Notifier] Failed to publish {event}: {e}")
