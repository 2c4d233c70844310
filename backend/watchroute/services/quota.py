"""
quota.py

Quota windows derived from the append-only usage log.

  daily           the current UTC calendar day, from midnight to now
  weekly_rolling  trailing 7 x 24h ending now, not a calendar week
  monthly         from the first instant of the current calendar month (UTC)
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from watchroute.domain import QUOTA_DAILY, QUOTA_MONTHLY, QUOTA_WEEKLY_ROLLING, QuotaConfig
from watchroute.utils.timezone import ensure_utc, start_of_day, start_of_month, utc_now

logger = logging.getLogger(__name__)


def window_start(quota_type: str, now: datetime) -> datetime:
    now = ensure_utc(now)
    if quota_type == QUOTA_DAILY:
        return start_of_day(now)
    if quota_type == QUOTA_WEEKLY_ROLLING:
        return now - timedelta(days=7)
    if quota_type == QUOTA_MONTHLY:
        return start_of_month(now)
    raise ValueError(f"Unknown quota type: {quota_type}")


class QuotaService:
    def __init__(self, store):
        self.store = store

    def get_usage(self, user_id: int, content_type: str, quota_type: str, now: Optional[datetime] = None) -> int:
        now = ensure_utc(now) if now else utc_now()
        return self.store.count_usage(user_id, content_type, window_start(quota_type, now), until=now)

    def is_exceeded(self, user_id: int, content_type: str, quota: Optional[QuotaConfig], now: Optional[datetime] = None) -> bool:
        """True when usage has reached the limit. Unlimited or missing quotas never exceed."""
        if quota is None or quota.unlimited:
            return False
        usage = self.get_usage(user_id, content_type, quota.quota_type, now)
        exceeded = usage >= quota.quota_limit
        if exceeded:
            logger.info(
                f"[Quota] User {user_id} {content_type} {quota.quota_type} quota reached: {usage}/{quota.quota_limit}"
            )
        return exceeded

    def record_usage(self, user_id: int, content_type: str, when: Optional[datetime] = None) -> None:
        self.store.record_usage(user_id, content_type, when)
