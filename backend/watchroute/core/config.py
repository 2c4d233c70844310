import os
from pydantic_settings import BaseSettings


def _db_url() -> str:
    explicit = os.getenv("DATABASE_URL")
    if explicit:
        return explicit
    user = os.getenv("POSTGRES_USER", "watchroute")
    password = os.getenv("POSTGRES_PASSWORD", "watchroute")
    db = os.getenv("POSTGRES_DB", "watchroute")
    host = os.getenv("POSTGRES_HOST", "db")
    return f"postgresql+psycopg2://{user}:{password}@{host}:5432/{db}"


class Settings(BaseSettings):
    database_url: str = _db_url()
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Feed polling
    feed_poll_interval: float = float(os.getenv("FEED_POLL_INTERVAL", "300"))  # 5 min base cycle
    feed_jitter_ratio: float = float(os.getenv("FEED_JITTER_RATIO", "0.1"))  # +/-10% per tick
    feed_fallback_interval: float = float(os.getenv("FEED_FALLBACK_INTERVAL", "900"))
    feed_failure_threshold: int = int(os.getenv("FEED_FAILURE_THRESHOLD", "3"))
    feed_rate_limit_cooldown: float = float(os.getenv("FEED_RATE_LIMIT_COOLDOWN", "1800"))
    feed_request_timeout: float = float(os.getenv("FEED_REQUEST_TIMEOUT", "30"))
    feed_prime_baseline: bool = os.getenv("FEED_PRIME_BASELINE", "false").lower() == "true"

    # Deferred routing queue
    deferred_drain_interval: float = float(os.getenv("DEFERRED_DRAIN_INTERVAL", "120"))  # 2 min
    deferred_retry_ceiling: int = int(os.getenv("DEFERRED_RETRY_CEILING", "3"))

    # Sonarr/Radarr calls
    arr_request_timeout: float = float(os.getenv("ARR_REQUEST_TIMEOUT", "10"))

    # Approval maintenance
    approval_maintenance_interval: float = float(os.getenv("APPROVAL_MAINTENANCE_INTERVAL", str(4 * 60 * 60)))
    approval_maintenance_in_process: bool = os.getenv("APPROVAL_MAINTENANCE_IN_PROCESS", "true").lower() == "true"
    approval_expiration_enabled: bool = os.getenv("APPROVAL_EXPIRATION_ENABLED", "false").lower() == "true"
    approval_default_expiration_hours: int = int(os.getenv("APPROVAL_DEFAULT_EXPIRATION_HOURS", "72"))
    # "expire" | "auto_approve"
    approval_expiration_action: str = os.getenv("APPROVAL_EXPIRATION_ACTION", "expire")
    approval_quota_exceeded_expiration_hours: int | None = None
    approval_router_rule_expiration_hours: int | None = None
    approval_manual_flag_expiration_hours: int | None = None
    approval_content_criteria_expiration_hours: int | None = None
    approval_cleanup_days: int = int(os.getenv("APPROVAL_CLEANUP_DAYS", "30"))

    # Quota usage log retention
    quota_usage_retention_days: int = int(os.getenv("QUOTA_USAGE_RETENTION_DAYS", "90"))

    notifications_channel: str = os.getenv("NOTIFICATIONS_CHANNEL", "watchroute:events")

settings = Settings()
