"""
metrics.py

Routing counters and dispatch latency kept in Redis hashes so every worker
process adds to the same totals. Metrics never fail the caller: Redis errors
are logged at debug level and dropped.
"""
import logging
from typing import Dict

from watchroute.core.redis_client import get_redis

logger = logging.getLogger(__name__)

COUNTERS_KEY = "watchroute:metrics:counters"
TIMING_KEY_PREFIX = "watchroute:metrics:timing:"


async def increment(name: str, amount: int = 1) -> None:
    try:
        await get_redis().hincrby(COUNTERS_KEY, name, amount)
    except Exception as e:
        logger.debug(f"[Metrics] Dropped counter {name}: {e}")


async def timing(name: str, milliseconds: float) -> None:
    """Add one sample to the count/total_ms/max_ms aggregate of a timer."""
    key = TIMING_KEY_PREFIX + name
    ms = round(float(milliseconds), 3)
    try:
        r = get_redis()
        async with r.pipeline(transaction=False) as pipe:
            pipe.hincrby(key, "count", 1)
            pipe.hincrbyfloat(key, "total_ms", ms)
            pipe.hget(key, "max_ms")
            _, _, current_max = await pipe.execute()
        if current_max is None or ms > float(current_max):
            await r.hset(key, "max_ms", ms)
    except Exception as e:
        logger.debug(f"[Metrics] Dropped timing {name}: {e}")


async def counters_snapshot() -> Dict[str, int]:
    try:
        raw = await get_redis().hgetall(COUNTERS_KEY)
    except Exception as e:
        logger.debug(f"[Metrics] Counters unavailable: {e}")
        return {}
    counters: Dict[str, int] = {}
    for name, value in (raw or {}).items():
        try:
            counters[str(name)] = int(value)
        except (TypeError, ValueError):
            logger.debug(f"[Metrics] Ignoring non-integer counter {name}={value!r}")
    return counters
