"""
redis_client.py

Redis access for the API process and Celery workers.

get_redis() hands out one asyncio client per running event loop; a client
created on one loop cannot be awaited from another. get_redis_sync() is a
process-wide client for synchronous code (the maintenance task lock).
"""
import asyncio
import threading
from typing import Dict, Optional

import redis
from redis import asyncio as aioredis

from watchroute.core.config import settings

_async_clients: Dict[str, aioredis.Redis] = {}
_sync_client: Optional[redis.Redis] = None


def _pool_options(max_connections: int) -> dict:
    return dict(
        decode_responses=True,
        max_connections=max_connections,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
    )


def _loop_key() -> str:
    try:
        return f"loop-{id(asyncio.get_running_loop())}"
    except RuntimeError:
        return f"thread-{threading.get_ident()}"


def get_redis() -> aioredis.Redis:
    key = _loop_key()
    client = _async_clients.get(key)
    if client is None:
        pool = aioredis.ConnectionPool.from_url(settings.redis_url, **_pool_options(20))
        client = _async_clients[key] = aioredis.Redis(connection_pool=pool)
    return client


async def close_redis() -> None:
    """Close the client bound to the current loop, if one was created."""
    client = _async_clients.pop(_loop_key(), None)
    if client is not None:
        await client.aclose()


def get_redis_sync() -> redis.Redis:
    global _sync_client
    if _sync_client is None:
        pool = redis.ConnectionPool.from_url(settings.redis_url, **_pool_options(10))
        _sync_client = redis.Redis(connection_pool=pool)
    return _sync_client
