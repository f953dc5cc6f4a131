"""Redis client for cross-process coordination.

The engine keeps no cached data in Redis; the only keys it writes are sweep
leases (see lifecycle/lease.py), so one shared client is enough.

Provides:
- get_redis_pool(): lazily created client singleton
- ping_redis(): connectivity check for the readiness check
- close_redis(): lifespan shutdown hook
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.botsync.config import get_settings

# A sweep that cannot reach Redis should skip quickly, not hang
REDIS_SOCKET_TIMEOUT_SECONDS = 5.0

_redis_client: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the shared Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(
            get_settings().REDIS_URL,
            decode_responses=True,
            socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
        )
    return _redis_client


async def ping_redis() -> bool:
    """Return True if Redis answers PING."""
    return bool(await get_redis_pool().ping())


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
