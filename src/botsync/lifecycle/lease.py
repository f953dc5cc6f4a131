"""Redis-backed sweep lease.

Ensures at most one reconciliation sweep runs at a time across all
processes and instances. The lease is a redis-py ``Lock`` taken without
blocking; while it is held a heartbeat task extends its TTL, so a sweep that
runs longer than the TTL keeps its lease. Release only frees a lock this
holder still owns.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from redis.asyncio.lock import Lock
from redis.exceptions import LockError, RedisError

logger = structlog.get_logger(__name__)


class SweepLease:
    """Skip-if-running mutual exclusion for periodic sweeps.

    Args:
        redis_client: Async Redis client.
        key: Lease key, one per kind of sweep.
        ttl_seconds: Lease lifetime between renewals.
        renew_interval_seconds: Heartbeat period; defaults to a third of the TTL.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        key: str,
        ttl_seconds: int = 120,
        renew_interval_seconds: float | None = None,
    ) -> None:
        self._redis = redis_client
        self._key = key
        self._ttl = ttl_seconds
        self._renew_interval = renew_interval_seconds or ttl_seconds / 3

    @property
    def key(self) -> str:
        return self._key

    async def acquire(self) -> Lock | None:
        """Try to take the lease.

        Returns:
            The held Lock, or None if another holder has it.
        """
        lock = self._redis.lock(self._key, timeout=self._ttl, thread_local=False)
        acquired = await lock.acquire(blocking=False)
        return lock if acquired else None

    async def _keep_alive(self, lock: Lock) -> None:
        while True:
            await asyncio.sleep(self._renew_interval)
            try:
                await lock.extend(self._ttl, replace_ttl=True)
            except LockError:
                logger.warning("lease.lost", key=self._key)
                return
            except RedisError as exc:
                logger.warning("lease.renew_failed", key=self._key, error=str(exc))

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[bool]:
        """Context manager yielding True if the lease was acquired.

        Usage:
            async with lease.hold() as acquired:
                if not acquired:
                    return
                ...
        """
        lock = await self.acquire()
        if lock is None:
            logger.info("lease.busy", key=self._key)
            yield False
            return

        heartbeat = asyncio.create_task(self._keep_alive(lock))
        try:
            yield True
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            try:
                await lock.release()
            except LockError:
                logger.warning("lease.release_not_owned", key=self._key)
            except RedisError as exc:
                # The TTL frees the lease anyway
                logger.warning("lease.release_failed", key=self._key, error=str(exc))
