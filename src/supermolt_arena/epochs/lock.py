"""Process-wide tick lease on Redis.

The lease expires on its own (``ttl_seconds``, shorter than the tick
interval) so a crashed holder never blocks later ticks. While a tick is
running the holder renews it every third of the TTL, so a long reward
distribution keeps the lease; if a renewal fails the hold is marked
lost and the tick stops starting new work.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

logger = logging.getLogger(__name__)

DEFAULT_LEASE_KEY = "supermolt:epoch:tick-lease"


@dataclass
class LeaseHold:
    """State of one ``TickLease.hold()``; truthy when the lease was acquired."""

    acquired: bool
    lost: bool = False

    def __bool__(self) -> bool:
        return self.acquired

    @property
    def valid(self) -> bool:
        return self.acquired and not self.lost


class TickLease:
    """Non-blocking Redis lock around one scheduler tick.

    Example:
        ```python
        lease = TickLease(redis, ttl_seconds=45)
        async with lease.hold() as held:
            if held:
                await run_tick(keep_going=lambda: held.valid)
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        ttl_seconds: float,
        key: str = DEFAULT_LEASE_KEY,
        renew_interval: float | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if renew_interval is not None and not 0 < renew_interval < ttl_seconds:
            raise ValueError("renew_interval must be > 0 and shorter than ttl_seconds")
        self._redis = redis
        self._ttl = ttl_seconds
        self._key = key
        self._renew_interval = renew_interval or ttl_seconds / 3

    @property
    def key(self) -> str:
        return self._key

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[LeaseHold]:
        """Try to take the lease; yields a ``LeaseHold`` that is truthy when acquired."""
        lock = self._redis.lock(self._key, timeout=self._ttl)
        held = LeaseHold(acquired=bool(await lock.acquire(blocking=False)))
        if not held:
            logger.debug("Tick lease %s held elsewhere", self._key)
            yield held
            return

        renewer = asyncio.create_task(self._renew(lock, held), name=f"lease-renew-{self._key}")
        try:
            yield held
        finally:
            renewer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await renewer
            if not held.lost:
                try:
                    await lock.release()
                except LockError as e:
                    logger.warning("Tick lease %s lost before release: %s", self._key, e)

    async def _renew(self, lock: Any, held: LeaseHold) -> None:
        while True:
            await asyncio.sleep(self._renew_interval)
            try:
                await lock.reacquire()
            except RedisError as e:
                held.lost = True
                logger.error("Tick lease %s could not be renewed; stopping work: %s", self._key, e)
                return
            logger.debug("Renewed tick lease %s for %ss", self._key, self._ttl)
