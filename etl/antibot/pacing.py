"""Request pacing: a minimum interval between requests, tracked per lane."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Hashable, Optional

LOGGER = logging.getLogger(__name__)


class LaneRateLimiter:
    """Per-lane request pacing.

    Each lane gets its own lock and last-grant timestamp, so lanes never wait
    on each other. Within a lane, consecutive slots are at least
    ``60 / requests_per_minute`` seconds apart.
    """

    def __init__(
        self,
        requests_per_minute: float = 20.0,
        retry_delay: float = 30.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Parameters
        ----------
        requests_per_minute : float
            Allowed request rate for a single lane
        retry_delay : float
            Seconds to back off after the upstream signals a rate limit
        clock, sleep
            Time source and async sleep; injectable for tests
        """
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute
        self.retry_delay = retry_delay
        self._clock = clock
        self._sleep = sleep
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._last_grant: Dict[Hashable, float] = {}

    def _lock_for(self, lane: Hashable) -> asyncio.Lock:
        lock = self._locks.get(lane)
        if lock is None:
            lock = self._locks[lane] = asyncio.Lock()
        return lock

    async def wait_slot(self, lane: Hashable) -> float:
        """Wait until `lane` may issue its next request; returns seconds waited."""
        async with self._lock_for(lane):
            waited = 0.0
            last = self._last_grant.get(lane)
            if last is not None:
                remaining = self.min_interval - (self._clock() - last)
                if remaining > 0:
                    LOGGER.debug("Lane %s: waiting %.2fs before next request", lane, remaining)
                    await self._sleep(remaining)
                    waited = remaining
            self._last_grant[lane] = self._clock()
            return waited

    def last_grant(self, lane: Hashable) -> Optional[float]:
        return self._last_grant.get(lane)
