"""Process-wide marketplace call budget shared by every user.

Callers serialize on a lock and wait until the minimum spacing derived from
``MARKETPLACE_CALLS_PER_MINUTE`` has passed. A 429 with ``Retry-After``
pauses the whole budget, since eBay rate limits are per application.

The spacing state is shared across event loops (the API server loop and a
worker's ``asyncio.run``); the lock is per loop because an ``asyncio.Lock``
cannot be awaited from a loop other than the one it first bound to.
"""
import asyncio
import time
import weakref
from typing import Optional

from price_reducer.config import settings
from price_reducer.utils.logger import logger


class RateLimitBudget:

    def __init__(self, calls_per_minute: Optional[int] = None):
        if calls_per_minute is None:
            calls_per_minute = settings.MARKETPLACE_CALLS_PER_MINUTE
        self.calls_per_minute = calls_per_minute
        self._last_call = 0.0
        self._paused_until = 0.0
        self._locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
            weakref.WeakKeyDictionary()
        )

    @property
    def min_interval(self) -> float:
        if self.calls_per_minute <= 0:
            return 0.0
        return 60.0 / self.calls_per_minute

    def _get_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        lock = self._locks.get(loop)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[loop] = lock
        return lock

    async def acquire(self) -> None:
        async with self._get_lock():
            now = time.monotonic()
            wait = max(self._last_call + self.min_interval, self._paused_until) - now
            if wait > 0:
                logger.debug("[rate_limit] waiting %.2fs", wait)
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()

    def pause(self, seconds: float) -> None:
        """Hold every caller back for ``seconds`` (from a Retry-After header)."""
        if seconds <= 0:
            return
        until = time.monotonic() + seconds
        if until > self._paused_until:
            self._paused_until = until
            logger.warning("[rate_limit] marketplace asked us to back off for %.1fs", seconds)


marketplace_budget = RateLimitBudget()
