"""Account-wide call pacing."""

from __future__ import annotations

import asyncio
import time


class RateLimiter:
    """Enforces a minimum interval between consecutive calls.

    The upstream limit is per account, not per endpoint, so one limiter is
    shared by every request of a run.
    """

    def __init__(self, *, min_interval: float = 0.5) -> None:
        self.min_interval = min_interval
        self._lock = asyncio.Lock()
        self._last_request = 0.0

    async def wait(self) -> None:
        async with self._lock:
            elapsed = time.monotonic() - self._last_request
            if elapsed < self.min_interval:
                await asyncio.sleep(self.min_interval - elapsed)
            self._last_request = time.monotonic()
