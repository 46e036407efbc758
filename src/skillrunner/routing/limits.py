"""Per-provider request limiting."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from skillrunner.routing.config import RateLimits

_WINDOW_SECONDS = 60.0


class RateLimiter:
    """Caps concurrent requests and requests per minute for one provider.

    Use as an async context manager around each provider call. Limits of
    zero are unlimited.
    """

    def __init__(
        self,
        limits: RateLimits,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rpm = limits.requests_per_minute
        concurrent = limits.concurrent_requests
        self._semaphore = asyncio.Semaphore(concurrent) if concurrent > 0 else None
        self._clock = clock
        self._sent: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def _wait_for_slot(self) -> None:
        if self._rpm <= 0:
            return
        while True:
            async with self._lock:
                now = self._clock()
                while self._sent and now - self._sent[0] >= _WINDOW_SECONDS:
                    self._sent.popleft()
                if len(self._sent) < self._rpm:
                    self._sent.append(now)
                    return
                delay = _WINDOW_SECONDS - (now - self._sent[0])
            await asyncio.sleep(max(delay, 0.01))

    async def __aenter__(self) -> RateLimiter:
        if self._semaphore is not None:
            await self._semaphore.acquire()
        try:
            await self._wait_for_slot()
        except BaseException:
            if self._semaphore is not None:
                self._semaphore.release()
            raise
        return self

    async def __aexit__(self, *_: object) -> None:
        if self._semaphore is not None:
            self._semaphore.release()
