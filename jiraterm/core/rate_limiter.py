"""Token-bucket gate in front of every outbound Jira request."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Awaitable, Callable, Optional

from jiraterm.core.metrics import Metrics

logger = logging.getLogger(__name__)

# absorbs float drift so that calls spaced exactly 1/R apart never wait
_EPSILON = 1e-9


class RateLimiter:
    """Bucket of ``capacity`` tokens refilled at ``refill_rate`` tokens/second.

    There is no waiter queue: every caller computes its own wait and tries
    again afterwards, so a caller can in theory be overtaken repeatedly under
    heavy contention.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: Optional[Metrics] = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")
        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics
        self._lock = threading.Lock()
        self._tokens = float(capacity)
        self._last_refill = clock()

    @classmethod
    def jira_cloud(cls, **kw) -> "RateLimiter":
        return cls(100, 100 / 60.0, **kw)

    @property
    def tokens(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
            self._last_refill = now

    def acquire(self) -> float:
        """Take a token if one is available.

        Returns 0.0 when a token was consumed, otherwise the number of
        seconds until one accrues (nothing is consumed in that case).
        """
        with self._lock:
            self._refill()
            if self._tokens + _EPSILON >= 1.0:
                self._tokens = max(0.0, self._tokens - 1.0)
                return 0.0
            return (1.0 - self._tokens) / self.refill_rate

    def try_acquire(self) -> bool:
        return self.acquire() == 0.0

    async def wait_for_token(self) -> float:
        """Suspend until a token is consumed; returns the total time waited."""
        waited = 0.0
        while True:
            delay = self.acquire()
            if delay <= 0:
                break
            logger.debug("[RateLimit] no token, waiting %.3fs", delay)
            await self._sleep(delay)
            waited += delay
        if waited and self._metrics is not None:
            self._metrics.rate_limit_waits.inc(waited)
        return waited
