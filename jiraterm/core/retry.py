"""Transient-failure policy shared by every API operation.

The executor knows nothing about tickets. It only looks at the error class:
``NetworkError``, ``RateLimited`` and ``ServerError`` are retried, everything
else is raised on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from jiraterm.core.errors import JiraError, RateLimited
from jiraterm.core.metrics import Metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_error(error: BaseException) -> bool:
    return isinstance(error, JiraError) and error.transient


class RetryExecutor:
    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
        metrics: Optional[Metrics] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._jitter = jitter
        self._metrics = metrics

    def backoff_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Delay before the attempt following ``attempt`` (1-based).

        A server-supplied Retry-After is honored exactly; otherwise
        exponential backoff with up to ``base_delay`` of jitter, capped.
        """
        if isinstance(error, RateLimited) and error.retry_after is not None:
            return max(0.0, error.retry_after)
        delay = self.base_delay * (2 ** (attempt - 1)) + self._jitter(0, self.base_delay)
        return min(delay, self.max_delay)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_name: str = "request",
        target: Optional[str] = None,
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except JiraError as e:
                e.attempts = attempt
                e.with_context(operation_name, target)
                if not e.transient:
                    raise
                if attempt >= self.max_attempts:
                    logger.warning(
                        "[Retry] %s %s gave up after %d attempts: %s",
                        operation_name,
                        target or "",
                        attempt,
                        e.message,
                    )
                    raise
                delay = self.backoff_delay(attempt, e)
                logger.warning(
                    "[Retry] %s %s attempt %d/%d failed (%s), retrying in %.2fs",
                    operation_name,
                    target or "",
                    attempt,
                    self.max_attempts,
                    type(e).__name__,
                    delay,
                )
                if self._metrics is not None:
                    self._metrics.retries.labels(type(e).__name__).inc()
                await self._sleep(delay)
