"""Concurrency limiter for outbound upstream requests.

Caps how many requests run at once against the government API so the
scraper stays within fair use and avoids upstream throttling.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    """Counting-semaphore limiter over pending coroutine factories.

    Waiters are admitted in submission order once a slot frees up. The
    limiter does not interpret task failures; it only guarantees that the
    slot is released exactly once, however the task ends.

    Example:
        >>> limiter = RateLimiter(max_concurrency=10)
        >>> data = await limiter.execute(lambda: client.get(url))
    """

    def __init__(self, max_concurrency: int = 10):
        """Initialize rate limiter.

        Args:
            max_concurrency: Maximum number of tasks in flight at once
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")

        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._submitted = 0
        self._active = 0
        self._started_at = time.monotonic()

    async def execute(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run ``task`` once a slot is available and return its result.

        Args:
            task: Zero-argument callable returning an awaitable

        Raises:
            Whatever ``task`` raises, unchanged
        """
        self._submitted += 1
        async with self._semaphore:
            self._active += 1
            try:
                return await task()
            finally:
                self._active -= 1

    @property
    def active_count(self) -> int:
        """Number of tasks currently holding a slot."""
        return self._active

    def get_stats(self) -> dict:
        """Get submission statistics.

        Returns:
            Dict with submitted_count, elapsed_seconds, throughput,
            active_count and max_concurrency
        """
        elapsed = time.monotonic() - self._started_at
        throughput = self._submitted / elapsed if elapsed > 0 else 0.0
        return {
            "submitted_count": self._submitted,
            "elapsed_seconds": elapsed,
            "throughput": throughput,
            "active_count": self._active,
            "max_concurrency": self.max_concurrency,
        }

    def reset(self) -> None:
        """Clear counters. In-flight tasks keep their slots."""
        self._submitted = 0
        self._started_at = time.monotonic()
        logger.debug("Rate limiter counters reset")
