"""In-memory sliding-window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Single event loop: counter state is mutated without locks.
"""

from __future__ import annotations

import math
import time

from donation_guard.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from donation_guard.adapters.rate_limit.window_counter import WindowCounter
from donation_guard.core.scheduling import Clock


class SlidingWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter admitting ``limit`` requests per key-owned window.

    The window of a key starts with its first admitted request, so callers
    get a full window of budget regardless of wall-clock alignment.

    Important:
        This limiter is per-process only. If the API runs with multiple workers
        each worker enforces its own independent limits.
    """

    def __init__(
        self,
        counter: WindowCounter,
        *,
        limit: int,
        clock: Clock = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            counter: Window counter holding per-key state.
            limit: Maximum number of admitted requests per window.
            clock: Time source; should be the counter's clock.

        Raises:
            ValueError: If limit is invalid.
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")

        self._counter = counter
        self._limit = limit
        self._clock = clock

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def counter(self) -> WindowCounter:
        return self._counter

    def _reset_at(self, key: str) -> tuple[int, float]:
        until_reset = self._counter.get_time_until_reset(key)
        return int(math.ceil(self._clock() + until_reset)), until_reset

    def consume(self, key: str) -> RateLimitResult:
        """Admit one request for ``key`` or deny it without counting it.

        Raises:
            ValueError: If key is empty.
        """
        if not key:
            raise ValueError("key must be a non-empty string")

        if self._counter.get_count(key) >= self._limit:
            reset_at, until_reset = self._reset_at(key)
            return RateLimitResult(
                allowed=False,
                limit=self._limit,
                remaining=0,
                reset_at=reset_at,
                retry_after_seconds=max(0, int(math.ceil(until_reset))),
            )

        new_count = self._counter.increment(key)
        reset_at, _ = self._reset_at(key)
        return RateLimitResult(
            allowed=True,
            limit=self._limit,
            remaining=max(0, self._limit - new_count),
            reset_at=reset_at,
            retry_after_seconds=None,
        )
