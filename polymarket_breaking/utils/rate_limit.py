"""Rate limiting primitives.

Two flavours are provided:

* ``AsyncRateLimiter`` - token bucket that *waits* for a slot. Used to pace
  outbound calls to third-party APIs.
* ``FixedWindowRateLimiter`` - keyed counter that *rejects* once a key has used
  its quota for the current window. Used to guard inbound endpoints.
"""

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol


class AsyncRateLimiter:
    """Token bucket rate limiter for async operations.

    Example:
        limiter = AsyncRateLimiter(rate=2.0)  # 2 requests per second
        async with limiter:
            await make_request()
    """

    def __init__(self, rate: float, capacity: int | None = None) -> None:
        """Initialize rate limiter.

        Args:
            rate: Tokens per second to replenish.
            capacity: Maximum tokens (defaults to 2x rate).
        """
        self.rate = rate
        self.capacity = capacity or max(1, int(rate * 2))
        self._tokens = float(self.capacity)
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Acquire a token, waiting if necessary."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_update
            self._last_update = now

            self._tokens = min(
                self.capacity,
                self._tokens + elapsed * self.rate
            )

            if self._tokens < 1:
                wait_time = (1 - self._tokens) / self.rate
                await asyncio.sleep(wait_time)
                self._tokens = 0.0
                self._last_update = time.monotonic()
            else:
                self._tokens -= 1

    async def __aenter__(self) -> "AsyncRateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, *args: object) -> None:
        pass


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single rate limit check."""

    allowed: bool
    remaining: int
    retry_after: int
    reset_at: float


class RateLimiter(Protocol):
    """Anything that can decide whether a keyed attempt may proceed."""

    def check_and_consume(self, key: str) -> RateLimitDecision: ...


class FixedWindowRateLimiter:
    """In-process fixed-window limiter keyed by an arbitrary string.

    State lives in this process only, so limits are per instance. Swap in
    another ``RateLimiter`` implementation for shared state across instances.

    Args:
        max_attempts: Attempts allowed per key per window.
        window_seconds: Window length.
        clock: Wall clock returning epoch seconds (injectable for tests).
    """

    def __init__(
        self,
        max_attempts: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        # key -> (count, window_reset_epoch)
        self._windows: dict[str, tuple[int, float]] = {}

    def check_and_consume(self, key: str) -> RateLimitDecision:
        now = self._clock()
        count, reset_at = self._windows.get(key, (0, 0.0))

        if reset_at <= now:
            count, reset_at = 0, now + self.window_seconds

        if count >= self.max_attempts:
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                retry_after=max(1, math.ceil(reset_at - now)),
                reset_at=reset_at,
            )

        count += 1
        self._windows[key] = (count, reset_at)
        self._evict_expired(now)
        return RateLimitDecision(
            allowed=True,
            remaining=self.max_attempts - count,
            retry_after=0,
            reset_at=reset_at,
        )

    def reset(self) -> None:
        """Forget all tracked keys."""
        self._windows.clear()

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, (_, reset_at) in self._windows.items() if reset_at <= now]
        for key in expired:
            del self._windows[key]
