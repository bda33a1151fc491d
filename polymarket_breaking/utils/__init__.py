"""Utility modules."""

from polymarket_breaking.utils.cache import TTLCache
from polymarket_breaking.utils.logging import get_logger, setup_logging
from polymarket_breaking.utils.rate_limit import (
    AsyncRateLimiter,
    FixedWindowRateLimiter,
    RateLimitDecision,
    RateLimiter,
)
from polymarket_breaking.utils.retry import async_retry

__all__ = [
    "get_logger",
    "setup_logging",
    "AsyncRateLimiter",
    "FixedWindowRateLimiter",
    "RateLimitDecision",
    "RateLimiter",
    "TTLCache",
    "async_retry",
]
