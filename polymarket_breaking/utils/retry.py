"""Retry utilities with exponential backoff for outbound HTTP calls."""

from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from polymarket_breaking.utils.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Status codes worth another attempt; other 4xx responses are final
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def is_retryable_http_error(exc: BaseException) -> bool:
    """Return True for transport failures and transient HTTP statuses."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, httpx.TransportError)


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "Retrying after transient error",
        extra={
            "ctx_attempt": state.attempt_number,
            "ctx_wait": round(state.next_action.sleep, 2) if state.next_action else None,
            "ctx_error": str(exc),
            "ctx_error_type": type(exc).__name__,
        },
    )


async def async_retry(
    fn: Callable[P, Awaitable[T]],
    *args: P.args,
    attempts: int = 3,
    base_wait: float = 0.2,
    max_wait: float = 2.0,
    retry_on: Callable[[BaseException], bool] = is_retryable_http_error,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with retry logic.

    Uses exponential backoff between retries. Only exceptions accepted by
    ``retry_on`` are retried; anything else propagates on the first attempt.

    Args:
        fn: Async function to execute.
        *args: Positional arguments to pass to fn.
        attempts: Maximum number of attempts.
        base_wait: Base wait time in seconds.
        max_wait: Maximum wait time in seconds.
        retry_on: Predicate deciding whether an exception is retried.
        **kwargs: Keyword arguments to pass to fn.

    Returns:
        Result from successful function execution.

    Raises:
        The last exception if all retries fail.
    """
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=base_wait, max=max_wait),
            retry=retry_if_exception(retry_on),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                return await fn(*args, **kwargs)
    except RetryError as e:
        raise e.last_attempt.result() from e

    # This should never be reached, but satisfies type checker
    raise RuntimeError("Retry logic failed unexpectedly")
