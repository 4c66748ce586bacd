"""Retrying transient target failures with tenacity.

Network errors, 5xx answers and rate limiting are retried with jittered
exponential backoff; a 429 or 503 that names a ``Retry-After`` waits at
least that long. Creates pass ``RESEND_SAFE_ERRORS`` so a POST the target
may have handled is never sent again. When attempts run out the last
exception is re-raised unchanged, and the import treats it as run-fatal.
"""

from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from forum_migration.client.exceptions import (
    ConnectionFailedError,
    NetworkError,
    RateLimitError,
    ServerError,
    ServiceUnavailableError,
)
from forum_migration.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (NetworkError, ServerError, RateLimitError)

# Failures where the target provably did not act on the request. Only these
# are safe to resend for a request that creates something.
RESEND_SAFE_ERRORS = (ConnectionFailedError, RateLimitError, ServiceUnavailableError)


class _WaitHonouringRetryAfter:
    """Backoff that never undercuts the target's Retry-After header."""

    def __init__(self, min_wait: float, max_wait: float):
        self.backoff = wait_random_exponential(multiplier=1, min=min_wait, max=max_wait)
        self.max_wait = max_wait

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self.backoff(retry_state)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, min(float(retry_after), self.max_wait))
        return delay


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.info(
        "target_call_retrying",
        call=getattr(retry_state.fn, "__name__", "call"),
        attempt=retry_state.attempt_number,
        wait_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
        error=str(error),
    )


def retry_with_backoff(
    max_attempts: int = 5,
    min_wait: float = 2,
    max_wait: float = 60,
    retry_on: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate a coroutine function so transient failures are retried.

    Args:
        max_attempts: Attempts including the first
        min_wait: Lower bound of the backoff in seconds
        max_wait: Upper bound of the backoff in seconds
        retry_on: Exception types worth another attempt
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=_WaitHonouringRetryAfter(min_wait, max_wait),
                retry=retry_if_exception_type(retry_on),
                before_sleep=_log_retry,
                reraise=True,
            )
            return await retrying(func, *args, **kwargs)

        return wrapper

    return decorator
