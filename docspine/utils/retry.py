"""Retry logic with exponential backoff for gatekeeper API calls.

This module provides a decorator for automatic retry of transient failures
(rate limits, server errors, dropped connections) with exponential backoff
and jitter.
"""

import asyncio
import functools
import inspect
import logging
import random
import time
from typing import Any, Callable, Set, Type, TypeVar, cast

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# HTTP status codes that should trigger retry
RETRYABLE_STATUS_CODES: Set[int] = {
    429,  # Rate limit
    500,  # Server error
    502,  # Bad gateway
    503,  # Service unavailable
}

# HTTP status codes that should NOT trigger retry
NON_RETRYABLE_STATUS_CODES: Set[int] = {
    400,  # Bad request
    401,  # Unauthorized
    403,  # Forbidden
    404,  # Not found
    422,  # Unprocessable entity
}

_NETWORK_ERROR_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "temporarily unavailable",
)

# The gatekeeper has its own overall timeout, so keep retries short
MAX_RETRIES = 2
BASE_DELAY = 0.5  # seconds
MAX_JITTER = 0.5  # seconds


def retry_with_backoff(
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    max_jitter: float = MAX_JITTER,
    retryable_exceptions: tuple[Type[Exception], ...] = (),
) -> Callable[[F], F]:
    """Decorator that retries a function with exponential backoff.

    Retries on 429/500/502/503 and on network timeouts or connection
    errors. Never retries 4xx client errors. Other exceptions are retried
    only if they are instances of ``retryable_exceptions``.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Base delay in seconds for exponential backoff
        max_jitter: Maximum random jitter in seconds
        retryable_exceptions: Extra exception types to retry

    Returns:
        Decorated function with retry logic
    """

    def _next_delay(func: Callable[..., Any], attempt: int, error: Exception) -> float:
        delay = (base_delay * (2 ** attempt)) + (random.random() * max_jitter)
        logger.warning(
            f"{func.__name__} attempt {attempt + 1}/{max_retries} failed: {error}. "
            f"Retrying in {delay:.2f}s..."
        )
        return delay

    def _give_up(func: Callable[..., Any], attempt: int, error: Exception) -> bool:
        if not should_retry_exception(error, retryable_exceptions):
            return True
        if attempt >= max_retries:
            logger.error(f"{func.__name__} failed after {max_retries} retries: {error}")
            return True
        return False

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if _give_up(func, attempt, e):
                        raise
                    await asyncio.sleep(_next_delay(func, attempt, e))
                    attempt += 1

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if _give_up(func, attempt, e):
                        raise
                    time.sleep(_next_delay(func, attempt, e))
                    attempt += 1

        if inspect.iscoroutinefunction(func):
            return cast(F, async_wrapper)
        return cast(F, sync_wrapper)

    return decorator


def should_retry_exception(
    exception: Exception, retryable_exceptions: tuple[Type[Exception], ...] = ()
) -> bool:
    """Determine if an exception should trigger a retry."""
    status_code = extract_status_code(exception)
    if status_code is not None:
        if status_code in NON_RETRYABLE_STATUS_CODES:
            return False
        if status_code in RETRYABLE_STATUS_CODES:
            return True

    message = str(exception).lower()
    if any(marker in message for marker in _NETWORK_ERROR_MARKERS):
        return True

    return bool(retryable_exceptions) and isinstance(exception, retryable_exceptions)


def extract_status_code(exception: Exception) -> int | None:
    """Extract an HTTP status code from an exception, if it carries one."""
    for attr in ("status_code", "code"):
        value = getattr(exception, attr, None)
        if isinstance(value, int):
            return value

    response = getattr(exception, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value

    return None
