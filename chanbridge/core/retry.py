"""Retry logic with exponential backoff for transient platform failures."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from chanbridge.observability.logging import get_logger

T = TypeVar("T")
log = get_logger("retry")


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 5.0,
    retryable_exceptions: tuple[Type[BaseException], ...] = (asyncio.TimeoutError,),
    **kwargs: Any,
) -> T:
    """
    Retry an async function with exponential backoff.

    Args:
        func: Async function to retry
        *args: Positional arguments for func
        max_attempts: Maximum number of attempts (1 disables retrying)
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
        retryable_exceptions: Exceptions that should trigger retry
        **kwargs: Keyword arguments for func

    Returns:
        Function result

    Raises:
        The last exception raised by func once attempts are exhausted, or
        immediately for exceptions outside `retryable_exceptions`.
    """
    retry_config = AsyncRetrying(
        stop=stop_after_attempt(max(max_attempts, 1)),
        wait=wait_exponential(min=min_wait, max=max_wait),
        retry=retry_if_exception_type(retryable_exceptions),
        reraise=True,
    )

    name = getattr(func, "__name__", repr(func))
    attempt = 0
    async for attempt_state in retry_config:
        with attempt_state:
            attempt += 1
            try:
                result = await func(*args, **kwargs)
            except retryable_exceptions as e:
                log.warning(
                    "retry_failed_attempt",
                    func=name,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
            if attempt > 1:
                log.info("retry_succeeded", func=name, attempts=attempt)
            return result

    # This should never be reached due to reraise=True
    raise RuntimeError("Retry logic failed unexpectedly")
