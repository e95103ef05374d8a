"""Transport-level retry with exponential backoff for search gateway calls.

Only transient HTTP failures (network errors, timeouts, 429, 5xx) are retried.
Unlike query rewriting in the execution stage, this never changes the request.
The last error is re-raised on exhaustion: the gateway must report the failure
so the execution stage can pick a fallback.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# 4xx errors (except 429 Too Many Requests) are client errors; retrying
# will not fix them.
_DEFAULT_NON_RETRYABLE_STATUSES: frozenset[int] = frozenset({400, 401, 403, 404, 405, 410, 422})


async def retry_with_backoff(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    non_retryable_statuses: frozenset[int] = _DEFAULT_NON_RETRYABLE_STATUSES,
    **kwargs: Any,
) -> T:
    """Retry async function with exponential backoff on transient HTTP failure.

    Args:
        func: Async function to retry
        max_attempts: Total attempts including the first (1 disables retry)
        base_delay: Initial retry delay in seconds
        max_delay: Maximum retry delay in seconds
        non_retryable_statuses: HTTP status codes that fail immediately

    Returns:
        Result from the first successful call

    Raises:
        The last exception once attempts are exhausted, or immediately for a
        non-retryable status or a non-HTTP error.
    """
    name = getattr(func, "__name__", "call")
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func(*args, **kwargs)
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code in non_retryable_statuses:
                logger.warning(
                    "retry.non_retryable_http_error",
                    func=name,
                    status_code=status_code,
                )
                raise
            if attempt >= max_attempts:
                logger.warning(
                    "retry.exhausted", func=name, attempts=attempt, status_code=status_code
                )
                raise
            error = str(e)
        except httpx.TransportError as e:
            if attempt >= max_attempts:
                logger.warning("retry.exhausted", func=name, attempts=attempt, error=str(e))
                raise
            error = str(e)

        delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
        logger.info(
            "retry.attempt",
            func=name,
            attempt=attempt,
            max_attempts=max_attempts,
            delay_seconds=delay,
            error=error,
        )
        await asyncio.sleep(delay)
