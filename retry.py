"""
Retry helpers for outbound calls (image service, database writes).

Transient failures (timeouts, dropped connections, 408/429/5xx gateway
statuses from the image service, a locked SQLite database) are retried.
Client errors raised by the API itself, including rate limiting, are not.
"""

import asyncio
import inspect
import logging
import sqlite3
from typing import Any, Awaitable, Callable, Optional, Sequence

from errors import APIError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429, 502, 503, 504}

RETRYABLE_MESSAGE_FRAGMENTS = (
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "econnrefused",
    "enotfound",
    "network",
    "connection",
    "pool",
    "database is locked",
)


def _status_code_of(error: Exception) -> Optional[int]:
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable_error(error: Exception) -> bool:
    """Decide whether an error is worth another attempt."""
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(error, sqlite3.OperationalError):
        return True
    if isinstance(error, APIError) and 400 <= error.status_code < 500:
        return False

    status = _status_code_of(error)
    if status is not None:
        return status in RETRYABLE_STATUS_CODES

    message = str(error).lower()
    return any(fragment in message for fragment in RETRYABLE_MESSAGE_FRAGMENTS)


async def _call(operation: Callable[[], Any]) -> Any:
    result = operation()
    if inspect.isawaitable(result):
        result = await result
    return result


async def execute_with_retry(
    operation: Callable[[], Any],
    operation_name: str = "operation",
    max_attempts: int = 3,
    delays: Sequence[float] = (1.0, 2.0, 4.0),
    should_retry: Callable[[Exception], bool] = is_retryable_error,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """
    Run an operation, retrying transient failures with a fixed delay schedule.

    Args:
        operation: Zero-argument callable; may return a value or an awaitable
        operation_name: Name used in log messages
        max_attempts: Total attempts including the first
        delays: Delay before each retry; the last value is reused if attempts outrun it
        should_retry: Predicate deciding whether an error is retried
        sleep: Awaitable sleep function

    Returns:
        The operation's result

    Raises:
        The last error once attempts are exhausted, or the first non-retryable error
    """
    for attempt in range(1, max_attempts + 1):
        try:
            result = await _call(operation)
            if attempt > 1:
                logger.info(f"{operation_name} succeeded on attempt {attempt}/{max_attempts}")
            return result
        except Exception as e:
            if attempt >= max_attempts or not should_retry(e):
                logger.error(f"{operation_name} failed after {attempt} attempt(s): {e}")
                raise
            delay = delays[min(attempt - 1, len(delays) - 1)] if delays else 0
            logger.warning(
                f"{operation_name} attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {delay}s"
            )
            await sleep(delay)


async def execute_with_backoff(
    operation: Callable[[], Any],
    operation_name: str = "operation",
    max_attempts: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    factor: float = 2.0,
    should_retry: Callable[[Exception], bool] = is_retryable_error,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """Run an operation with capped exponential backoff between attempts."""
    delays = [min(base_delay * (factor ** i), max_delay) for i in range(max(max_attempts - 1, 1))]
    return await execute_with_retry(
        operation,
        operation_name=operation_name,
        max_attempts=max_attempts,
        delays=delays,
        should_retry=should_retry,
        sleep=sleep,
    )
