"""
Retry Policy - Bounded exponential backoff for async operations

The first attempt runs immediately; retry n waits base_delay * 2**n
(base, 2x base, 4x base, ...). Errors the predicate rejects are raised at
once. When attempts run out the last error is raised unchanged.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar
from loguru import logger

from .exceptions import OperationTimeoutError, PermanentError

T = TypeVar("T")


def is_retryable(error: BaseException) -> bool:
    """Everything except permanent/domain errors is worth another try"""
    return not isinstance(error, PermanentError)


def should_retry_job(error: BaseException, attempts_made: int, max_attempts: int) -> bool:
    """Job-level decision: retry only retryable errors with attempts left"""
    return is_retryable(error) and attempts_made < max_attempts


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay before the retry following 0-indexed `attempt`"""
    return base_delay * (2 ** attempt)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    retryable: Callable[[BaseException], bool] = is_retryable,
    timeout: Optional[float] = None,
    name: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
) -> T:
    """
    Run `operation` with exponential-backoff retries

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        max_attempts: Retries after the first attempt (total = max_attempts + 1)
        base_delay: Seconds before the first retry
        retryable: Predicate deciding whether an error is retried
        timeout: Per-attempt timeout in seconds
        name: Label used in logs and timeout errors
        sleep: Sleep coroutine (injectable for tests)

    Returns:
        The first successful result
    """
    last_error: Optional[BaseException] = None

    for attempt in range(max_attempts + 1):
        try:
            if timeout is None:
                return await operation()
            try:
                return await asyncio.wait_for(operation(), timeout)
            except asyncio.TimeoutError as e:
                raise OperationTimeoutError(name, timeout) from e

        except Exception as e:
            last_error = e

            if not retryable(e):
                logger.warning(f"{name} failed with non-retryable error: {e}")
                raise

            if attempt == max_attempts:
                break

            delay = backoff_delay(base_delay, attempt)
            logger.warning(f"{name} failed ({e}); retry {attempt + 1}/{max_attempts} "
                           f"in {delay:.3f}s")
            await sleep(delay)

    logger.error(f"{name} failed after {max_attempts + 1} attempts: {last_error}")
    raise last_error
