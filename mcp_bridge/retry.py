"""
Bounded retry with fixed backoff for connect, catalogue and health calls
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """All attempts failed; wraps the last error"""

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        super().__init__(f"{label} failed after {attempts} attempts: {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


def always_retry(error: BaseException) -> bool:
    return True


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    delay: float,
    timeout: Optional[float] = None,
    retryable: Callable[[BaseException], bool] = always_retry,
    label: str = "operation",
    on_error: Optional[Callable[[BaseException, int], None]] = None,
) -> T:
    """
    Run operation() up to `attempts` times

    Each attempt is bounded by `timeout` when given. A non-retryable error is
    re-raised immediately; otherwise RetryExhausted is raised once the
    attempts are used up.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            if timeout is not None:
                return await asyncio.wait_for(operation(), timeout=timeout)
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                e = asyncio.TimeoutError(f"{label} timed out after {timeout}s")
            last_error = e
            if on_error is not None:
                on_error(e, attempt)
            if not retryable(e):
                raise
            if attempt < attempts:
                logger.debug(f"Retrying {label} (attempt {attempt + 1}/{attempts})")
                await asyncio.sleep(delay)

    raise RetryExhausted(label, attempts, last_error)
