from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 8

logger = logging.getLogger(__name__)


class RetryExhaustedError(RuntimeError):
    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


async def retry_if_needed(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = 0.0,
    give_up_on: tuple[type[Exception], ...] = (),
    label: str = "operation",
) -> T:
    """Await ``operation`` and re-run it on failure, at most ``max_retries`` more times.

    Exceptions listed in ``give_up_on`` propagate immediately. When every
    attempt fails, RetryExhaustedError is raised from the last failure.
    Delays grow as ``base_delay * 2**n``; a zero base delay retries immediately.
    """
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except give_up_on:
            raise
        except Exception as exc:
            if attempt > max_retries:
                logger.error("%s failed after %d attempts: %s", label, attempt, exc)
                raise RetryExhaustedError(attempt, exc) from exc
            logger.warning("%s failed (attempt %d): %s; retrying", label, attempt, exc)
            delay = base_delay * (2 ** (attempt - 1))
            if delay > 0:
                await asyncio.sleep(delay)
