"""Retry helpers for exchange and store calls."""
from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from obtrader.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_backoff(
    attempt: int,
    base_delay: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 60.0,
) -> float:
    delay = base_delay * (multiplier**attempt)
    return min(delay, max_delay)


def retry_with_backoff(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    initial_delay: float = 1.0,
    name: str = "operation",
    retry_on: tuple[type[BaseException], ...] = (TransientError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn, retrying on retry_on exceptions with exponential delays.

    The last exception is re-raised once attempts are exhausted.
    """
    for attempt in range(attempts):
        try:
            return fn()
        except retry_on as exc:
            if attempt == attempts - 1:
                logger.error("%s failed after %d attempts: %s", name, attempts, exc)
                raise
            delay = exponential_backoff(attempt, initial_delay)
            logger.warning(
                "%s attempt %d/%d failed: %s; retrying in %.1fs",
                name,
                attempt + 1,
                attempts,
                exc,
                delay,
            )
            sleep(delay)
    raise ValueError("attempts must be >= 1")
