"""
Backoff and bounded-retry helpers shared by storage and orchestration.
"""
import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from ..config import BACKOFF_BASE_SECONDS, BACKOFF_MAX_SECONDS, BACKOFF_JITTER

logger = logging.getLogger("retry")

T = TypeVar("T")


def backoff_with_jitter(attempt: int,
                        base_seconds: float = BACKOFF_BASE_SECONDS,
                        max_seconds: float = BACKOFF_MAX_SECONDS,
                        jitter: float = BACKOFF_JITTER,
                        rng: Optional[Callable[[], float]] = None) -> float:
    """
    Exponential backoff delay for a 1-based attempt number.

    Args:
        attempt: Attempt number (1 for the first retry)
        base_seconds: Delay for the first retry
        max_seconds: Upper bound before jitter
        jitter: Maximum fraction of the delay added at random
        rng: Source of uniform [0, 1) values, random.random by default

    Returns:
        Delay in seconds, never more than max_seconds * (1 + jitter)
    """
    rng = rng or random.random
    exponent = max(0, attempt - 1)
    delay = min(max_seconds, base_seconds * (2 ** exponent))
    return delay + delay * jitter * rng()


def call_with_retries(func: Callable[[], T],
                      attempts: int,
                      retry_on: Tuple[Type[BaseException], ...],
                      label: str = "operation",
                      sleep: Callable[[float], None] = time.sleep,
                      base_seconds: float = BACKOFF_BASE_SECONDS) -> T:
    """
    Call func up to `attempts` times, sleeping with backoff between failures.

    The last exception is re-raised once attempts run out.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as e:
            if attempt >= attempts:
                logger.error("%s failed after %d attempts: %s", label, attempts, e)
                raise
            delay = backoff_with_jitter(attempt, base_seconds=base_seconds)
            logger.warning("%s failed (attempt %d/%d): %s; retrying in %.2fs",
                           label, attempt, attempts, e, delay)
            sleep(delay)
    raise AssertionError("unreachable")
