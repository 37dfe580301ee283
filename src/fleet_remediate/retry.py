"""
Retry policy for queued remediation runs.

Pure functions decide how long a failed run waits before its next attempt and
whether it is allowed another attempt at all. A run whose retry budget is
exhausted goes to the dead-letter lane instead of being re-queued.

The ``retry_sync`` decorator at the bottom is the in-process variant used by
the run store to ride out transient SQLite lock contention.
"""

import functools
import logging
import math
import random
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple, Type, TypeVar

from .constants import (
    DEFAULT_RETRY_BASE_SECONDS,
    MAX_ATTEMPTS_COUNTER,
    MAX_MAX_ATTEMPTS,
    MAX_RETRY_DELAY_SECONDS,
    MIN_MAX_ATTEMPTS,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

# 2**62 already exceeds any sane cap; larger exponents only risk float overflow
_MAX_EXPONENT = 62


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def clamp_int(value, minimum: int, maximum: int) -> int:
    """Truncate ``value`` to an int inside ``[minimum, maximum]``; junk maps to ``minimum``."""
    if not _is_number(value):
        return minimum
    result = int(value)
    if result < minimum:
        return minimum
    if result > maximum:
        return maximum
    return result


def compute_retry_delay_seconds(attempt, base_seconds, cap_seconds) -> float:
    """
    Calculate the backoff delay after a failed attempt.

    ``delay = min(base * 2 ** (attempt - 1), cap)``

    Args:
        attempt: 1-indexed number of the attempt that just failed
        base_seconds: Delay after the first failure
        cap_seconds: Upper bound on the delay

    Returns:
        Non-negative, finite delay in seconds. Invalid ``attempt`` or ``cap``
        values fall back to ``base_seconds``.
    """
    if not _is_number(base_seconds) or base_seconds < 0:
        base_seconds = DEFAULT_RETRY_BASE_SECONDS
    base = min(float(base_seconds), float(MAX_RETRY_DELAY_SECONDS))

    if not _is_number(attempt) or attempt < 1:
        return base
    if not _is_number(cap_seconds) or cap_seconds < 0:
        return base

    exponent = min(int(attempt) - 1, _MAX_EXPONENT)
    delay = min(base * (2 ** exponent), float(cap_seconds))
    return max(0.0, delay)


def should_retry_attempt(attempts, max_attempts) -> bool:
    """
    Decide whether a run may be re-queued after a failure.

    Args:
        attempts: Attempt counter after recording the failure
        max_attempts: Retry budget for the run

    Returns:
        True iff ``attempts < max_attempts``. At equality the run belongs in the DLQ.
    """
    used = clamp_int(attempts, 0, MAX_ATTEMPTS_COUNTER)
    budget = clamp_int(max_attempts, MIN_MAX_ATTEMPTS, MAX_MAX_ATTEMPTS)
    return used < budget


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_next_retry_at(now: datetime, delay_seconds) -> datetime:
    """Return ``now + delay`` as an aware UTC datetime."""
    if not _is_number(delay_seconds) or delay_seconds < 0:
        delay_seconds = 0
    delay = min(float(delay_seconds), float(MAX_RETRY_DELAY_SECONDS))
    return ensure_utc(now) + timedelta(seconds=delay)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime in the canonical ISO-8601 UTC form used on disk."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def calculate_backoff(
    attempt: int,
    backoff_factor: float,
    min_wait: float,
    max_wait: float,
    jitter: bool
) -> float:
    """
    Calculate exponential backoff wait time for in-process retries.

    Args:
        attempt: Current attempt number (0-indexed)
        backoff_factor: Multiplier for exponential backoff
        min_wait: Minimum wait time
        max_wait: Maximum wait time
        jitter: Whether to add random jitter

    Returns:
        Wait time in seconds
    """
    wait = min(max_wait, min_wait * (2 ** attempt) * backoff_factor)

    # Randomize between 50-100% of calculated wait
    if jitter:
        wait = wait * (0.5 + random.random() * 0.5)

    return wait


def retry_sync(
    max_attempts: int = 3,
    backoff_factor: float = 1.0,
    min_wait: float = 0.05,
    max_wait: float = 1.0,
    jitter: bool = True,
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,)
) -> Callable:
    """
    Decorator for synchronous retry with exponential backoff.

    The last exception is re-raised once ``max_attempts`` is used up.

    Example:
        @retry_sync(max_attempts=3, retryable_exceptions=(sqlite3.OperationalError,))
        def write_row(conn):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except retryable_exceptions as e:
                    if attempt + 1 >= max_attempts:
                        logger.error(
                            f"Max retries ({max_attempts}) exceeded for {func.__name__}: {e}"
                        )
                        raise

                    wait_time = calculate_backoff(
                        attempt, backoff_factor, min_wait, max_wait, jitter
                    )
                    logger.warning(
                        f"Retry {attempt + 1}/{max_attempts} for {func.__name__} "
                        f"after {wait_time:.2f}s: {e}"
                    )
                    time.sleep(wait_time)

            raise RuntimeError(f"retry_sync exhausted without result for {func.__name__}")

        return wrapper
    return decorator
