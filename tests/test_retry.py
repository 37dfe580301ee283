"""
Tests for the run retry policy and the in-process retry decorator.
"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from fleet_remediate.retry import (
    calculate_backoff,
    clamp_int,
    compute_next_retry_at,
    compute_retry_delay_seconds,
    ensure_utc,
    format_timestamp,
    retry_sync,
    should_retry_attempt,
)


def test_retry_delay_doubles_until_cap():
    """Delay doubles per failed attempt and stops at the cap."""
    assert compute_retry_delay_seconds(1, 15, 900) == 15
    assert compute_retry_delay_seconds(2, 15, 900) == 30
    assert compute_retry_delay_seconds(3, 15, 900) == 60
    assert compute_retry_delay_seconds(6, 15, 900) == 480
    assert compute_retry_delay_seconds(7, 15, 900) == 900
    assert compute_retry_delay_seconds(50, 15, 900) == 900


def test_retry_delay_huge_attempt_stays_finite():
    """Very large attempt numbers never overflow."""
    delay = compute_retry_delay_seconds(10_000, 15, 900)
    assert delay == 900


@pytest.mark.parametrize("attempt", [0, -3, None, "two", float("nan"), True])
def test_retry_delay_invalid_attempt_falls_back_to_base(attempt):
    """Invalid attempt numbers return the base delay."""
    assert compute_retry_delay_seconds(attempt, 15, 900) == 15


def test_retry_delay_invalid_cap_falls_back_to_base():
    """A negative or non-numeric cap returns the base delay."""
    assert compute_retry_delay_seconds(4, 15, -1) == 15
    assert compute_retry_delay_seconds(4, 15, "lots") == 15


def test_retry_delay_zero_cap():
    """A zero cap yields zero delay."""
    assert compute_retry_delay_seconds(3, 15, 0) == 0


def test_should_retry_attempt_boundaries():
    """Retry iff attempts are strictly below the budget."""
    assert should_retry_attempt(1, 3) is True
    assert should_retry_attempt(2, 3) is True
    assert should_retry_attempt(3, 3) is False
    assert should_retry_attempt(4, 3) is False


def test_should_retry_attempt_clamps_budget():
    """Budgets are clamped into the valid range."""
    # Budget 0 clamps to 1, so the first failure is final
    assert should_retry_attempt(1, 0) is False
    assert should_retry_attempt(0, 0) is True
    # Budget above the maximum clamps to 20
    assert should_retry_attempt(19, 500) is True
    assert should_retry_attempt(20, 500) is False


def test_clamp_int():
    """clamp_int truncates and bounds; junk maps to the minimum."""
    assert clamp_int(5.9, 1, 10) == 5
    assert clamp_int(-4, 1, 10) == 1
    assert clamp_int(99, 1, 10) == 10
    assert clamp_int("7", 1, 10) == 1
    assert clamp_int(None, 2, 10) == 2
    assert clamp_int(False, 2, 10) == 2


def test_compute_next_retry_at_is_utc():
    """Next retry time is an aware UTC datetime."""
    now = datetime(2026, 1, 1, 12, 0)
    result = compute_next_retry_at(now, 30)
    assert result.tzinfo is not None
    assert result == datetime(2026, 1, 1, 12, 0, 30, tzinfo=timezone.utc)


def test_compute_next_retry_at_negative_delay():
    """Negative delays are treated as zero."""
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert compute_next_retry_at(now, -5) == now


def test_ensure_utc_converts_offsets():
    """Aware datetimes in other zones are converted to UTC."""
    plus_two = timezone(timedelta(hours=2))
    value = datetime(2026, 1, 1, 14, 0, tzinfo=plus_two)
    assert ensure_utc(value) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert ensure_utc(value).utcoffset() == timedelta(0)


def test_format_timestamp():
    """Timestamps render as ISO-8601 with microseconds."""
    value = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert format_timestamp(value) == "2026-01-01T12:00:00.000000+00:00"
    assert format_timestamp(None) is None


def test_calculate_backoff_no_jitter():
    """Test backoff calculation without jitter."""
    assert calculate_backoff(0, 1.0, 0.05, 1.0, False) == 0.05
    assert calculate_backoff(1, 1.0, 0.05, 1.0, False) == 0.1
    assert calculate_backoff(10, 1.0, 0.05, 1.0, False) == 1.0


def test_calculate_backoff_with_jitter():
    """With jitter, result is between 50-100% of the base."""
    for attempt in range(5):
        base = min(1.0, 0.05 * (2 ** attempt))
        result = calculate_backoff(attempt, 1.0, 0.05, 1.0, True)
        assert base * 0.5 <= result <= base


def test_retry_sync_success_after_retries():
    """Transient errors are retried until the call succeeds."""
    calls = 0

    @retry_sync(max_attempts=3, min_wait=0.001, max_wait=0.01, jitter=False,
                retryable_exceptions=(sqlite3.OperationalError,))
    def flaky():
        nonlocal calls
        calls += 1
        if calls < 3:
            raise sqlite3.OperationalError("database is locked")
        return "ok"

    assert flaky() == "ok"
    assert calls == 3


def test_retry_sync_exhausted_reraises():
    """The last exception propagates once attempts are used up."""
    calls = 0

    @retry_sync(max_attempts=2, min_wait=0.001, max_wait=0.01,
                retryable_exceptions=(sqlite3.OperationalError,))
    def always_locked():
        nonlocal calls
        calls += 1
        raise sqlite3.OperationalError("database is locked")

    with pytest.raises(sqlite3.OperationalError):
        always_locked()
    assert calls == 2


def test_retry_sync_non_retryable_passes_through():
    """Exceptions outside the retryable set are not retried."""
    calls = 0

    @retry_sync(max_attempts=3, retryable_exceptions=(sqlite3.OperationalError,))
    def broken():
        nonlocal calls
        calls += 1
        raise ValueError("bad")

    with pytest.raises(ValueError):
        broken()
    assert calls == 1
