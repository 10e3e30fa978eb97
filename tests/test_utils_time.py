"""
Tests for strategy_lab/utils/time.py

These tests verify the clock abstractions (real, simulated) and the
epoch-millisecond conversion helpers.
"""

from datetime import date, datetime, timezone

import pytest

from strategy_lab.utils.time import (
    RealClock,
    SimulatedClock,
    datetime_to_ms,
    ms_to_datetime,
    utc_day,
)

JAN_1_2024_MS = 1_704_067_200_000


def test_real_clock_returns_current_time():
    """RealClock returns a UTC time between two wall-clock reads."""
    clock = RealClock()

    before = datetime.now(timezone.utc)
    clock_time = clock.now()
    after = datetime.now(timezone.utc)

    assert before <= clock_time <= after
    assert clock_time.tzinfo == timezone.utc


def test_simulated_clock_advances_forward():
    clock = SimulatedClock(0)
    clock.advance_to(1_000)
    clock.advance_to(1_000)  # Same time is allowed

    assert clock.now_ms() == 1_000


def test_simulated_clock_rejects_backwards_step():
    clock = SimulatedClock(5_000)

    with pytest.raises(ValueError, match="backwards"):
        clock.advance_to(4_999)


def test_simulated_clock_reset_rewinds():
    clock = SimulatedClock(0)
    clock.advance_to(10_000)
    clock.reset(500)

    assert clock.now_ms() == 500
    clock.advance_to(600)  # Moving forward from the reset point works
    assert clock.now_ms() == 600


def test_ms_datetime_conversions_are_consistent():
    dt = datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc)
    ms = datetime_to_ms(dt)

    assert ms == JAN_1_2024_MS + (12 * 60 + 30) * 60_000
    assert ms_to_datetime(ms) == dt


def test_naive_datetime_is_treated_as_utc():
    assert datetime_to_ms(datetime(2024, 1, 1)) == JAN_1_2024_MS


def test_utc_day_buckets_by_calendar_day():
    """Last millisecond of a day and first of the next land in different buckets."""
    assert utc_day(JAN_1_2024_MS) == date(2024, 1, 1)
    assert utc_day(JAN_1_2024_MS + 86_400_000 - 1) == date(2024, 1, 1)
    assert utc_day(JAN_1_2024_MS + 86_400_000) == date(2024, 1, 2)
