"""
Time and clock abstractions for deterministic backtesting and search.

This module provides a testable way to obtain "now" via a clock object rather
than calling datetime.now() directly. The backtest runner drives a
SimulatedClock through the replay timeline, so every collaborator that asks
for the time sees the simulated step, never the wall clock.

Timestamps inside the engine are integer milliseconds since the Unix epoch
(UTC). The helpers at the bottom convert between that representation and
timezone-aware datetimes, and bucket timestamps into calendar days.
"""

from datetime import date, datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """
    Abstract time source protocol.

    **Conceptual**: A Clock is any object that can answer the question "what
    time is it right now?" Consumers accept a Clock (constructor or function
    argument) and call clock.now_ms() whenever they need the current time.
    Wall-time consumers (the actions) use a RealClock; anything inside a
    backtest sees the runner's SimulatedClock through BacktestRunner.clock.
    """

    def now(self) -> datetime:
        """Return the current time as a timezone-aware UTC datetime."""
        ...

    def now_ms(self) -> int:
        """Return the current time as integer milliseconds since epoch."""
        ...


class RealClock:
    """
    Clock that returns the actual current system time (UTC).

    Only used at the outer edges: the actions time their runs with it.
    Nothing inside a backtest run reads it.
    """

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def now_ms(self) -> int:
        return datetime_to_ms(self.now())


class SimulatedClock:
    """
    Clock advanced explicitly by the backtest runner.

    **Conceptual**: During a replay the runner calls advance_to(t) at the start
    of every timestep. Anything holding a reference to this clock observes the
    simulated "now", which makes point-in-time logic in collaborators
    (e.g., "bars older than 30 days") reproducible.

    Time may only move forward; advance_to raises ValueError on a step back,
    since a backwards step would mean the timeline was built out of order.
    """

    def __init__(self, start_ms: int = 0):
        self._current_ms = int(start_ms)

    def advance_to(self, timestamp_ms: int) -> None:
        """
        Move the clock to timestamp_ms.

        Raises:
            ValueError: If timestamp_ms is earlier than the current time.
        """
        if timestamp_ms < self._current_ms:
            raise ValueError(
                f"SimulatedClock cannot move backwards "
                f"(current={self._current_ms}, requested={timestamp_ms})."
            )
        self._current_ms = int(timestamp_ms)

    def reset(self, start_ms: int = 0) -> None:
        """Rewind to start_ms (used when a runner resets for a fresh run)."""
        self._current_ms = int(start_ms)

    def now(self) -> datetime:
        return ms_to_datetime(self._current_ms)

    def now_ms(self) -> int:
        return self._current_ms


def ms_to_datetime(timestamp_ms: int) -> datetime:
    """Convert epoch milliseconds to a timezone-aware UTC datetime."""
    return datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)


def datetime_to_ms(dt: datetime) -> int:
    """
    Convert a datetime to epoch milliseconds.

    Naive datetimes are interpreted as UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def utc_day(timestamp_ms: int) -> date:
    """
    Calendar day (UTC) that contains timestamp_ms.

    Used to bucket portfolio snapshots into daily values for return-series
    metrics (Sharpe, VaR). Bucketing always uses the snapshot's own
    timestamp, never the wall clock.
    """
    return ms_to_datetime(timestamp_ms).date()
