"""
Market data records and their validation rules.

**Conceptual**: This module defines the "data contracts" the backtest runner
relies on. A MarketBar is one OHLCV observation; an AssetSeries is the ordered
history of bars for one symbol. Validation happens once, at construction, so
the runner can assume every series is clean:
  - Timestamps are integer milliseconds since epoch (UTC).
  - Timestamps are strictly increasing (oldest first, no duplicates).
  - Prices are finite and non-negative; volume is non-negative.

Frames read from disk follow the CSV column convention below
(`open_price`, `closing_price`, ...). Short OHLCV names (`open`, `close`, ...)
are accepted as aliases by the loaders.
"""

import math
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Iterable, Sequence


class SchemaValidationError(Exception):
    """
    Raised when market data does not conform to the expected schema.

    Messages include the symbol (or file) and the offending position so the
    bad row can be found quickly.
    """
    pass


# Raw price schema constants (CSV / DataFrame columns)
RAW_PRICE_REQUIRED_COLUMNS = [
    'timestamp',
    'open_price',
    'high_price',
    'low_price',
    'closing_price',
    'volume',
]

# Accepted short aliases → canonical column names
COLUMN_ALIASES = {
    'open': 'open_price',
    'high': 'high_price',
    'low': 'low_price',
    'close': 'closing_price',
}


@dataclass(frozen=True)
class MarketBar:
    """
    One OHLCV observation for a single asset.

    Attributes:
        timestamp: Bar time in integer milliseconds since epoch (UTC).
        open: Opening price.
        high: Highest price in the bar.
        low: Lowest price in the bar.
        close: Closing price. This is the price the runner trades and
               values positions at.
        volume: Traded volume.
    """
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float


def validate_bar(bar: MarketBar, context: str | None = None) -> None:
    """
    Validate a single bar's numeric fields.

    Raises:
        SchemaValidationError: On non-integer timestamp, non-finite or
                               negative prices/volume.
    """
    ctx = f"{context}: " if context else ""

    if not isinstance(bar.timestamp, int) or isinstance(bar.timestamp, bool):
        raise SchemaValidationError(
            f"{ctx}timestamp must be integer milliseconds, got {bar.timestamp!r}."
        )

    for name in ('open', 'high', 'low', 'close', 'volume'):
        value = getattr(bar, name)
        if not isinstance(value, (int, float)) or not math.isfinite(value):
            raise SchemaValidationError(
                f"{ctx}{name} must be a finite number at timestamp {bar.timestamp}, got {value!r}."
            )
        if value < 0:
            raise SchemaValidationError(
                f"{ctx}{name} must be non-negative at timestamp {bar.timestamp}, got {value}."
            )


def validate_strictly_increasing(timestamps: Sequence[int], context: str | None = None) -> None:
    """
    Enforce strictly increasing timestamps (no ties, no reversals).

    Raises:
        SchemaValidationError: Naming the first offending pair.
    """
    ctx = f"{context}: " if context else ""
    for i in range(1, len(timestamps)):
        if timestamps[i] <= timestamps[i - 1]:
            kind = "Duplicate" if timestamps[i] == timestamps[i - 1] else "Out-of-order"
            raise SchemaValidationError(
                f"{ctx}{kind} timestamp at position {i}: "
                f"{timestamps[i - 1]} followed by {timestamps[i]}. "
                f"Series must be strictly increasing."
            )


@dataclass(frozen=True)
class AssetSeries:
    """
    Ordered bar history for one asset symbol.

    **Point-in-time access**: `bars_up_to(t)` and `latest_at(t)` use binary
    search over the timestamp index and only ever return bars with
    timestamp <= t. `bar_at(t)` returns the bar stamped exactly t, if any.

    Attributes:
        symbol: Asset symbol (e.g., "BTC").
        bars: Bars in strictly increasing timestamp order.
    """
    symbol: str
    bars: tuple[MarketBar, ...]
    _timestamps: tuple[int, ...] = field(init=False, repr=False, compare=False)

    def __init__(self, symbol: str, bars: Iterable[MarketBar]):
        if not symbol:
            raise SchemaValidationError("AssetSeries requires a non-empty symbol.")
        bars = tuple(bars)
        for bar in bars:
            validate_bar(bar, context=symbol)
        timestamps = tuple(bar.timestamp for bar in bars)
        validate_strictly_increasing(timestamps, context=symbol)

        object.__setattr__(self, 'symbol', symbol)
        object.__setattr__(self, 'bars', bars)
        object.__setattr__(self, '_timestamps', timestamps)

    def __len__(self) -> int:
        return len(self.bars)

    @property
    def timestamps(self) -> tuple[int, ...]:
        return self._timestamps

    def bars_up_to(self, timestamp_ms: int) -> tuple[MarketBar, ...]:
        """All bars with timestamp <= timestamp_ms (oldest first)."""
        return self.bars[:bisect_right(self._timestamps, timestamp_ms)]

    def latest_at(self, timestamp_ms: int) -> MarketBar | None:
        """Most recent bar at or before timestamp_ms, or None before the first bar."""
        idx = bisect_right(self._timestamps, timestamp_ms)
        return self.bars[idx - 1] if idx > 0 else None

    def bar_at(self, timestamp_ms: int) -> MarketBar | None:
        """The bar stamped exactly timestamp_ms, or None."""
        bar = self.latest_at(timestamp_ms)
        if bar is not None and bar.timestamp == timestamp_ms:
            return bar
        return None


def validate_universe(series: dict[str, AssetSeries]) -> None:
    """
    Check a symbol → series mapping for consistency.

    Raises:
        SchemaValidationError: If the mapping is empty or a key does not match
                               its series' symbol.
    """
    if not series:
        raise SchemaValidationError("Historical data is empty. Need at least one asset series.")
    for key, asset_series in series.items():
        if key != asset_series.symbol:
            raise SchemaValidationError(
                f"Series keyed as '{key}' carries symbol '{asset_series.symbol}'."
            )
