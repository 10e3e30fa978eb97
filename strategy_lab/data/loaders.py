"""
Loaders that turn pandas frames and CSV files into AssetSeries.

**Conceptual**: The engine itself is in-memory only; it consumes a mapping of
symbol → AssetSeries. These helpers are the boundary where tabular data
(DataFrames in memory, CSV files on disk) is converted to validated bars:
  - Column names follow the raw price schema (`open_price`, ..., `closing_price`);
    short OHLCV aliases (`open`, ..., `close`) are accepted.
  - `timestamp` may be integer epoch milliseconds, datetime64, or ISO strings.
  - Rows may arrive newest-first or oldest-first; the result is always
    oldest-first. Duplicate timestamps are rejected, not silently dropped.
"""

from pathlib import Path
from typing import Iterable, Mapping

import pandas as pd

from strategy_lab.data.schemas import (
    AssetSeries,
    COLUMN_ALIASES,
    MarketBar,
    RAW_PRICE_REQUIRED_COLUMNS,
    SchemaValidationError,
)


def _timestamps_to_ms(column: pd.Series, context: str) -> pd.Series:
    """Convert a timestamp column to int64 epoch milliseconds."""
    if pd.api.types.is_integer_dtype(column):
        return column.astype('int64')

    try:
        parsed = pd.to_datetime(column, utc=True)
    except (ValueError, TypeError) as e:
        raise SchemaValidationError(f"{context}: unparseable timestamp column ({e}).")

    if parsed.isna().any():
        raise SchemaValidationError(f"{context}: timestamp column contains missing values.")

    # Resolution-independent: elapsed time since epoch in whole milliseconds
    epoch = pd.Timestamp(0, tz='UTC')
    return ((parsed - epoch) // pd.Timedelta(milliseconds=1)).astype('int64')


def series_from_frame(symbol: str, df: pd.DataFrame) -> AssetSeries:
    """
    Build an AssetSeries from a DataFrame of OHLCV rows.

    Args:
        symbol: Asset symbol for the series.
        df: Frame with a `timestamp` column plus OHLCV columns (canonical or
            short names). Extra columns are ignored.

    Returns:
        Validated AssetSeries, oldest bar first.

    Raises:
        SchemaValidationError: Missing columns, bad timestamps, duplicates,
                               negative or non-finite values.

    Example:
        >>> frame = pd.DataFrame({
        ...     'timestamp': [1_704_067_200_000, 1_704_153_600_000],
        ...     'open': [100.0, 101.0], 'high': [102.0, 103.0],
        ...     'low': [99.0, 100.0], 'close': [101.0, 102.0],
        ...     'volume': [1_000.0, 1_200.0],
        ... })
        >>> series_from_frame("BTC", frame).bars[-1].close
        102.0
    """
    frame = df.rename(columns=COLUMN_ALIASES)

    missing = set(RAW_PRICE_REQUIRED_COLUMNS) - set(frame.columns)
    if missing:
        raise SchemaValidationError(
            f"{symbol}: Missing required columns: {sorted(missing)}. "
            f"Expected columns: {RAW_PRICE_REQUIRED_COLUMNS}. "
            f"Found columns: {list(df.columns)}."
        )

    frame = frame[RAW_PRICE_REQUIRED_COLUMNS].copy()
    frame['timestamp'] = _timestamps_to_ms(frame['timestamp'], symbol)
    frame = frame.sort_values('timestamp', kind='stable').reset_index(drop=True)

    bars = [
        MarketBar(
            timestamp=int(row.timestamp),
            open=float(row.open_price),
            high=float(row.high_price),
            low=float(row.low_price),
            close=float(row.closing_price),
            volume=float(row.volume),
        )
        for row in frame.itertuples(index=False)
    ]
    return AssetSeries(symbol, bars)


def series_from_records(symbol: str, records: Iterable[Mapping[str, float]]) -> AssetSeries:
    """Build an AssetSeries from dict-like records (one per bar)."""
    return series_from_frame(symbol, pd.DataFrame(list(records)))


def load_series_csv(symbol: str, csv_path: str | Path) -> AssetSeries:
    """
    Read one asset's OHLCV history from a CSV file.

    Raises:
        FileNotFoundError: If csv_path does not exist.
        SchemaValidationError: If the CSV violates the raw price schema.
    """
    path = Path(csv_path)
    if not path.exists():
        raise FileNotFoundError(f"Price history not found for {symbol}: {path}")
    return series_from_frame(symbol, pd.read_csv(path))


def load_universe_csv(paths: Mapping[str, str | Path]) -> dict[str, AssetSeries]:
    """Load several CSV files keyed by symbol into a historical-data mapping."""
    return {symbol: load_series_csv(symbol, path) for symbol, path in paths.items()}


def series_to_frame(series: AssetSeries) -> pd.DataFrame:
    """Inverse of series_from_frame (canonical column names, oldest first)."""
    return pd.DataFrame(
        {
            'timestamp': [bar.timestamp for bar in series.bars],
            'open_price': [bar.open for bar in series.bars],
            'high_price': [bar.high for bar in series.bars],
            'low_price': [bar.low for bar in series.bars],
            'closing_price': [bar.close for bar in series.bars],
            'volume': [bar.volume for bar in series.bars],
        },
        columns=RAW_PRICE_REQUIRED_COLUMNS,
    )
