"""
Tests for strategy_lab/data/loaders.py

Loaders convert frames and CSVs into validated, oldest-first AssetSeries.
"""

import pandas as pd
import pytest

from strategy_lab.data.loaders import (
    load_series_csv,
    load_universe_csv,
    series_from_frame,
    series_from_records,
    series_to_frame,
)
from strategy_lab.data.schemas import SchemaValidationError

JAN_1_2024_MS = 1_704_067_200_000
DAY_MS = 86_400_000


def make_frame(timestamps, closes):
    return pd.DataFrame({
        'timestamp': timestamps,
        'open': closes,
        'high': closes,
        'low': closes,
        'close': closes,
        'volume': [1_000.0] * len(closes),
    })


def test_series_from_frame_sorts_newest_first_input():
    """Newest-first rows (the raw CSV convention) come back oldest-first."""
    frame = make_frame([JAN_1_2024_MS + DAY_MS, JAN_1_2024_MS], [102.0, 101.0])
    series = series_from_frame("BTC", frame)

    assert series.timestamps == (JAN_1_2024_MS, JAN_1_2024_MS + DAY_MS)
    assert [b.close for b in series.bars] == [101.0, 102.0]


def test_series_from_frame_parses_iso_timestamps():
    frame = make_frame(["2024-01-01T00:00:00Z", "2024-01-02T00:00:00Z"], [1.0, 2.0])
    series = series_from_frame("BTC", frame)

    assert series.timestamps == (JAN_1_2024_MS, JAN_1_2024_MS + DAY_MS)


def test_series_from_frame_accepts_canonical_columns():
    frame = pd.DataFrame({
        'timestamp': [JAN_1_2024_MS],
        'open_price': [1.0],
        'high_price': [2.0],
        'low_price': [0.5],
        'closing_price': [1.5],
        'volume': [10.0],
    })
    series = series_from_frame("ETH", frame)

    assert series.bars[0].high == 2.0
    assert series.bars[0].close == 1.5


def test_missing_columns_rejected():
    frame = pd.DataFrame({'timestamp': [JAN_1_2024_MS], 'close': [1.0]})

    with pytest.raises(SchemaValidationError, match="Missing required columns"):
        series_from_frame("BTC", frame)


def test_duplicate_timestamps_rejected():
    frame = make_frame([JAN_1_2024_MS, JAN_1_2024_MS], [1.0, 2.0])

    with pytest.raises(SchemaValidationError, match="Duplicate"):
        series_from_frame("BTC", frame)


def test_series_from_records():
    records = [
        {'timestamp': 2, 'open': 1.0, 'high': 1.0, 'low': 1.0, 'close': 1.0, 'volume': 0.0},
        {'timestamp': 1, 'open': 1.0, 'high': 1.0, 'low': 1.0, 'close': 1.0, 'volume': 0.0},
    ]
    assert series_from_records("X", records).timestamps == (1, 2)


def test_load_series_csv_round_trip(tmp_path):
    frame = make_frame([JAN_1_2024_MS, JAN_1_2024_MS + DAY_MS], [100.0, 105.0])
    original = series_from_frame("BTC", frame)
    path = tmp_path / "BTC.csv"
    series_to_frame(original).to_csv(path, index=False)

    loaded = load_series_csv("BTC", path)

    assert loaded.bars == original.bars


def test_load_series_csv_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_series_csv("BTC", tmp_path / "nope.csv")


def test_load_universe_csv_keys_by_symbol(tmp_path):
    for symbol in ("BTC", "ETH"):
        make_frame([JAN_1_2024_MS], [1.0]).to_csv(tmp_path / f"{symbol}.csv", index=False)

    universe = load_universe_csv({s: tmp_path / f"{s}.csv" for s in ("BTC", "ETH")})

    assert set(universe) == {"BTC", "ETH"}
    assert universe["ETH"].symbol == "ETH"
