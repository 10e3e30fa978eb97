"""
Tests for strategy_lab/utils/math.py

These tests verify the indicator math using small, hand-crafted series where
expected values are easy to reason about.
"""

import numpy as np
import pandas as pd
import pytest

from strategy_lab.utils.math import (
    compute_macd,
    compute_moving_average_exponential,
    compute_moving_average_simple,
    compute_population_std,
    compute_rsi,
    compute_simple_returns,
    compute_velocity,
    last_value,
)


def test_compute_simple_returns_constant_prices():
    """Constant prices → first return NaN, rest zero."""
    prices = pd.Series([100.0, 100.0, 100.0, 100.0])
    returns = compute_simple_returns(prices)

    assert pd.isna(returns.iloc[0])
    assert np.allclose(returns.iloc[1:], 0.0)


def test_compute_simple_returns_known_values():
    prices = pd.Series([100.0, 110.0, 99.0])
    returns = compute_simple_returns(prices)

    assert np.isclose(returns.iloc[1], 0.10)
    assert np.isclose(returns.iloc[2], -0.10)


def test_compute_moving_average_simple():
    prices = pd.Series([1.0, 2.0, 3.0, 4.0, 5.0])
    sma = compute_moving_average_simple(prices, 3)

    assert sma.iloc[:2].isna().all()
    assert np.allclose(sma.iloc[2:], [2.0, 3.0, 4.0])


def test_compute_moving_average_simple_rejects_bad_window():
    with pytest.raises(ValueError):
        compute_moving_average_simple(pd.Series([1.0]), 0)


def test_compute_moving_average_exponential_constant_prices():
    prices = pd.Series([50.0] * 10)
    ema = compute_moving_average_exponential(prices, 5)

    assert np.allclose(ema, 50.0)


def test_compute_rsi_all_gains_is_100():
    prices = pd.Series([100.0 + i for i in range(30)])
    rsi = compute_rsi(prices, 14)

    assert rsi.iloc[:14].isna().all()
    assert np.allclose(rsi.iloc[14:], 100.0)


def test_compute_rsi_all_losses_is_0():
    prices = pd.Series([100.0 - i for i in range(30)])
    rsi = compute_rsi(prices, 14)

    assert np.allclose(rsi.dropna(), 0.0)


def test_compute_rsi_flat_prices_is_50():
    prices = pd.Series([100.0] * 30)
    rsi = compute_rsi(prices, 14)

    assert np.allclose(rsi.dropna(), 50.0)


def test_compute_macd_sign_follows_trend():
    rising = pd.Series([100.0 * 1.01 ** i for i in range(60)])
    falling = pd.Series([100.0 * 0.99 ** i for i in range(60)])

    assert compute_macd(rising).iloc[-1] > 0
    assert compute_macd(falling).iloc[-1] < 0
    assert np.allclose(compute_macd(pd.Series([10.0] * 30)), 0.0)


def test_compute_velocity_exponential_growth():
    """Log-price slope of a 1%-per-period path is log(1.01)."""
    prices = pd.Series([100.0 * 1.01 ** i for i in range(30)])
    velocity = compute_velocity(prices, window=10)

    assert np.isclose(velocity, np.log(1.01))


def test_compute_velocity_edge_cases():
    assert compute_velocity(pd.Series([100.0]), window=10) == 0.0
    assert compute_velocity(pd.Series([100.0] * 5), window=5) == 0.0
    assert compute_velocity(pd.Series([1.0, 0.0, 2.0]), window=3) == 0.0


def test_compute_population_std():
    assert compute_population_std([]) == 0.0
    assert np.isclose(compute_population_std([1.0, 3.0]), 1.0)


def test_last_value_skips_trailing_nan():
    assert last_value(pd.Series([1.0, 2.0, np.nan])) == 2.0
    assert last_value(pd.Series([np.nan]), default=7.0) == 7.0
