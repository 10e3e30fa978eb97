"""
Mathematical and statistical utilities for market analysis.

This module provides the indicator math used by the reference market analyzer
(moving averages, RSI, MACD, trend velocity) together with a couple of small
numeric helpers shared by the analytics layer.

All series handled here are in chronological order (oldest first), which is
the order AssetSeries guarantees, so no re-sorting is performed.
"""

from typing import Sequence

import numpy as np
import pandas as pd
from scipy import stats


def compute_simple_returns(prices: pd.Series) -> pd.Series:
    """
    Convert a price series into simple (arithmetic) returns.

    **Mathematical**: For each period t:
        r_t = (P_t / P_{t-1}) - 1

    **Edge cases**:
    - The first value is NaN (no prior price to compare).
    - Empty or single-element series return all NaNs.

    Args:
        prices: Time series of prices, oldest first.

    Returns:
        Time series of simple returns, same index as input.
    """
    return prices.pct_change()


def compute_moving_average_simple(prices: pd.Series, window: int) -> pd.Series:
    """
    Compute a simple moving average (SMA).

    **Conceptual**: Averages the most recent `window` observations with equal
    weight. A short SMA above a long SMA is the classic uptrend signal used by
    the reference analyzer (SMA20 vs SMA50).

    **Edge cases**:
    - The first (window - 1) values are NaN.
    - If len(prices) < window, every value is NaN.

    Args:
        prices: Time series of prices, oldest first.
        window: Number of periods to average (>= 1).

    Returns:
        Time series of SMA values, same index as input.
    """
    if window < 1:
        raise ValueError(f"window must be >= 1, got {window}")
    return prices.rolling(window=window).mean()


def compute_moving_average_exponential(prices: pd.Series, span: int) -> pd.Series:
    """
    Compute an exponential moving average (EMA).

    **Mathematical**: EMA_t = α * P_t + (1 - α) * EMA_{t-1}, α = 2 / (span + 1).
    pandas ewm(adjust=False) gives this recursive form; the first value seeds
    the recursion.

    Args:
        prices: Time series of prices, oldest first.
        span: EMA span (>= 1).

    Returns:
        Time series of EMA values, same index as input.
    """
    if span < 1:
        raise ValueError(f"span must be >= 1, got {span}")
    return prices.ewm(span=span, adjust=False).mean()


def compute_rsi(prices: pd.Series, window: int = 14) -> pd.Series:
    """
    Compute Wilder's Relative Strength Index.

    **Conceptual**: RSI compares the size of recent gains to recent losses on
    a 0-100 scale. Readings above 70 (below 30) are conventionally overbought
    (oversold); the analyzer treats extreme readings as high-confidence
    signals.

    **Mathematical**: With gains G and losses L of successive price changes,
    average gain/loss use Wilder smoothing (α = 1 / window):
        RS = avg_gain / avg_loss,   RSI = 100 - 100 / (1 + RS)
    When avg_loss == 0 the RSI is 100 (or 50 if there were no gains either).

    Args:
        prices: Time series of prices, oldest first.
        window: Smoothing window (default 14).

    Returns:
        Time series of RSI values. The first `window` values are NaN.
    """
    delta = prices.diff()
    gains = delta.clip(lower=0.0)
    losses = -delta.clip(upper=0.0)

    avg_gain = gains.ewm(alpha=1.0 / window, adjust=False, min_periods=window).mean()
    avg_loss = losses.ewm(alpha=1.0 / window, adjust=False, min_periods=window).mean()

    rs = avg_gain / avg_loss.replace(0.0, np.nan)
    rsi = 100.0 - 100.0 / (1.0 + rs)

    # Zero average loss: all-up window → 100, perfectly flat window → 50
    flat = (avg_loss == 0.0) & (avg_gain == 0.0)
    rsi = rsi.mask((avg_loss == 0.0) & ~flat, 100.0)
    rsi = rsi.mask(flat, 50.0)
    return rsi


def compute_macd(prices: pd.Series, fast_span: int = 12, slow_span: int = 26) -> pd.Series:
    """
    Compute the MACD line (fast EMA minus slow EMA).

    Positive values mean short-term momentum is above long-term momentum.

    Args:
        prices: Time series of prices, oldest first.
        fast_span: Fast EMA span (default 12).
        slow_span: Slow EMA span (default 26).

    Returns:
        Time series of MACD values, same index as input.
    """
    fast = compute_moving_average_exponential(prices, fast_span)
    slow = compute_moving_average_exponential(prices, slow_span)
    return fast - slow


def compute_velocity(prices: pd.Series, window: int, use_log: bool = True) -> float:
    """
    Slope of (log) prices over the most recent `window` observations.

    **Conceptual**: Velocity answers "how steeply is price moving right now?"
    Positive velocity indicates upward momentum. The analyzer reports it in the
    technical payload as trend strength.

    **Mathematical**: Fit y = α + β·x by least squares over the last `window`
    points, x = 0..window-1; β is the velocity. Uses scipy.stats.linregress.

    **Edge cases**:
    - Fewer than 2 usable points → 0.0.
    - Non-positive prices with use_log=True → 0.0 (log undefined).

    Args:
        prices: Time series of prices, oldest first.
        window: Number of trailing points to regress over.
        use_log: Regress log(prices) instead of raw prices.

    Returns:
        Slope per period as a float.
    """
    tail = prices.dropna().iloc[-window:]
    if len(tail) < 2:
        return 0.0

    if use_log:
        if (tail <= 0).any():
            return 0.0
        y = np.log(tail.to_numpy(dtype=float))
    else:
        y = tail.to_numpy(dtype=float)

    if np.all(y == y[0]):
        return 0.0

    slope, _, _, _, _ = stats.linregress(np.arange(len(y)), y)
    return float(slope)


def compute_population_std(values: Sequence[float]) -> float:
    """
    Population standard deviation (ddof=0) with an empty-input guard.

    Returns 0.0 for an empty sequence instead of NaN.
    """
    if len(values) == 0:
        return 0.0
    return float(np.std(np.asarray(values, dtype=float), ddof=0))


def last_value(series: pd.Series, default: float = float("nan")) -> float:
    """Last non-NaN value of a series, or `default` when there is none."""
    clean = series.dropna()
    if clean.empty:
        return default
    return float(clean.iloc[-1])
