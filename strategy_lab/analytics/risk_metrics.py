"""
Risk and performance metrics for backtest evaluation.

This module implements the metric math behind the PerformanceAnalyzer as pure
functions over plain sequences, so each can be tested in isolation:
  - Core performance: total return, Sharpe ratio
  - Drawdown/pain: drawdown series, maximum drawdown
  - Daily aggregation: calendar-day values and returns
  - Tail risk: Value-at-Risk, Expected Shortfall
  - Structure: Pearson correlation, concentration, diversification

Every function tolerates empty and single-element inputs and returns 0.0
rather than NaN or raising; division-by-zero cases are guarded explicitly.
"""

import math
from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from strategy_lab.utils.time import utc_day

# Relative tolerance below which a standard deviation counts as zero. A
# constant series like [0.01] * 10 has np.std of ~1e-18, not exactly 0.
ZERO_VARIANCE_TOLERANCE = 1e-12


def is_constant(arr: np.ndarray) -> bool:
    """
    True when arr has (numerically) zero variance.

    std is compared against ZERO_VARIANCE_TOLERANCE scaled by the series'
    magnitude, so rounding noise in the mean never passes for variance.
    """
    if arr.size == 0:
        return True
    std = float(np.std(arr, ddof=0))
    if not math.isfinite(std):
        return True
    scale = max(1.0, float(np.max(np.abs(arr))))
    return std <= ZERO_VARIANCE_TOLERANCE * scale


def compute_total_return(initial_value: float, final_value: float) -> float:
    """
    Compute the overall return from the initial to the final portfolio value.

    **Mathematical**:
        Total Return = (V_T - V_0) / V_0

    **Edge cases**:
    - V_0 == 0 → 0.0 (return is undefined on a zero base).

    Args:
        initial_value: Starting portfolio value V_0.
        final_value: Latest portfolio value V_T.

    Returns:
        Scalar float (e.g., 0.25 for a 25% gain).
    """
    if initial_value == 0:
        return 0.0
    return (final_value - initial_value) / initial_value


def compute_drawdown_series(values: Sequence[float]) -> np.ndarray:
    """
    Fractional decline from the running peak at each point.

    **Mathematical**: With P_t = max(V_0..V_t),
        DD_t = (P_t - V_t) / P_t
    and DD_t = 0 while the running peak is 0.

    Args:
        values: Portfolio values in time order.

    Returns:
        numpy array of drawdowns in [0, 1], same length as values.
    """
    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        return arr
    peaks = np.maximum.accumulate(arr)
    drawdowns = np.zeros_like(arr)
    positive = peaks > 0
    drawdowns[positive] = (peaks[positive] - arr[positive]) / peaks[positive]
    return np.clip(drawdowns, 0.0, 1.0)


def compute_max_drawdown(values: Sequence[float]) -> float:
    """
    Largest peak-to-trough decline over the history.

    **Conceptual**: Answers "what was the worst loss an investor who bought at
    the top would have sat through?" Because the running peak never falls and
    the maximum is taken over the whole history, appending more values can
    only keep or raise this number.

    **Edge cases**:
    - Fewer than 2 values → 0.0.

    Returns:
        Max drawdown as a positive fraction in [0, 1] (0.2 = 20% decline).
    """
    if len(values) < 2:
        return 0.0
    return float(compute_drawdown_series(values).max())


def compute_daily_values(timestamps: Sequence[int], values: Sequence[float]) -> pd.Series:
    """
    Bucket a value history into calendar days (UTC), keeping the last value per day.

    Buckets are taken from each observation's own timestamp. Observations
    are assumed to be in non-decreasing time order; within one day the last
    observation in sequence order wins.

    Returns:
        pandas Series indexed by datetime.date, ascending.
    """
    if len(values) == 0:
        return pd.Series(dtype=float)
    days = [utc_day(ts) for ts in timestamps]
    frame = pd.DataFrame({'day': days, 'value': np.asarray(values, dtype=float)})
    return frame.groupby('day', sort=True)['value'].last()


def compute_daily_returns(daily_values: Sequence[float]) -> np.ndarray:
    """
    Successive percentage changes of daily values.

    A change measured from a zero value is undefined and is skipped.

    Returns:
        numpy array of length <= len(daily_values) - 1.
    """
    arr = np.asarray(daily_values, dtype=float)
    if arr.size < 2:
        return np.array([], dtype=float)
    prev, curr = arr[:-1], arr[1:]
    valid = prev != 0
    return (curr[valid] - prev[valid]) / prev[valid]


def compute_sharpe_ratio(
    daily_returns: Sequence[float],
    annual_risk_free_rate: float = 0.02,
    days_per_year: int = 365,
) -> float:
    """
    Mean excess daily return per unit of daily return volatility.

    **Mathematical**:
        rf_daily = annual_risk_free_rate / days_per_year
        Sharpe   = (mean(r) - rf_daily) / std(r)
    std is the population standard deviation (ddof=0). The ratio is not
    annualized.

    **Why 365 and not 252?** Crypto and other 24/7 markets trade every
    calendar day; the daily buckets here are calendar days.

    **Edge cases**:
    - Empty returns → 0.0.
    - std == 0 (e.g., a flat market, or constant non-zero returns) → 0.0,
      never NaN or ±inf. See is_constant for the tolerance.

    Args:
        daily_returns: Daily simple returns.
        annual_risk_free_rate: Annual risk-free rate (default 2%).
        days_per_year: Divisor turning the annual rate into a daily one.

    Returns:
        Sharpe ratio as a float.
    """
    arr = np.asarray(daily_returns, dtype=float)
    if arr.size == 0:
        return 0.0
    if is_constant(arr):
        return 0.0
    std = float(np.std(arr, ddof=0))
    rf_daily = annual_risk_free_rate / days_per_year
    return float((arr.mean() - rf_daily) / std)


def compute_value_at_risk(daily_returns: Sequence[float], confidence: float = 0.95) -> float:
    """
    Historical (empirical) Value-at-Risk.

    **Mathematical**: Sort returns ascending, take the element at index
    floor(n * (1 - confidence)) and negate it. A VaR of 0.03 at 95% reads
    "on 95% of days the loss was no worse than 3%".

    **Edge cases**:
    - Empty returns → 0.0.
    - A return distribution with no losses yields a negative VaR (the
      quantile is a gain); this is reported as-is.

    Returns:
        VaR as a positive-is-loss float.
    """
    arr = np.sort(np.asarray(daily_returns, dtype=float))
    if arr.size == 0:
        return 0.0
    index = min(int(math.floor(arr.size * (1 - confidence))), arr.size - 1)
    return float(-arr[index])


def compute_expected_shortfall(daily_returns: Sequence[float], confidence: float = 0.95) -> float:
    """
    Average loss on days strictly worse than the VaR threshold.

    **Mathematical**: ES = -mean({ r : r < -VaR }).

    **Edge cases**:
    - Empty returns or an empty tail → 0.0.
    """
    arr = np.asarray(daily_returns, dtype=float)
    if arr.size == 0:
        return 0.0
    threshold = -compute_value_at_risk(arr, confidence)
    tail = arr[arr < threshold]
    if tail.size == 0:
        return 0.0
    return float(-tail.mean())


def compute_pearson_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """
    Pearson correlation of two equally long series.

    **Edge cases**:
    - Different lengths or empty → 0.0.
    - Either series has zero variance → 0.0.
    """
    a = np.asarray(x, dtype=float)
    b = np.asarray(y, dtype=float)
    if a.size == 0 or a.size != b.size:
        return 0.0
    if is_constant(a) or is_constant(b):
        return 0.0
    da = a - a.mean()
    db = b - b.mean()
    denom = math.sqrt(float(np.dot(da, da)) * float(np.dot(db, db)))
    return float(np.dot(da, db) / denom)


def compute_correlation_matrix(series: Mapping[str, Sequence[float]]) -> dict[str, dict[str, float]]:
    """
    Pairwise Pearson correlations for a set of named series.

    Returns:
        Nested dict matrix[a][b]; symmetric, with zero-variance pairs at 0.0
        (including the diagonal of a constant series).
    """
    names = list(series)
    matrix: dict[str, dict[str, float]] = {name: {} for name in names}
    for i, a in enumerate(names):
        for b in names[i:]:
            value = compute_pearson_correlation(series[a], series[b])
            matrix[a][b] = value
            matrix[b][a] = value
    return matrix


def compute_concentration(weights: Mapping[str, float]) -> float:
    """Herfindahl concentration Σ w² (0 for an empty book, 1 for a single asset)."""
    return float(sum(w * w for w in weights.values()))


def compute_diversification_score(weights: Mapping[str, float]) -> float:
    """
    Herfindahl-based diversification: 1 - Σ w².

    An empty allocation scores 0.0 (nothing to diversify), not 1.0.
    """
    if not weights:
        return 0.0
    return 1.0 - compute_concentration(weights)
