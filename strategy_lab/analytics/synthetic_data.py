"""
Synthetic market data generators for testing and demos.

This module builds deterministic AssetSeries from stochastic price processes:
  - Geometric Brownian Motion (GBM): trending, compounding behavior
  - Ornstein-Uhlenbeck (OU): mean-reverting, range-bound behavior

Randomness always comes from an injected RandomSource, so the same seed gives
the same bars in every process, regardless of what else draws random numbers.
Bars are spaced `step_ms` apart (one UTC day by default); each bar opens at
the previous close.
"""

import numpy as np

from strategy_lab.data.schemas import AssetSeries, MarketBar
from strategy_lab.utils.random import RandomSource

MS_PER_DAY = 86_400_000


def generate_gbm_prices(
    initial_price: float,
    drift: float,
    volatility: float,
    n_steps: int,
    rng: RandomSource,
    dt: float = 1 / 365,
) -> np.ndarray:
    """
    Generate a price path using Geometric Brownian Motion (GBM).

    **Mathematical**: The discrete (exact) update for each step is:
        S_{t+1} = S_t * exp((μ - 0.5 * σ^2) * dt + σ * sqrt(dt) * Z_t)
    where Z_t ~ N(0, 1). The (μ - 0.5 * σ^2) term is the Itô correction.

    **Edge cases**:
    - n_steps = 0 → [initial_price].
    - volatility = 0 → deterministic exponential path.

    Args:
        initial_price: Starting price (must be positive).
        drift: Annualized drift μ (e.g., 0.10 for 10%).
        volatility: Annualized volatility σ (e.g., 0.60 for a crypto-like asset).
        n_steps: Number of steps after the initial price.
        rng: RandomSource supplying the normal draws.
        dt: Year fraction per step (1/365 for daily bars on a 24/7 market).

    Returns:
        numpy array of length n_steps + 1.
    """
    if initial_price <= 0:
        raise ValueError(f"initial_price must be positive, got {initial_price}")
    if n_steps < 0:
        raise ValueError(f"n_steps must be non-negative, got {n_steps}")

    z = rng.standard_normal(n_steps)
    log_steps = (drift - 0.5 * volatility ** 2) * dt + volatility * np.sqrt(dt) * z
    path = initial_price * np.exp(np.concatenate([[0.0], np.cumsum(log_steps)]))
    return path


def generate_ou_prices(
    initial_price: float,
    mean_reversion_speed: float,
    long_term_mean: float,
    volatility: float,
    n_steps: int,
    rng: RandomSource,
    dt: float = 1 / 365,
) -> np.ndarray:
    """
    Generate a mean-reverting price path (Ornstein-Uhlenbeck, Euler scheme).

    **Mathematical**:
        X_{t+1} = X_t + κ (θ - X_t) dt + σ θ sqrt(dt) Z_t
    Volatility is scaled by θ so σ reads as a relative (percentage) vol.
    Prices are floored at 1% of θ to stay positive.

    Args:
        initial_price: Starting price.
        mean_reversion_speed: κ; higher reverts faster.
        long_term_mean: θ; the equilibrium price.
        volatility: Relative annualized volatility σ.
        n_steps: Number of steps after the initial price.
        rng: RandomSource supplying the normal draws.
        dt: Year fraction per step.

    Returns:
        numpy array of length n_steps + 1.
    """
    if initial_price <= 0 or long_term_mean <= 0:
        raise ValueError("initial_price and long_term_mean must be positive.")
    if n_steps < 0:
        raise ValueError(f"n_steps must be non-negative, got {n_steps}")

    z = rng.standard_normal(n_steps)
    floor = 0.01 * long_term_mean
    prices = np.empty(n_steps + 1)
    prices[0] = initial_price
    for t in range(n_steps):
        step = (
            mean_reversion_speed * (long_term_mean - prices[t]) * dt
            + volatility * long_term_mean * np.sqrt(dt) * z[t]
        )
        prices[t + 1] = max(prices[t] + step, floor)
    return prices


def prices_to_series(
    symbol: str,
    closes: np.ndarray,
    start_ms: int = 0,
    step_ms: int = MS_PER_DAY,
    volume: float = 1_000.0,
) -> AssetSeries:
    """
    Wrap a close-price path into an AssetSeries.

    Bar i is stamped start_ms + i * step_ms; its open is the previous close
    (the first bar opens at its own close); high/low bracket open and close.
    """
    bars = []
    previous = float(closes[0]) if len(closes) else 0.0
    for i, close in enumerate(closes):
        close = float(close)
        bars.append(MarketBar(
            timestamp=int(start_ms + i * step_ms),
            open=previous,
            high=max(previous, close),
            low=min(previous, close),
            close=close,
            volume=float(volume),
        ))
        previous = close
    return AssetSeries(symbol, bars)


def generate_gbm_series(
    symbol: str,
    rng: RandomSource,
    n_bars: int = 120,
    initial_price: float = 100.0,
    drift: float = 0.1,
    volatility: float = 0.6,
    start_ms: int = 0,
    step_ms: int = MS_PER_DAY,
    volume: float = 1_000.0,
) -> AssetSeries:
    """
    GBM AssetSeries with n_bars bars (n_bars >= 1).

    **Usage**:
        rng = NumpyRandomSource(seed=7)
        btc = generate_gbm_series("BTC", rng, n_bars=90, initial_price=40_000.0)
    """
    if n_bars < 1:
        raise ValueError(f"n_bars must be >= 1, got {n_bars}")
    closes = generate_gbm_prices(initial_price, drift, volatility, n_bars - 1, rng)
    return prices_to_series(symbol, closes, start_ms, step_ms, volume)


def generate_ou_series(
    symbol: str,
    rng: RandomSource,
    n_bars: int = 120,
    initial_price: float = 100.0,
    mean_reversion_speed: float = 5.0,
    long_term_mean: float = 100.0,
    volatility: float = 0.4,
    start_ms: int = 0,
    step_ms: int = MS_PER_DAY,
    volume: float = 1_000.0,
) -> AssetSeries:
    """Mean-reverting AssetSeries with n_bars bars (n_bars >= 1)."""
    if n_bars < 1:
        raise ValueError(f"n_bars must be >= 1, got {n_bars}")
    closes = generate_ou_prices(
        initial_price, mean_reversion_speed, long_term_mean, volatility, n_bars - 1, rng
    )
    return prices_to_series(symbol, closes, start_ms, step_ms, volume)


def generate_gbm_universe(
    symbols: list[str],
    rng: RandomSource,
    n_bars: int = 120,
    initial_price: float = 100.0,
    drift: float = 0.1,
    volatility: float = 0.6,
    start_ms: int = 0,
) -> dict[str, AssetSeries]:
    """
    One GBM series per symbol, each drawn from its own spawned stream.

    Adding a symbol at the end of the list leaves the earlier series unchanged.
    """
    return {
        symbol: generate_gbm_series(
            symbol,
            rng.spawn(),
            n_bars=n_bars,
            initial_price=initial_price,
            drift=drift,
            volatility=volatility,
            start_ms=start_ms,
        )
        for symbol in symbols
    }
