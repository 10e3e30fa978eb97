"""
Incremental performance analyzer for a single backtest run.

**Conceptual**: The analyzer is the run's scorekeeper. The runner feeds it
every admitted trade (add_trade) and every appended snapshot
(update_portfolio); it never sees how trades were generated. Metrics are
derived on demand from those two histories, so a PerformanceReport can be
recomputed at any point of the run and always agrees with the data.

**Metrics** (math lives in strategy_lab.analytics.risk_metrics):
  - total_return: (latest - initial) / initial
  - max_drawdown: worst running-peak decline over the snapshot history
  - sharpe_ratio: daily returns from calendar-day buckets, rf = annual / 365
  - win_rate: realized wins / total trades, under a WinRatePairing rule
  - VaR / Expected Shortfall, allocation-weight correlation, diversification

**Win-rate pairing**: ADJACENT pairs each trade with the trade immediately
before it in history when both are on the same asset. With more than one
open lot per asset, or with trades on other assets interleaved between an
entry and its exit, this pairs the wrong trades (or none). FIFO matches each
closing trade against the oldest open opposite-side lots of its asset
instead. ADJACENT stays the default so scores remain comparable with
earlier runs.

**Correlation caveat**: correlation_matrix() correlates per-asset allocation
*weight* series, not price series. It is a proxy for co-movement of the book,
and the rebalancer's ordering was tuned against it; do not switch it to price
correlation without re-checking that ordering.
"""

from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Tuple

import numpy as np

from strategy_lab.analytics.risk_metrics import (
    compute_concentration,
    compute_correlation_matrix,
    compute_daily_returns,
    compute_daily_values,
    compute_diversification_score,
    compute_expected_shortfall,
    compute_max_drawdown,
    compute_sharpe_ratio,
    compute_total_return,
    compute_value_at_risk,
)
from strategy_lab.execution.ledger import PortfolioSnapshot, Trade, TradeSide
from strategy_lab.utils.math import compute_population_std

MS_PER_DAY = 86_400_000

# Minimum absolute weight change that counts as a rebalance in the history
REBALANCE_WEIGHT_THRESHOLD = 0.01

# No benchmark series is available to a run; beta is reported as market-neutral
DEFAULT_BETA = 1.0


class WinRatePairing(str, Enum):
    ADJACENT = "adjacent"
    FIFO = "fifo"


@dataclass(frozen=True)
class PerformanceReport:
    """
    Summary metrics of one run.

    Attributes:
        total_return: (final - initial) / initial portfolio value.
        win_rate: Fraction of trades that realized a profit, in [0, 1].
        sharpe_ratio: Daily Sharpe ratio (not annualized).
        max_drawdown: Largest peak-to-trough decline, in [0, 1].
        trades: Number of trades in the run.
    """
    total_return: float = 0.0
    win_rate: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    trades: int = 0


@dataclass(frozen=True)
class RebalanceEvent:
    """A snapshot at which at least one weight moved by more than the threshold."""
    timestamp: int
    weight_changes: Dict[str, float]


@dataclass(frozen=True)
class TradeAnalysis:
    total_trades: int
    average_trade_size: float
    trade_frequency: float
    asset_distribution: Dict[str, float]
    strategy_performance: Dict[str, float]


@dataclass(frozen=True)
class PortfolioAnalysis:
    current_allocation: Dict[str, float]
    diversification_score: float
    volatility: float
    rebalancing_history: Tuple[RebalanceEvent, ...]


@dataclass(frozen=True)
class RiskMetrics:
    value_at_risk: float
    expected_shortfall: float
    beta: float
    correlation_matrix: Dict[str, Dict[str, float]]


@dataclass(frozen=True)
class DetailedAnalysis:
    trade_analysis: TradeAnalysis
    portfolio_analysis: PortfolioAnalysis
    risk_metrics: RiskMetrics


def pair_profit(entry: Trade, exit_trade: Trade) -> float:
    """
    Profit of closing `entry` with `exit_trade`, sized by the entry amount.

    buy → sell: (exit - entry) * entry.amount
    sell → buy: (entry - exit) * entry.amount
    Same-side pairs realize nothing (0.0).
    """
    if entry.side is TradeSide.BUY and exit_trade.side is TradeSide.SELL:
        return (exit_trade.price - entry.price) * entry.amount
    if entry.side is TradeSide.SELL and exit_trade.side is TradeSide.BUY:
        return (entry.price - exit_trade.price) * entry.amount
    return 0.0


def adjacent_win_count(trades: List[Trade]) -> int:
    """Wins counted by pairing each trade with its immediate predecessor on the same asset."""
    wins = 0
    for prev, curr in zip(trades, trades[1:]):
        if curr.asset == prev.asset and pair_profit(prev, curr) > 0:
            wins += 1
    return wins


def fifo_win_count(trades: List[Trade]) -> int:
    """
    Wins counted by FIFO lot matching per asset.

    Each trade first closes open lots of the opposite side, oldest first;
    any unmatched remainder opens a new lot on its own side. A trade is a win
    when it closed something and the matched profit is positive.
    """
    open_lots: Dict[str, deque] = defaultdict(deque)
    wins = 0

    for trade in trades:
        lots = open_lots[trade.asset]
        remaining = trade.amount
        matched = 0.0
        profit = 0.0

        while remaining > 0 and lots and lots[0][0] is not trade.side:
            side, lot_amount, lot_price = lots[0]
            qty = min(remaining, lot_amount)
            if side is TradeSide.BUY:
                profit += (trade.price - lot_price) * qty
            else:
                profit += (lot_price - trade.price) * qty
            matched += qty
            remaining -= qty
            if qty >= lot_amount:
                lots.popleft()
            else:
                lots[0] = (side, lot_amount - qty, lot_price)

        if remaining > 0:
            lots.append((trade.side, remaining, trade.price))
        if matched > 0 and profit > 0:
            wins += 1

    return wins


class PerformanceAnalyzer:
    """
    Accumulates one run's trades and snapshots and derives metrics on demand.

    **Usage**:
        analyzer = PerformanceAnalyzer(initial_snapshot)
        analyzer.add_trade(trade)
        analyzer.update_portfolio(snapshot)
        report = analyzer.get_performance_metrics()

    One instance belongs to exactly one run. The runner creates a fresh
    analyzer, seeded with the initial snapshot, on every run.
    """

    def __init__(
        self,
        initial_snapshot: PortfolioSnapshot,
        risk_free_rate: float = 0.02,
        var_confidence: float = 0.95,
        win_rate_pairing: WinRatePairing | str = WinRatePairing.ADJACENT,
    ):
        """
        Args:
            initial_snapshot: Starting portfolio; the base for total_return.
            risk_free_rate: Annual risk-free rate for the Sharpe ratio.
            var_confidence: Default confidence for VaR and Expected Shortfall.
            win_rate_pairing: Trade pairing rule for win_rate.
        """
        if not 0.0 < var_confidence < 1.0:
            raise ValueError(f"var_confidence must be in (0, 1), got {var_confidence}")
        self._initial = initial_snapshot
        self._history: List[PortfolioSnapshot] = [initial_snapshot]
        self._trades: List[Trade] = []
        self.risk_free_rate = risk_free_rate
        self.var_confidence = var_confidence
        self.win_rate_pairing = WinRatePairing(win_rate_pairing)

    @property
    def initial_snapshot(self) -> PortfolioSnapshot:
        return self._initial

    @property
    def trades(self) -> Tuple[Trade, ...]:
        return tuple(self._trades)

    @property
    def portfolio_history(self) -> Tuple[PortfolioSnapshot, ...]:
        """All snapshots, starting with the initial one."""
        return tuple(self._history)

    def add_trade(self, trade: Trade) -> None:
        self._trades.append(trade)

    def update_portfolio(self, snapshot: PortfolioSnapshot) -> None:
        """
        Append a snapshot.

        Raises:
            ValueError: If the snapshot is older than the latest one.
        """
        latest = self._history[-1]
        if snapshot.timestamp < latest.timestamp:
            raise ValueError(
                f"Snapshot at {snapshot.timestamp} is older than latest snapshot at {latest.timestamp}."
            )
        self._history.append(snapshot)

    # --- core metrics ---

    def total_return(self) -> float:
        return compute_total_return(self._initial.total_value, self._history[-1].total_value)

    def max_drawdown(self) -> float:
        return compute_max_drawdown([snap.total_value for snap in self._history])

    def daily_returns(self) -> np.ndarray:
        daily = compute_daily_values(
            [snap.timestamp for snap in self._history],
            [snap.total_value for snap in self._history],
        )
        return compute_daily_returns(daily.to_numpy())

    def sharpe_ratio(self) -> float:
        return compute_sharpe_ratio(self.daily_returns(), annual_risk_free_rate=self.risk_free_rate)

    def win_rate(self, pairing: WinRatePairing | str | None = None) -> float:
        """
        Fraction of trades that realized a win; 0.0 with no trades.

        Args:
            pairing: Override the analyzer's pairing rule for this call.
        """
        if not self._trades:
            return 0.0
        rule = self.win_rate_pairing if pairing is None else WinRatePairing(pairing)
        if rule is WinRatePairing.FIFO:
            wins = fifo_win_count(self._trades)
        else:
            wins = adjacent_win_count(self._trades)
        return wins / len(self._trades)

    def get_performance_metrics(self) -> PerformanceReport:
        return PerformanceReport(
            total_return=self.total_return(),
            win_rate=self.win_rate(),
            sharpe_ratio=self.sharpe_ratio(),
            max_drawdown=self.max_drawdown(),
            trades=len(self._trades),
        )

    # --- risk metrics ---

    def value_at_risk(self, confidence: float | None = None) -> float:
        c = self.var_confidence if confidence is None else confidence
        return compute_value_at_risk(self.daily_returns(), c)

    def expected_shortfall(self, confidence: float | None = None) -> float:
        c = self.var_confidence if confidence is None else confidence
        return compute_expected_shortfall(self.daily_returns(), c)

    def portfolio_volatility(self) -> float:
        """Population std of daily returns (0.0 when there are none)."""
        return compute_population_std(self.daily_returns())

    def weight_series(self) -> Dict[str, List[float]]:
        """
        Per-asset weight series across the snapshot history.

        Every asset seen in any snapshot gets one entry per snapshot, 0.0
        where it is absent (or the snapshot has zero value).
        """
        weights = [snap.weights() for snap in self._history]
        assets = sorted({asset for w in weights for asset in w})
        return {asset: [w.get(asset, 0.0) for w in weights] for asset in assets}

    def correlation_matrix(self) -> Dict[str, Dict[str, float]]:
        """Pearson correlation of allocation-weight series (see module docstring)."""
        return compute_correlation_matrix(self.weight_series())

    def diversification_score(self) -> float:
        return compute_diversification_score(self._history[-1].weights())

    def concentration(self) -> float:
        return compute_concentration(self._history[-1].weights())

    # --- detailed analysis ---

    def trade_analysis(self) -> TradeAnalysis:
        total = len(self._trades)
        if total == 0:
            return TradeAnalysis(0, 0.0, 0.0, {}, {})

        average_size = sum(t.notional for t in self._trades) / total

        span_ms = self._history[-1].timestamp - self._history[0].timestamp
        frequency = total / (span_ms / MS_PER_DAY) if span_ms > 0 else 0.0

        counts: Dict[str, int] = defaultdict(int)
        for trade in self._trades:
            counts[trade.asset] += 1
        distribution = {asset: n / total for asset, n in sorted(counts.items())}

        strategy_pnl = {trade.strategy_tag: 0.0 for trade in self._trades}
        for prev, curr in zip(self._trades, self._trades[1:]):
            if curr.asset == prev.asset:
                strategy_pnl[curr.strategy_tag] += pair_profit(prev, curr)

        return TradeAnalysis(
            total_trades=total,
            average_trade_size=average_size,
            trade_frequency=frequency,
            asset_distribution=distribution,
            strategy_performance=dict(strategy_pnl),
        )

    def rebalancing_history(self) -> Tuple[RebalanceEvent, ...]:
        events = []
        for prev, curr in zip(self._history, self._history[1:]):
            before, after = prev.weights(), curr.weights()
            changes = {
                asset: after.get(asset, 0.0) - before.get(asset, 0.0)
                for asset in sorted(set(before) | set(after))
            }
            moved = {a: d for a, d in changes.items() if abs(d) > REBALANCE_WEIGHT_THRESHOLD}
            if moved:
                events.append(RebalanceEvent(timestamp=curr.timestamp, weight_changes=moved))
        return tuple(events)

    def portfolio_analysis(self) -> PortfolioAnalysis:
        return PortfolioAnalysis(
            current_allocation=self._history[-1].weights(),
            diversification_score=self.diversification_score(),
            volatility=self.portfolio_volatility(),
            rebalancing_history=self.rebalancing_history(),
        )

    def risk_metrics(self) -> RiskMetrics:
        return RiskMetrics(
            value_at_risk=self.value_at_risk(),
            expected_shortfall=self.expected_shortfall(),
            beta=DEFAULT_BETA,
            correlation_matrix=self.correlation_matrix(),
        )

    def get_detailed_analysis(self) -> DetailedAnalysis:
        return DetailedAnalysis(
            trade_analysis=self.trade_analysis(),
            portfolio_analysis=self.portfolio_analysis(),
            risk_metrics=self.risk_metrics(),
        )
