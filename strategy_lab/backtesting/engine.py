"""
Time-stepped, multi-asset backtest runner.

**Conceptual**: The runner replays historical bars for several assets on one
shared timeline. At every step it asks the market analyzer for an insight per
asset, lets the risk gate observe the portfolio, sizes a candidate trade per
asset, admits it through the risk gate, applies admitted trades to the
ledger, and appends a portfolio snapshot. The analyzer is fed every trade
and snapshot, and its PerformanceReport is the run's result.

**Timeline**: The master timeline is the sorted set of distinct bar
timestamps, across all assets, inside [start, end] (inclusive). At step t an
asset's visible window is every bar with timestamp <= t. An asset with no bar
exactly at t keeps its last bar visible (prices carry forward for valuation)
but is not traded at t.

**State machine**: IDLE → RUNNING → COMPLETED. Every run_backtest() call
starts by resetting to IDLE: trades cleared, a fresh ledger built from the
caller's initial snapshot, a fresh analyzer seeded with it. Two runs over the
same data, snapshot, and collaborators therefore produce identical trade and
snapshot histories. Trade ids come from a per-run sequence number and the
only clock consulted is the runner's SimulatedClock.

**Failure isolation**: A failed analysis for one asset at one step (missing
data, or any error raised by the analyzer) is logged and that asset is
skipped for the step; the run continues.

**Sync or async collaborators**: run_backtest is a coroutine. Results of
analyzer and risk-gate calls are awaited when they are awaitable, always
before any trade of that step is applied.
"""

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Mapping, Protocol, Tuple

from strategy_lab.analytics.performance import (
    DetailedAnalysis,
    PerformanceAnalyzer,
    PerformanceReport,
    RiskMetrics,
)
from strategy_lab.analytics.risk_metrics import compute_concentration
from strategy_lab.config.settings import AnalyticsSettings
from strategy_lab.data.schemas import AssetSeries, validate_universe
from strategy_lab.execution.ledger import (
    PortfolioLedger,
    PortfolioSnapshot,
    Trade,
    TradeSide,
    ZERO_UNITS,
)
from strategy_lab.strategies.base import (
    MarketAnalyzer,
    MarketInsight,
    MissingMarketDataError,
    PermissiveRiskGate,
    Recommendation,
    RiskGate,
    TradeSizer,
    resolve,
)
from strategy_lab.utils.time import Clock, SimulatedClock

log = logging.getLogger(__name__)


class AbortFlag(Protocol):
    """Anything with is_set(), e.g. threading.Event or asyncio.Event."""

    def is_set(self) -> bool:
        ...


class RunnerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass(frozen=True)
class DetailedResults:
    """
    Everything a finished run produced.

    Attributes:
        performance: Summary PerformanceReport.
        trades: Admitted trades in execution order.
        portfolio_history: Snapshots, starting with the initial one.
        risk_metrics: VaR, Expected Shortfall, beta, correlation matrix.
        analysis: Full trade/portfolio/risk breakdown.
    """
    performance: PerformanceReport
    trades: Tuple[Trade, ...]
    portfolio_history: Tuple[PortfolioSnapshot, ...]
    risk_metrics: RiskMetrics
    analysis: DetailedAnalysis


def build_timeline(data: Mapping[str, AssetSeries], start: int, end: int) -> List[int]:
    """
    Sorted distinct timestamps of all bars within [start, end].

    Raises:
        ValueError: If start > end.
    """
    if start > end:
        raise ValueError(f"start ({start}) must not be after end ({end}).")
    stamps = set()
    for series in data.values():
        stamps.update(ts for ts in series.timestamps if start <= ts <= end)
    return sorted(stamps)


class BacktestRunner:
    """
    Replays historical data through a strategy and records the outcome.

    **Usage**:
        runner = BacktestRunner(
            historical_data={"BTC": btc_series, "ETH": eth_series},
            initial_snapshot=PortfolioSnapshot(timestamp=start, total_value=10_000.0,
                                               allocation={"USD": 10_000.0},
                                               prices={"USD": 1.0}),
            analyzer=IndicatorMarketAnalyzer(),
            sizer=TrendFollowingSizer(position_size=1.0),
            cash_asset="USD",
        )
        report = asyncio.run(runner.run_backtest(start, end))
        details = runner.get_detailed_results()

    A runner owns its ledger and analyzer for the duration of a run and must
    not be shared by concurrent runs; the search engine builds one per
    candidate.
    """

    def __init__(
        self,
        historical_data: Mapping[str, AssetSeries],
        initial_snapshot: PortfolioSnapshot,
        analyzer: MarketAnalyzer,
        sizer: TradeSizer,
        risk_gate: RiskGate | None = None,
        cash_asset: str = "USD",
        analytics: AnalyticsSettings | None = None,
        clock: SimulatedClock | None = None,
        strategy_tag: str = "backtest",
        execution_tag: str = "simulated",
    ):
        """
        Args:
            historical_data: symbol → AssetSeries. Trades only ever reference
                             these symbols.
            initial_snapshot: Starting portfolio, restored on every run.
            analyzer: MarketAnalyzer collaborator.
            sizer: TradeSizer producing signed trade amounts.
            risk_gate: RiskGate collaborator (default admits everything).
            cash_asset: Unit-priced cash pseudo-asset. Buys are paid from it
                        and capped at its balance; sells pay into it. A
                        snapshot without this asset starts with no cash,
                        so it can only sell what it holds.
            analytics: Analyzer settings (risk-free rate, VaR confidence,
                       win-rate pairing). Defaults to AnalyticsSettings().
            clock: SimulatedClock to drive; shared with collaborators that
                   need the simulated "now".
            strategy_tag: Tag written on every trade.
            execution_tag: Tag written on every trade.

        Raises:
            SchemaValidationError: If historical_data is empty or inconsistent.
            ValueError: If cash_asset is empty or collides with a traded symbol.
        """
        validate_universe(dict(historical_data))
        if not cash_asset:
            raise ValueError("cash_asset must name the cash pseudo-asset that funds buys.")
        if cash_asset in historical_data:
            raise ValueError(
                f"cash_asset '{cash_asset}' is also a traded symbol; use a distinct name."
            )

        self._data: Dict[str, AssetSeries] = dict(historical_data)
        self._initial = initial_snapshot
        self._analyzer = analyzer
        self._sizer = sizer
        self._risk_gate = risk_gate if risk_gate is not None else PermissiveRiskGate()
        self._cash_asset = cash_asset
        self._analytics = analytics if analytics is not None else AnalyticsSettings()
        self._clock = clock if clock is not None else SimulatedClock(initial_snapshot.timestamp)
        self._strategy_tag = strategy_tag
        self._execution_tag = execution_tag

        self._state = RunnerState.IDLE
        self._trades: List[Trade] = []
        self._history: List[PortfolioSnapshot] = []
        self._ledger: PortfolioLedger | None = None
        self._performance: PerformanceAnalyzer | None = None
        self._trade_seq = 0
        self._aborted = False

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def aborted(self) -> bool:
        """True when the last run stopped on the abort flag before its last step."""
        return self._aborted

    @property
    def clock(self) -> Clock:
        """Read-only view of the simulated "now" for collaborators."""
        return self._clock

    @property
    def trades(self) -> Tuple[Trade, ...]:
        return tuple(self._trades)

    @property
    def portfolio_history(self) -> Tuple[PortfolioSnapshot, ...]:
        return tuple(self._history)

    def _reset(self, start: int) -> None:
        self._state = RunnerState.IDLE
        self._trades = []
        self._trade_seq = 0
        self._aborted = False

        # The analyzer's history must be time-ordered; an initial snapshot
        # stamped after the window start is re-stamped to the start.
        seed = self._initial
        if seed.timestamp > start:
            seed = replace(seed, timestamp=start)
        # Cash is worth 1.0 per unit in the seed too, or its weight reads 0
        if seed.prices.get(self._cash_asset) != 1.0:
            seed = replace(seed, prices={**seed.prices, self._cash_asset: 1.0})
        self._history = [seed]

        self._ledger = PortfolioLedger(seed, cash_asset=self._cash_asset)
        self._performance = PerformanceAnalyzer(
            seed,
            risk_free_rate=self._analytics.risk_free_rate,
            var_confidence=self._analytics.var_confidence,
            win_rate_pairing=self._analytics.win_rate_pairing,
        )
        self._clock.reset(seed.timestamp)

    async def run_backtest(
        self, start: int, end: int, abort: AbortFlag | None = None
    ) -> PerformanceReport:
        """
        Replay [start, end] and return the PerformanceReport.

        Args:
            start: First timestamp (ms, inclusive).
            end: Last timestamp (ms, inclusive).
            abort: Optional flag checked between timesteps; when set, the run
                   stops early, `aborted` becomes True, and the report covers
                   the partial history only.

        Raises:
            ValueError: If start > end.
            RuntimeError: If this runner is already running.
        """
        if self._state is RunnerState.RUNNING:
            raise RuntimeError("BacktestRunner is already running; use one runner per run.")

        timeline = build_timeline(self._data, start, end)
        self._reset(start)
        self._state = RunnerState.RUNNING

        if not timeline:
            log.warning("No bars between %d and %d; nothing to simulate.", start, end)

        try:
            for timestamp in timeline:
                if abort is not None and abort.is_set():
                    log.info("Backtest aborted at %d after %d steps.", timestamp, len(self._history) - 1)
                    self._aborted = True
                    break
                await self._step(timestamp)
        finally:
            self._state = RunnerState.COMPLETED

        report = self._performance.get_performance_metrics()
        log.debug(
            "Backtest completed: %d steps, %d trades, total_return=%.4f",
            len(self._history) - 1, report.trades, report.total_return,
        )
        return report

    async def _step(self, timestamp: int) -> None:
        self._clock.advance_to(timestamp)

        prices = {}
        for symbol, series in self._data.items():
            bar = series.latest_at(timestamp)
            if bar is not None:
                prices[symbol] = bar.close
        self._ledger.update_prices(prices)

        insights = await self._analyze_all(timestamp)

        current = self._ledger.snapshot(
            timestamp, risk_score=compute_concentration(self._ledger.weights())
        )
        await resolve(self._risk_gate.update_portfolio(current))

        for asset, insight in insights.items():
            bar = self._data[asset].bar_at(timestamp)
            if bar is None:
                continue
            trade = await self._build_trade(asset, insight, bar.close, timestamp)
            if trade is None:
                continue
            self._ledger.apply(trade)
            self._trades.append(trade)
            self._performance.add_trade(trade)

        recommendations = tuple(
            f"{asset}:{insight.recommendation.value}"
            for asset, insight in insights.items()
            if insight.recommendation is not Recommendation.HOLD
        )
        snapshot = self._ledger.snapshot(
            timestamp,
            risk_score=compute_concentration(self._ledger.weights()),
            recommendations=recommendations,
        )
        self._history.append(snapshot)
        self._performance.update_portfolio(snapshot)

    async def _analyze_all(self, timestamp: int) -> Dict[str, MarketInsight]:
        insights: Dict[str, MarketInsight] = {}
        for asset, series in self._data.items():
            window = series.bars_up_to(timestamp)
            try:
                insights[asset] = await resolve(self._analyzer.analyze(asset, window))
            except MissingMarketDataError as e:
                log.warning("Skipping %s at %d: %s", asset, timestamp, e)
            except Exception as e:
                log.warning(
                    "Skipping %s at %d: analysis failed (%s: %s)",
                    asset, timestamp, type(e).__name__, e,
                )
        return insights

    async def _build_trade(
        self, asset: str, insight: MarketInsight, price: float, timestamp: int
    ) -> Trade | None:
        amount = self._sizer(asset, insight, price)
        if amount == 0 or not math.isfinite(amount):
            return None

        side = TradeSide.BUY if amount > 0 else TradeSide.SELL
        units = self._cap_amount(asset, side, abs(amount), price)
        if units <= ZERO_UNITS:
            return None

        signed = units if side is TradeSide.BUY else -units
        admitted = await resolve(self._risk_gate.can_open_position(asset, signed, price))
        if not admitted:
            log.debug("Risk gate rejected %s %.6f %s at %d", side.value, units, asset, timestamp)
            return None

        self._trade_seq += 1
        return Trade(
            id=f"trade-{self._trade_seq:06d}",
            asset=asset,
            side=side,
            amount=units,
            price=price,
            timestamp=timestamp,
            strategy_tag=self._strategy_tag,
            execution_tag=self._execution_tag,
        )

    def _cap_amount(self, asset: str, side: TradeSide, units: float, price: float) -> float:
        """Sells are capped at holdings; buys at available cash."""
        if side is TradeSide.SELL:
            return min(units, self._ledger.units(asset))
        if price <= 0:
            return units
        return min(units, self._ledger.units(self._cash_asset) / price)

    def get_detailed_results(self) -> DetailedResults:
        """
        Results of the most recent run.

        Raises:
            RuntimeError: If run_backtest has not been called yet.
        """
        if self._performance is None:
            raise RuntimeError("No results yet: call run_backtest first.")
        analysis = self._performance.get_detailed_analysis()
        return DetailedResults(
            performance=self._performance.get_performance_metrics(),
            trades=tuple(self._trades),
            portfolio_history=tuple(self._history),
            risk_metrics=analysis.risk_metrics,
            analysis=analysis,
        )
