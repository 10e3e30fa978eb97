"""
StrategyOptimizer: parameter search wired to fresh backtest runs.

**Conceptual**: The optimizer owns the recipe for a backtest (historical
data, initial snapshot, collaborator factories) and turns it into the
search engine's oracle. Every candidate ParameterSet gets its own
BacktestRunner, built from the factories, so concurrent candidates never
share a ledger, an analyzer, or collaborator state. Runners are dropped as
soon as their report is returned.

**Factories** receive the candidate ParameterSet:
  - sizer_factory(parameters) → TradeSizer (default TrendFollowingSizer
    reading `position_size` and `min_confidence`)
  - analyzer_factory(parameters) → MarketAnalyzer
  - risk_gate_factory(parameters) → RiskGate
so any of the three can be parameterized by the search.
"""

import logging
from typing import Any, Callable, Mapping

from strategy_lab.analytics.performance import PerformanceReport
from strategy_lab.backtesting.engine import AbortFlag, BacktestRunner
from strategy_lab.config.settings import AnalyticsSettings, SearchSettings
from strategy_lab.data.schemas import AssetSeries
from strategy_lab.execution.ledger import PortfolioSnapshot
from strategy_lab.orchestration.search import (
    CandidateAborted,
    OptimizationResult,
    ParameterSet,
    SearchOutcome,
    coerce_space,
    run_search,
)
from strategy_lab.strategies.base import MarketAnalyzer, PermissiveRiskGate, RiskGate, TradeSizer
from strategy_lab.strategies.indicator_analyzer import IndicatorMarketAnalyzer
from strategy_lab.strategies.trend_sizer import trend_sizer_from_parameters
from strategy_lab.utils.random import RandomSource, make_random_source

log = logging.getLogger(__name__)


def _default_analyzer(parameters: ParameterSet) -> MarketAnalyzer:
    return IndicatorMarketAnalyzer()


def _default_risk_gate(parameters: ParameterSet) -> RiskGate:
    return PermissiveRiskGate()


class StrategyOptimizer:
    """
    **Usage**:
        optimizer = StrategyOptimizer(
            historical_data=universe,
            initial_snapshot=initial,
            parameter_space={
                "position_size": ParameterSpec(0.5, 2.0, 0.5),
                "min_confidence": ParameterSpec(0.0, 0.6, 0.2),
            },
            cash_asset="USD",
        )
        best = asyncio.run(optimizer.optimize_strategy(start, end, method="grid"))
    """

    def __init__(
        self,
        historical_data: Mapping[str, AssetSeries],
        initial_snapshot: PortfolioSnapshot,
        parameter_space: Mapping[str, Any],
        sizer_factory: Callable[[ParameterSet], TradeSizer] = trend_sizer_from_parameters,
        analyzer_factory: Callable[[ParameterSet], MarketAnalyzer] = _default_analyzer,
        risk_gate_factory: Callable[[ParameterSet], RiskGate] = _default_risk_gate,
        cash_asset: str = "USD",
        analytics: AnalyticsSettings | None = None,
        search_settings: SearchSettings | None = None,
        random_source: RandomSource | None = None,
    ):
        """
        Args:
            historical_data: symbol → AssetSeries shared (read-only) by all runs.
            initial_snapshot: Starting portfolio for every run.
            parameter_space: name → ParameterSpec (or {'min', 'max', 'step'}).
            sizer_factory: Builds the TradeSizer for a candidate.
            analyzer_factory: Builds the MarketAnalyzer for a candidate.
            risk_gate_factory: Builds the RiskGate for a candidate.
            cash_asset: Cash pseudo-asset passed to every runner; it funds
                        every buy.
            analytics: Analyzer settings passed to every runner.
            search_settings: Defaults for search configs and the RNG seed.
            random_source: RNG for genetic/iterative searches. Each search
                           draws from a spawned child stream. Defaults to a
                           source seeded from search_settings.seed.
        """
        self._data = dict(historical_data)
        self._initial = initial_snapshot
        self._space = coerce_space(parameter_space)
        self._sizer_factory = sizer_factory
        self._analyzer_factory = analyzer_factory
        self._risk_gate_factory = risk_gate_factory
        self._cash_asset = cash_asset
        self._analytics = analytics if analytics is not None else AnalyticsSettings()
        self._search_settings = search_settings if search_settings is not None else SearchSettings()
        self._random_source = (
            random_source if random_source is not None
            else make_random_source(self._search_settings.seed)
        )
        self.last_outcome: SearchOutcome | None = None

    @property
    def parameter_space(self):
        return dict(self._space)

    def build_runner(self, parameters: ParameterSet) -> BacktestRunner:
        """A fresh runner whose collaborators are built for `parameters`."""
        return BacktestRunner(
            historical_data=self._data,
            initial_snapshot=self._initial,
            analyzer=self._analyzer_factory(parameters),
            sizer=self._sizer_factory(parameters),
            risk_gate=self._risk_gate_factory(parameters),
            cash_asset=self._cash_asset,
            analytics=self._analytics,
        )

    async def evaluate(
        self, parameters: ParameterSet, start: int, end: int, abort: AbortFlag | None = None
    ) -> PerformanceReport:
        """
        Backtest one candidate over [start, end].

        Raises:
            CandidateAborted: If the abort flag stopped the run before its
                              last step; a partial report is never scored.
        """
        runner = self.build_runner(parameters)
        report = await runner.run_backtest(start, end, abort=abort)
        if runner.aborted:
            raise CandidateAborted(f"run for {parameters} stopped before {end}")
        return report

    async def search(
        self,
        start: int,
        end: int,
        method: str = "genetic",
        search_config=None,
        abort: AbortFlag | None = None,
    ) -> SearchOutcome:
        """
        Run a search and return the full SearchOutcome.

        Raises:
            ValueError: If start > end (checked once, before any candidate).
            OptimizationConfigError: Unknown method or mismatched config.
        """
        if start > end:
            raise ValueError(f"start ({start}) must not be after end ({end}).")

        async def evaluator(parameters: ParameterSet) -> PerformanceReport:
            return await self.evaluate(parameters, start, end, abort)

        outcome = await run_search(
            method,
            self._space,
            evaluator,
            config=search_config,
            rng=self._random_source.spawn(),
            abort=abort,
            settings=self._search_settings,
        )
        self.last_outcome = outcome

        best = outcome.best
        log.info(
            "%s search finished: %d evaluations, %d failures, best score %.6f with %s",
            outcome.method, best.evaluations, best.failures, best.score, best.parameters,
        )
        return outcome

    async def optimize_strategy(
        self,
        start: int,
        end: int,
        method: str = "genetic",
        search_config=None,
        abort: AbortFlag | None = None,
    ) -> OptimizationResult:
        """
        Best OptimizationResult for [start, end] under `method`.

        The full evaluation history is kept on `last_outcome`.
        """
        outcome = await self.search(start, end, method, search_config, abort)
        return outcome.best
