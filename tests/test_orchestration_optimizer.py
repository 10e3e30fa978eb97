"""
Tests for strategy_lab/orchestration/optimizer.py

End-to-end: synthetic GBM data → StrategyOptimizer → fresh BacktestRunner per
candidate → SearchOutcome.
"""

import asyncio
import threading

import pytest

from strategy_lab.analytics.synthetic_data import MS_PER_DAY, generate_gbm_universe
from strategy_lab.execution.ledger import PortfolioSnapshot
from strategy_lab.orchestration.optimizer import StrategyOptimizer
from strategy_lab.orchestration.search import (
    GeneticSearchConfig,
    GridSearchConfig,
    OptimizationConfigError,
    ParameterSpec,
)
from strategy_lab.strategies.indicator_analyzer import IndicatorMarketAnalyzer
from strategy_lab.strategies.trend_sizer import trend_sizer_from_parameters
from strategy_lab.utils.random import NumpyRandomSource

N_BARS = 40
END_MS = (N_BARS - 1) * MS_PER_DAY


@pytest.fixture
def universe():
    return generate_gbm_universe(["BTC", "ETH"], NumpyRandomSource(seed=21), n_bars=N_BARS)


def make_optimizer(universe, **kwargs):
    return StrategyOptimizer(
        historical_data=universe,
        initial_snapshot=PortfolioSnapshot(0, 10_000.0, {"USD": 10_000.0}, {"USD": 1.0}),
        parameter_space=kwargs.pop("parameter_space", {
            "position_size": ParameterSpec(0.5, 1.0, 0.5),
            "min_confidence": {"min": 0.0, "max": 0.3, "step": 0.3},
        }),
        analyzer_factory=lambda params: IndicatorMarketAnalyzer(short_window=5, long_window=15),
        cash_asset="USD",
        random_source=NumpyRandomSource(seed=0),
        **kwargs,
    )


def test_grid_optimization_end_to_end(universe):
    optimizer = make_optimizer(universe)
    best = asyncio.run(optimizer.optimize_strategy(0, END_MS, method="grid"))

    outcome = optimizer.last_outcome
    assert outcome.method == "grid"
    assert len(outcome.evaluations) == 4
    assert best.evaluations == 4
    assert best.failures == 0
    assert best.parameters in [e.parameters for e in outcome.evaluations]
    assert best.score == max(e.score for e in outcome.evaluations)


def test_candidate_scores_match_direct_backtest(universe):
    """A candidate's score equals running its backtest directly."""
    optimizer = make_optimizer(universe)
    outcome = asyncio.run(optimizer.search(0, END_MS, method="grid"))

    candidate = outcome.evaluations[-1]
    report = asyncio.run(optimizer.build_runner(candidate.parameters).run_backtest(0, END_MS))
    assert report == candidate.performance


def test_each_candidate_gets_its_own_runner(universe):
    built = []

    def sizer_factory(params):
        sizer = trend_sizer_from_parameters(params)
        built.append(sizer)
        return sizer

    optimizer = make_optimizer(universe, sizer_factory=sizer_factory)
    asyncio.run(optimizer.search(0, END_MS, method="grid"))

    assert len(built) == 4
    assert len({id(s) for s in built}) == 4
    assert optimizer.build_runner({}) is not optimizer.build_runner({})


def test_genetic_optimization_is_reproducible(universe):
    config = GeneticSearchConfig(population_size=4, generations=2, elite_size=1, max_concurrency=2, seed=5)

    first = asyncio.run(make_optimizer(universe).optimize_strategy(0, END_MS, "genetic", config))
    second = asyncio.run(make_optimizer(universe).optimize_strategy(0, END_MS, "genetic", config))

    assert first == second
    assert first.evaluations == 8


def test_start_after_end_raises(universe):
    with pytest.raises(ValueError):
        asyncio.run(make_optimizer(universe).search(END_MS, 0, method="grid"))


def test_unknown_method_raises(universe):
    with pytest.raises(OptimizationConfigError):
        asyncio.run(make_optimizer(universe).search(0, END_MS, method="simplex"))


def test_abort_mid_candidate_drops_the_partial_run(universe):
    """The second candidate trips the abort after 5 steps; only the first is scored."""
    abort = threading.Event()

    class TrippingAnalyzer(IndicatorMarketAnalyzer):
        def __init__(self, trip_after):
            super().__init__(short_window=5, long_window=15)
            self.calls = 0
            self.trip_after = trip_after

        def analyze(self, asset, window):
            self.calls += 1
            if self.trip_after is not None and self.calls >= self.trip_after:
                abort.set()
            return super().analyze(asset, window)

    optimizer = StrategyOptimizer(
        historical_data=universe,
        initial_snapshot=PortfolioSnapshot(0, 10_000.0, {"USD": 10_000.0}, {"USD": 1.0}),
        parameter_space={"position_size": ParameterSpec(0.5, 1.0, 0.5)},
        # Two assets per step: 10 calls is the end of step 5
        analyzer_factory=lambda params: TrippingAnalyzer(10 if params["position_size"] == 1.0 else None),
        random_source=NumpyRandomSource(seed=0),
    )
    outcome = asyncio.run(optimizer.search(
        0, END_MS, method="grid", search_config=GridSearchConfig(max_concurrency=1), abort=abort,
    ))

    assert outcome.aborted
    assert [e.parameters for e in outcome.evaluations] == [{"position_size": 0.5}]
    assert outcome.best.parameters == {"position_size": 0.5}
    assert outcome.best.evaluations == 1

    full = asyncio.run(optimizer.evaluate({"position_size": 0.5}, 0, END_MS))
    assert outcome.best.performance == full
