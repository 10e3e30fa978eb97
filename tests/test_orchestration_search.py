"""
Tests for strategy_lab/orchestration/search.py

The evaluator here is a plain coroutine returning a PerformanceReport built
from the candidate's parameters, so scores are known in closed form:
    score = 0.4 * total_return + 0.2   (sharpe, drawdown, win rate all 0)
"""

import asyncio
import threading

import pytest

from strategy_lab.analytics.performance import PerformanceReport
from strategy_lab.config.settings import SearchSettings
from strategy_lab.orchestration.search import (
    CandidateAborted,
    CandidateEvaluation,
    GeneticSearchConfig,
    GridSearchConfig,
    IterativeSearchConfig,
    OptimizationConfigError,
    ParameterSpec,
    default_config,
    grid_candidates,
    normalize_method,
    objective_score,
    run_search,
    select_best,
)
from strategy_lab.utils.random import NumpyRandomSource


async def linear_evaluator(parameters):
    return PerformanceReport(total_return=parameters["x"])


async def constant_evaluator(parameters):
    return PerformanceReport(total_return=0.1)


def test_objective_score_weights():
    report = PerformanceReport(total_return=1.0, sharpe_ratio=2.0, max_drawdown=0.5, win_rate=0.5)

    assert objective_score(report) == pytest.approx(0.4 + 0.6 + 0.1 + 0.05)


def test_grid_values():
    assert ParameterSpec(0.0, 1.0, 1.0).grid_values() == [0.0, 1.0]
    assert ParameterSpec(2.0, 5.0, 0.0).grid_values() == [2.0]
    assert ParameterSpec(3.0, 3.0, 1.0).grid_values() == [3.0]

    tenths = ParameterSpec(0.0, 1.0, 0.1).grid_values()
    assert len(tenths) == 11
    assert tenths[-1] == 1.0

    # max not on a step boundary is not reached
    assert ParameterSpec(0.0, 1.0, 0.4).grid_values() == pytest.approx([0.0, 0.4, 0.8])


def test_parameter_spec_validation():
    with pytest.raises(ValueError):
        ParameterSpec(2.0, 1.0)
    with pytest.raises(ValueError):
        ParameterSpec(0.0, float("inf"))
    with pytest.raises(ValueError, match="missing"):
        ParameterSpec.from_mapping({"min": 0.0})
    assert ParameterSpec.from_mapping({"min": 0, "max": 2, "step": 1}) == ParameterSpec(0.0, 2.0, 1.0)


def test_grid_candidates_cartesian_product():
    space = {"a": ParameterSpec(0.0, 1.0, 1.0), "b": ParameterSpec(10.0, 30.0, 10.0)}
    candidates = grid_candidates(space)

    assert len(candidates) == 6
    assert candidates[0] == {"a": 0.0, "b": 10.0}
    assert candidates[-1] == {"a": 1.0, "b": 30.0}


def test_grid_search_picks_highest_score():
    outcome = asyncio.run(run_search(
        "grid", {"x": {"min": 0.0, "max": 1.0, "step": 1.0}}, linear_evaluator,
    ))

    assert outcome.method == "grid"
    assert outcome.best.parameters == {"x": 1.0}
    assert outcome.best.score == pytest.approx(0.6)
    assert outcome.best.evaluations == 2
    assert outcome.best.failures == 0
    assert outcome.best_scores == ()


def test_grid_search_ties_go_to_first_candidate():
    outcome = asyncio.run(run_search(
        "grid", {"x": ParameterSpec(0.0, 3.0, 1.0)}, constant_evaluator,
    ))

    assert outcome.best.parameters == {"x": 0.0}


def test_select_best_tie_break_by_index():
    evaluations = [
        CandidateEvaluation(index=2, generation=0, parameters={"x": 2.0}, score=1.0),
        CandidateEvaluation(index=1, generation=0, parameters={"x": 1.0}, score=1.0),
        CandidateEvaluation(index=0, generation=0, parameters={"x": 0.0}, score=0.5),
    ]

    assert select_best(evaluations).index == 1
    assert select_best([]) is None


def test_unknown_method_is_a_config_error():
    with pytest.raises(OptimizationConfigError, match="grid, genetic, iterative"):
        asyncio.run(run_search("annealing", {"x": ParameterSpec(0.0, 1.0)}, linear_evaluator))


def test_method_names_are_normalized():
    assert normalize_method(" Grid ") == "grid"
    assert normalize_method("bayesian") == "iterative"


def test_mismatched_config_type_is_rejected():
    with pytest.raises(OptimizationConfigError, match="GeneticSearchConfig"):
        asyncio.run(run_search(
            "genetic", {"x": ParameterSpec(0.0, 1.0)}, linear_evaluator, config=GridSearchConfig(),
        ))


def test_failed_candidates_score_negative_infinity():
    async def evaluator(parameters):
        if parameters["x"] > 0.5:
            raise RuntimeError("backtest exploded")
        return PerformanceReport(total_return=parameters["x"])

    outcome = asyncio.run(run_search("grid", {"x": ParameterSpec(0.0, 1.0, 0.25)}, evaluator))

    assert outcome.best.parameters == {"x": 0.5}
    assert outcome.best.evaluations == 5
    assert outcome.best.failures == 2
    failed = [e for e in outcome.evaluations if e.failed]
    assert all(e.score == float("-inf") for e in failed)
    assert failed[0].error == "RuntimeError: backtest exploded"


def test_concurrency_is_bounded():
    in_flight = 0
    peak = 0

    async def evaluator(parameters):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.001)
        in_flight -= 1
        return PerformanceReport(total_return=parameters["x"])

    outcome = asyncio.run(run_search(
        "grid", {"x": ParameterSpec(0.0, 9.0, 1.0)}, evaluator,
        config=GridSearchConfig(max_concurrency=2),
    ))

    assert peak == 2
    assert [e.index for e in outcome.evaluations] == list(range(10))


def test_genetic_search_shape_and_monotone_best():
    config = GeneticSearchConfig(population_size=6, generations=4, mutation_rate=0.2, elite_size=2, seed=1)
    space = {"x": ParameterSpec(0.0, 1.0), "y": ParameterSpec(-1.0, 1.0)}
    outcome = asyncio.run(run_search("genetic", space, linear_evaluator, config=config))

    assert len(outcome.evaluations) == 24
    for generation in range(4):
        assert sum(1 for e in outcome.evaluations if e.generation == generation) == 6
    assert len(outcome.best_scores) == 4
    assert list(outcome.best_scores) == sorted(outcome.best_scores)
    assert outcome.best.score == max(e.score for e in outcome.evaluations)
    for e in outcome.evaluations:
        assert 0.0 <= e.parameters["x"] <= 1.0
        assert -1.0 <= e.parameters["y"] <= 1.0


def test_genetic_elites_survive_into_next_generation():
    config = GeneticSearchConfig(population_size=5, generations=2, mutation_rate=0.0, elite_size=1, seed=4)
    outcome = asyncio.run(run_search("genetic", {"x": ParameterSpec(0.0, 1.0)}, linear_evaluator, config=config))

    first_best = select_best([e for e in outcome.evaluations if e.generation == 0])
    second_gen = [e.parameters for e in outcome.evaluations if e.generation == 1]
    assert second_gen[0] == first_best.parameters


def test_genetic_search_is_reproducible_with_seed():
    config = GeneticSearchConfig(population_size=5, generations=3, elite_size=1, seed=11)
    space = {"x": ParameterSpec(0.0, 1.0)}

    first = asyncio.run(run_search("genetic", space, linear_evaluator, config=config))
    second = asyncio.run(run_search("genetic", space, linear_evaluator, config=config))

    assert first.evaluations == second.evaluations


def test_rng_is_used_when_config_has_no_seed():
    space = {"x": ParameterSpec(0.0, 1.0)}
    config = IterativeSearchConfig(iterations=5)

    first = asyncio.run(run_search("iterative", space, linear_evaluator, config=config, rng=NumpyRandomSource(3)))
    second = asyncio.run(run_search("iterative", space, linear_evaluator, config=config, rng=NumpyRandomSource(3)))

    assert [e.parameters for e in first.evaluations] == [e.parameters for e in second.evaluations]


def test_iterative_search_budget_and_running_best():
    config = IterativeSearchConfig(iterations=10, seed=2)
    outcome = asyncio.run(run_search("bayesian", {"x": ParameterSpec(0.0, 1.0)}, linear_evaluator, config=config))

    assert outcome.method == "iterative"
    assert len(outcome.evaluations) == 10
    assert len(outcome.best_scores) == 10
    assert list(outcome.best_scores) == sorted(outcome.best_scores)
    assert outcome.best_scores[-1] == outcome.best.score


def test_abort_before_start_evaluates_nothing():
    abort = threading.Event()
    abort.set()

    outcome = asyncio.run(run_search(
        "grid", {"x": ParameterSpec(0.0, 1.0, 0.5)}, linear_evaluator, abort=abort,
    ))

    assert outcome.aborted
    assert outcome.evaluations == ()
    assert outcome.best.score == float("-inf")
    assert outcome.best.parameters == {}


def test_candidate_cut_short_by_abort_is_not_scored():
    """A run stopped part-way is dropped rather than competing with complete runs."""
    abort = threading.Event()

    async def evaluator(parameters):
        if parameters["x"] == 0.5:
            abort.set()
            raise CandidateAborted("stopped after 2 of 40 steps")
        return PerformanceReport(total_return=parameters["x"])

    outcome = asyncio.run(run_search(
        "grid", {"x": ParameterSpec(0.0, 1.0, 0.5)}, evaluator,
        config=GridSearchConfig(max_concurrency=1), abort=abort,
    ))

    assert outcome.aborted
    assert [e.parameters for e in outcome.evaluations] == [{"x": 0.0}]
    assert outcome.best.parameters == {"x": 0.0}
    assert outcome.best.failures == 0


def test_default_config_from_settings():
    settings = SearchSettings(population_size=8, generations=3, elite_size=2, seed=5, max_concurrency=1)
    config = default_config("genetic", settings)

    assert config == GeneticSearchConfig(
        population_size=8, generations=3, mutation_rate=0.1, elite_size=2, max_concurrency=1, seed=5,
    )


def test_config_validation():
    with pytest.raises(ValueError):
        GeneticSearchConfig(population_size=2, elite_size=3)
    with pytest.raises(ValueError):
        GeneticSearchConfig(mutation_rate=1.5)
    with pytest.raises(ValueError):
        IterativeSearchConfig(iterations=0)
    with pytest.raises(ValueError):
        GridSearchConfig(max_concurrency=0)
