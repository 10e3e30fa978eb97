"""
Parameter search over a named numeric space: grid, genetic, iterative random.

**Conceptual**: A search treats backtesting as a black-box oracle,
`evaluate(parameters) -> PerformanceReport`, and looks for the ParameterSet
with the highest objective score:

    score = 0.4 * total_return + 0.3 * sharpe_ratio
          + 0.2 * (1 - max_drawdown) + 0.1 * win_rate

Three strategies, selected by name:
  - grid: every combination of per-dimension values min, min+step, ..., max
  - genetic: elites + tournament-of-3 parents, uniform crossover, re-sampling
    mutation; the best individual of any generation wins
  - iterative: fixed budget of uniform random samples (the original
    "bayesian" method without a surrogate model; "bayesian" is accepted as an
    alias)

**Concurrency**: Candidates of one batch (the whole grid, one generation, or
the iterative budget) are evaluated as asyncio tasks bounded by
`asyncio.Semaphore(max_concurrency)`. All random draws happen before a batch
is evaluated, and results are collected in submission order, so completion
order never affects which candidate wins. Winner: highest score; exact ties
go to the lowest evaluation index (generation-major).

**Failures**: An evaluation that raises scores -inf, is logged, and is counted
in OptimizationResult.failures; the search continues.

**Abort**: An optional flag (anything with is_set()) is checked before each
candidate starts. An evaluator that stops part-way raises CandidateAborted.
Skipped and cut-short candidates are not recorded or scored, and the outcome
is marked aborted.
"""

import asyncio
import itertools
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from strategy_lab.analytics.performance import PerformanceReport
from strategy_lab.config.settings import SearchSettings
from strategy_lab.utils.random import RandomSource, make_random_source

log = logging.getLogger(__name__)

ParameterSet = Dict[str, float]
Evaluator = Callable[[ParameterSet], Awaitable[PerformanceReport]]

GRID = "grid"
GENETIC = "genetic"
ITERATIVE = "iterative"
SEARCH_METHODS = (GRID, GENETIC, ITERATIVE)
METHOD_ALIASES = {"bayesian": ITERATIVE}

TOURNAMENT_SIZE = 3

# Tolerance when counting grid steps, so (max - min) / step lands on max
_GRID_EPSILON = 1e-9


class OptimizationConfigError(ValueError):
    """Raised for an unknown search method or a config of the wrong kind."""
    pass


class CandidateAborted(Exception):
    """Raised by an evaluator whose run was cut short by the abort flag."""
    pass


def normalize_method(method: str) -> str:
    """
    Canonical search-method name.

    Raises:
        OptimizationConfigError: If the name is not a supported method or alias.
    """
    name = str(method).strip().lower()
    name = METHOD_ALIASES.get(name, name)
    if name not in SEARCH_METHODS:
        raise OptimizationConfigError(
            f"Unsupported optimization method '{method}'. "
            f"Valid methods: {', '.join(SEARCH_METHODS)} "
            f"(alias: {', '.join(METHOD_ALIASES)})."
        )
    return name


@dataclass(frozen=True)
class ParameterSpec:
    """
    One search dimension.

    Attributes:
        min: Lower bound (inclusive).
        max: Upper bound (inclusive).
        step: Grid step. step <= 0 means the grid uses `min` only.
    """
    min: float
    max: float
    step: float = 0.0

    def __post_init__(self):
        for name in ('min', 'max', 'step'):
            value = getattr(self, name)
            if not math.isfinite(value):
                raise ValueError(f"ParameterSpec.{name} must be finite, got {value}")
        if self.min > self.max:
            raise ValueError(f"ParameterSpec.min ({self.min}) must not exceed max ({self.max}).")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, float]) -> "ParameterSpec":
        """Build from {'min': .., 'max': .., 'step': ..}; step is optional."""
        try:
            return cls(min=float(raw['min']), max=float(raw['max']), step=float(raw.get('step', 0.0)))
        except KeyError as e:
            raise ValueError(f"ParameterSpec mapping is missing {e}: {dict(raw)}")

    def grid_values(self) -> List[float]:
        """
        min, min+step, ..., up to max inclusive.

        Values are computed as min + i*step rather than by repeated addition,
        so 0.1-style steps do not drift past max.
        """
        if self.step <= 0 or self.min == self.max:
            return [self.min]
        count = int(math.floor((self.max - self.min) / self.step + _GRID_EPSILON))
        return [min(self.min + i * self.step, self.max) for i in range(count + 1)]

    def sample(self, rng: RandomSource) -> float:
        return rng.uniform(self.min, self.max)

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max


ParameterSpace = Dict[str, ParameterSpec]


def coerce_space(space: Mapping[str, Any]) -> ParameterSpace:
    """Accept ParameterSpec values or plain {'min', 'max', 'step'} mappings."""
    coerced: ParameterSpace = {}
    for name, spec in space.items():
        coerced[name] = spec if isinstance(spec, ParameterSpec) else ParameterSpec.from_mapping(spec)
    return coerced


def objective_score(report: PerformanceReport) -> float:
    return (
        0.4 * report.total_return
        + 0.3 * report.sharpe_ratio
        + 0.2 * (1 - report.max_drawdown)
        + 0.1 * report.win_rate
    )


@dataclass(frozen=True)
class CandidateEvaluation:
    """
    One evaluated ParameterSet.

    Attributes:
        index: Evaluation order across the whole search (generation-major).
        generation: Genetic generation (0 for grid and iterative).
        parameters: The candidate.
        score: Objective score, -inf if evaluation failed.
        performance: Report, None if evaluation failed.
        error: "<ExceptionType>: <message>" if evaluation failed.
    """
    index: int
    generation: int
    parameters: ParameterSet
    score: float
    performance: Optional[PerformanceReport] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class OptimizationResult:
    """
    Best candidate of a search.

    Attributes:
        parameters: Winning ParameterSet.
        performance: Its PerformanceReport (None only if every candidate failed).
        score: Its objective score.
        evaluations: Candidates evaluated.
        failures: Candidates whose evaluation raised.
    """
    parameters: ParameterSet
    performance: Optional[PerformanceReport]
    score: float
    evaluations: int = 0
    failures: int = 0


@dataclass(frozen=True)
class SearchOutcome:
    """
    Full record of a search.

    Attributes:
        method: Canonical method name.
        best: Winning OptimizationResult.
        evaluations: Every evaluated candidate in index order.
        best_scores: Best-ever score after each generation (genetic) or each
                     sample (iterative); empty for grid.
        aborted: True if the abort flag stopped the search early.
    """
    method: str
    best: OptimizationResult
    evaluations: Tuple[CandidateEvaluation, ...] = ()
    best_scores: Tuple[float, ...] = ()
    aborted: bool = False


@dataclass(frozen=True)
class GridSearchConfig:
    max_concurrency: int = 4

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")

    @classmethod
    def from_settings(cls, settings: SearchSettings) -> "GridSearchConfig":
        return cls(max_concurrency=settings.max_concurrency)


@dataclass(frozen=True)
class GeneticSearchConfig:
    """
    Genetic search knobs.

    Attributes:
        population_size: Individuals evaluated per generation.
        generations: Number of generations.
        mutation_rate: Per-dimension probability of re-sampling a child's value.
        elite_size: Top individuals copied unchanged into the next generation.
        max_concurrency: Evaluations in flight.
        seed: RandomSource seed; None uses the caller's source.
    """
    population_size: int = 50
    generations: int = 20
    mutation_rate: float = 0.1
    elite_size: int = 5
    max_concurrency: int = 4
    seed: Optional[int] = None

    def __post_init__(self):
        if self.population_size < 1:
            raise ValueError(f"population_size must be >= 1, got {self.population_size}")
        if self.generations < 1:
            raise ValueError(f"generations must be >= 1, got {self.generations}")
        if not 0.0 <= self.mutation_rate <= 1.0:
            raise ValueError(f"mutation_rate must be in [0, 1], got {self.mutation_rate}")
        if not 0 <= self.elite_size <= self.population_size:
            raise ValueError(
                f"elite_size must be in [0, population_size={self.population_size}], "
                f"got {self.elite_size}"
            )
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")

    @classmethod
    def from_settings(cls, settings: SearchSettings) -> "GeneticSearchConfig":
        return cls(
            population_size=settings.population_size,
            generations=settings.generations,
            mutation_rate=settings.mutation_rate,
            elite_size=settings.elite_size,
            max_concurrency=settings.max_concurrency,
            seed=settings.seed,
        )


@dataclass(frozen=True)
class IterativeSearchConfig:
    iterations: int = 50
    max_concurrency: int = 4
    seed: Optional[int] = None

    def __post_init__(self):
        if self.iterations < 1:
            raise ValueError(f"iterations must be >= 1, got {self.iterations}")
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")

    @classmethod
    def from_settings(cls, settings: SearchSettings) -> "IterativeSearchConfig":
        return cls(
            iterations=settings.iterations,
            max_concurrency=settings.max_concurrency,
            seed=settings.seed,
        )


_CONFIG_TYPES = {
    GRID: GridSearchConfig,
    GENETIC: GeneticSearchConfig,
    ITERATIVE: IterativeSearchConfig,
}


def default_config(method: str, settings: SearchSettings | None = None):
    """Config for `method` built from settings (or built-in defaults)."""
    config_type = _CONFIG_TYPES[normalize_method(method)]
    return config_type.from_settings(settings if settings is not None else SearchSettings())


# --- evaluation ---


async def _evaluate_one(
    evaluator: Evaluator,
    parameters: ParameterSet,
    index: int,
    generation: int,
    semaphore: asyncio.Semaphore,
    abort,
) -> CandidateEvaluation | None:
    async with semaphore:
        if abort is not None and abort.is_set():
            return None
        try:
            report = await evaluator(dict(parameters))
            score = objective_score(report)
        except CandidateAborted:
            log.info("Candidate %d %s stopped by abort; not recorded.", index, parameters)
            return None
        except Exception as e:
            log.warning("Candidate %d %s failed: %s: %s", index, parameters, type(e).__name__, e)
            return CandidateEvaluation(
                index=index,
                generation=generation,
                parameters=dict(parameters),
                score=float("-inf"),
                error=f"{type(e).__name__}: {e}",
            )

    if math.isnan(score):
        log.warning("Candidate %d %s produced a NaN score.", index, parameters)
        return CandidateEvaluation(
            index=index,
            generation=generation,
            parameters=dict(parameters),
            score=float("-inf"),
            performance=report,
            error="ValueError: objective score is NaN",
        )
    return CandidateEvaluation(
        index=index,
        generation=generation,
        parameters=dict(parameters),
        score=score,
        performance=report,
    )


async def evaluate_batch(
    evaluator: Evaluator,
    batch: Sequence[ParameterSet],
    start_index: int,
    generation: int,
    max_concurrency: int,
    abort=None,
) -> List[CandidateEvaluation]:
    """
    Evaluate a batch concurrently; results come back in batch order.

    Candidates skipped because of an abort are omitted, so the result may be
    shorter than the batch.
    """
    semaphore = asyncio.Semaphore(max_concurrency)
    results = await asyncio.gather(*(
        _evaluate_one(evaluator, params, start_index + i, generation, semaphore, abort)
        for i, params in enumerate(batch)
    ))
    return [r for r in results if r is not None]


def select_best(evaluations: Sequence[CandidateEvaluation]) -> CandidateEvaluation | None:
    """Highest score; ties go to the lowest index. None for an empty sequence."""
    best = None
    for evaluation in sorted(evaluations, key=lambda e: e.index):
        if best is None or evaluation.score > best.score:
            best = evaluation
    return best


def _build_outcome(
    method: str,
    evaluations: List[CandidateEvaluation],
    best_scores: Sequence[float] = (),
    aborted: bool = False,
) -> SearchOutcome:
    best = select_best(evaluations)
    failures = sum(1 for e in evaluations if e.failed)
    if best is None:
        result = OptimizationResult(parameters={}, performance=None, score=float("-inf"))
    else:
        result = OptimizationResult(
            parameters=dict(best.parameters),
            performance=best.performance,
            score=best.score,
            evaluations=len(evaluations),
            failures=failures,
        )
    if failures:
        log.warning("%s search: %d of %d candidates failed.", method, failures, len(evaluations))
    return SearchOutcome(
        method=method,
        best=result,
        evaluations=tuple(evaluations),
        best_scores=tuple(best_scores),
        aborted=aborted,
    )


def _is_aborted(abort) -> bool:
    return abort is not None and abort.is_set()


# --- strategies ---


def grid_candidates(space: ParameterSpace) -> List[ParameterSet]:
    """Cartesian product of every dimension's grid values, in dimension order."""
    names = list(space)
    value_lists = [space[name].grid_values() for name in names]
    return [dict(zip(names, combo)) for combo in itertools.product(*value_lists)]


async def grid_search(
    space: ParameterSpace,
    evaluator: Evaluator,
    config: GridSearchConfig | None = None,
    abort=None,
) -> SearchOutcome:
    config = config if config is not None else GridSearchConfig()
    candidates = grid_candidates(space)
    log.info("Grid search: %d combinations, max_concurrency=%d", len(candidates), config.max_concurrency)

    evaluations = await evaluate_batch(evaluator, candidates, 0, 0, config.max_concurrency, abort)
    return _build_outcome(GRID, evaluations, aborted=len(evaluations) < len(candidates))


def sample_parameters(space: ParameterSpace, rng: RandomSource) -> ParameterSet:
    return {name: spec.sample(rng) for name, spec in space.items()}


def tournament_select(evaluations: Sequence[CandidateEvaluation], rng: RandomSource) -> CandidateEvaluation:
    """Draw TOURNAMENT_SIZE individuals with replacement and keep the best (first drawn on ties)."""
    best = None
    for _ in range(TOURNAMENT_SIZE):
        candidate = evaluations[rng.integer(0, len(evaluations))]
        if best is None or candidate.score > best.score:
            best = candidate
    return best


def crossover(parent1: ParameterSet, parent2: ParameterSet, space: ParameterSpace, rng: RandomSource) -> ParameterSet:
    return {name: parent1[name] if rng.random() < 0.5 else parent2[name] for name in space}


def mutate(individual: ParameterSet, space: ParameterSpace, mutation_rate: float, rng: RandomSource) -> ParameterSet:
    mutated = dict(individual)
    for name, spec in space.items():
        if rng.random() < mutation_rate:
            mutated[name] = spec.sample(rng)
    return mutated


def next_generation(
    evaluations: Sequence[CandidateEvaluation],
    space: ParameterSpace,
    config: GeneticSearchConfig,
    rng: RandomSource,
) -> List[ParameterSet]:
    """
    Elites first (by score, then index), then children until population_size.
    """
    ranked = sorted(evaluations, key=lambda e: (-e.score, e.index))
    population = [dict(e.parameters) for e in ranked[:config.elite_size]]
    while len(population) < config.population_size:
        parent1 = tournament_select(evaluations, rng)
        parent2 = tournament_select(evaluations, rng)
        child = crossover(parent1.parameters, parent2.parameters, space, rng)
        population.append(mutate(child, space, config.mutation_rate, rng))
    return population


async def genetic_search(
    space: ParameterSpace,
    evaluator: Evaluator,
    config: GeneticSearchConfig | None = None,
    rng: RandomSource | None = None,
    abort=None,
) -> SearchOutcome:
    """
    Genetic search; see module docstring.

    `best_scores[g]` is the best score seen in generations 0..g, so it never
    decreases.
    """
    config = config if config is not None else GeneticSearchConfig()
    if rng is None:
        rng = make_random_source(config.seed)
    log.info(
        "Genetic search: population=%d generations=%d mutation_rate=%.3f elite=%d",
        config.population_size, config.generations, config.mutation_rate, config.elite_size,
    )

    population = [sample_parameters(space, rng) for _ in range(config.population_size)]
    all_evaluations: List[CandidateEvaluation] = []
    best_scores: List[float] = []
    best: CandidateEvaluation | None = None
    aborted = False

    for generation in range(config.generations):
        if _is_aborted(abort):
            aborted = True
            break

        evaluations = await evaluate_batch(
            evaluator, population, len(all_evaluations), generation, config.max_concurrency, abort
        )
        all_evaluations.extend(evaluations)

        generation_best = select_best(evaluations)
        if generation_best is not None and (best is None or generation_best.score > best.score):
            best = generation_best
        if len(evaluations) < len(population):
            aborted = True
            break

        best_scores.append(best.score)
        log.debug("Generation %d: best-ever score %.6f", generation, best.score)

        if generation < config.generations - 1:
            population = next_generation(evaluations, space, config, rng)

    return _build_outcome(GENETIC, all_evaluations, best_scores, aborted)


async def iterative_search(
    space: ParameterSpace,
    evaluator: Evaluator,
    config: IterativeSearchConfig | None = None,
    rng: RandomSource | None = None,
    abort=None,
) -> SearchOutcome:
    """
    Random search with a fixed budget.

    All samples are drawn up front, then evaluated concurrently.
    `best_scores[i]` is the running best after sample i.
    """
    config = config if config is not None else IterativeSearchConfig()
    if rng is None:
        rng = make_random_source(config.seed)
    log.info("Iterative search: %d iterations", config.iterations)

    samples = [sample_parameters(space, rng) for _ in range(config.iterations)]
    evaluations = await evaluate_batch(evaluator, samples, 0, 0, config.max_concurrency, abort)

    running: List[float] = []
    best_score = float("-inf")
    for evaluation in evaluations:
        best_score = max(best_score, evaluation.score)
        running.append(best_score)

    return _build_outcome(ITERATIVE, evaluations, running, aborted=len(evaluations) < len(samples))


async def run_search(
    method: str,
    space: Mapping[str, Any],
    evaluator: Evaluator,
    config=None,
    rng: RandomSource | None = None,
    abort=None,
    settings: SearchSettings | None = None,
) -> SearchOutcome:
    """
    Dispatch to a search strategy by name.

    Args:
        method: "grid", "genetic", "iterative" (or alias "bayesian").
        space: name → ParameterSpec (or {'min', 'max', 'step'} mapping).
        evaluator: Coroutine function ParameterSet → PerformanceReport.
        config: Config matching the method; None builds one from settings.
        rng: RandomSource for genetic/iterative. Ignored when config.seed is
             set; None with no seed draws fresh entropy.
        abort: Optional flag with is_set().
        settings: Defaults used when config is None.

    Raises:
        OptimizationConfigError: Unknown method or config of the wrong type.
        ValueError: Malformed parameter space.
    """
    name = normalize_method(method)
    if config is None:
        config = default_config(name, settings)
    elif not isinstance(config, _CONFIG_TYPES[name]):
        raise OptimizationConfigError(
            f"Method '{name}' needs a {_CONFIG_TYPES[name].__name__}, got {type(config).__name__}."
        )

    # An explicit seed on the config wins over a caller-supplied stream
    if getattr(config, "seed", None) is not None:
        rng = make_random_source(config.seed)

    parameter_space = coerce_space(space)
    if name == GRID:
        return await grid_search(parameter_space, evaluator, config, abort)
    if name == GENETIC:
        return await genetic_search(parameter_space, evaluator, config, rng, abort)
    return await iterative_search(parameter_space, evaluator, config, rng, abort)
