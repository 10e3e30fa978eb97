#!/usr/bin/env python3
"""
Search trend-following sizer parameters with grid, genetic, or iterative search.

**Conceptual**: Builds a StrategyOptimizer over synthetic or CSV histories and
searches `position_size` and `min_confidence` (plus the risk gate's
`max_position_fraction`) for the highest objective score:

    score = 0.4*return + 0.3*sharpe + 0.2*(1 - drawdown) + 0.1*win_rate

Each candidate runs in its own BacktestRunner; up to --max-concurrency
candidates are in flight at once.

**Usage**:
    python actions/optimize_strategy_params.py --method grid
    python actions/optimize_strategy_params.py --method genetic --population 20 --generations 10 --seed 7
    python actions/optimize_strategy_params.py --method iterative --iterations 30

**Outputs**: Terminal only; the top candidates ranked by score.

**Warning**: Scores are in-sample. A configuration that wins here is a
candidate for out-of-sample testing, not a result.
"""

import argparse
import asyncio
import sys
from pathlib import Path

import pandas as pd

# Add project root to Python path so we can import strategy_lab modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from actions.run_backtest import add_data_arguments, initial_snapshot, load_universe, resolve_window
from strategy_lab.config.settings import get_settings
from strategy_lab.data.schemas import SchemaValidationError
from strategy_lab.execution.risk_gate import ExposureRiskGate
from strategy_lab.orchestration.optimizer import StrategyOptimizer
from strategy_lab.orchestration.search import (
    GeneticSearchConfig,
    GridSearchConfig,
    IterativeSearchConfig,
    OptimizationConfigError,
    ParameterSpec,
    normalize_method,
)
from strategy_lab.utils.logger import setup_logging
from strategy_lab.utils.random import make_random_source
from strategy_lab.utils.time import RealClock


def define_parameter_space() -> dict[str, ParameterSpec]:
    """
    Search dimensions.

    Grid sizes: 4 × 4 × 3 = 48 combinations.
    """
    return {
        "position_size": ParameterSpec(min=0.5, max=2.0, step=0.5),
        "min_confidence": ParameterSpec(min=0.0, max=0.6, step=0.2),
        "max_position_fraction": ParameterSpec(min=0.3, max=0.7, step=0.2),
    }


def risk_gate_from_parameters(parameters):
    return ExposureRiskGate(max_position_fraction=float(parameters.get("max_position_fraction", 1.0)))


def parse_args():
    parser = argparse.ArgumentParser(
        description="Optimize strategy parameters over historical or synthetic data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_data_arguments(parser)
    parser.add_argument("--method", type=str, default="grid", help="grid, genetic, or iterative (default: grid)")
    parser.add_argument("--max-concurrency", type=int, default=None, help="Candidates in flight (default: settings)")
    parser.add_argument("--population", type=int, default=None, help="Genetic population size")
    parser.add_argument("--generations", type=int, default=None, help="Genetic generations")
    parser.add_argument("--mutation-rate", type=float, default=None, help="Genetic mutation rate")
    parser.add_argument("--elite", type=int, default=None, help="Genetic elite size")
    parser.add_argument("--iterations", type=int, default=None, help="Iterative search budget")
    parser.add_argument("--top", type=int, default=10, help="Candidates to print (default: 10)")
    return parser.parse_args()


def build_search_config(args, method: str, search_settings):
    """Settings defaults overridden by any CLI flags that were given."""
    concurrency = args.max_concurrency or search_settings.max_concurrency
    if method == "grid":
        return GridSearchConfig(max_concurrency=concurrency)
    if method == "genetic":
        return GeneticSearchConfig(
            population_size=args.population or search_settings.population_size,
            generations=args.generations or search_settings.generations,
            mutation_rate=args.mutation_rate if args.mutation_rate is not None else search_settings.mutation_rate,
            elite_size=args.elite if args.elite is not None else search_settings.elite_size,
            max_concurrency=concurrency,
            seed=args.seed if args.seed is not None else search_settings.seed,
        )
    return IterativeSearchConfig(
        iterations=args.iterations or search_settings.iterations,
        max_concurrency=concurrency,
        seed=args.seed if args.seed is not None else search_settings.seed,
    )


def print_results(outcome, top: int, elapsed_ms: int) -> None:
    rows = [
        {**e.parameters, "score": e.score, "generation": e.generation, "index": e.index,
         "error": e.error or ""}
        for e in outcome.evaluations
    ]
    results_df = pd.DataFrame(rows).sort_values(["score", "index"], ascending=[False, True])

    print()
    print("=" * 80)
    print(f"Top {min(top, len(results_df))} of {len(results_df)} candidates ({outcome.method})")
    print(f"Wall time: {elapsed_ms / 1000:.2f}s")
    print("=" * 80)
    print(results_df.head(top).to_string(index=False, float_format=lambda v: f"{v:.4f}"))
    print()

    best = outcome.best
    print("Best configuration")
    for name, value in best.parameters.items():
        print(f"  {name:<22} {value:.4f}")
    print(f"  score                  {best.score:.4f}")
    if best.performance is not None:
        print(f"  total_return           {best.performance.total_return:.2%}")
        print(f"  sharpe_ratio           {best.performance.sharpe_ratio:.3f}")
        print(f"  max_drawdown           {best.performance.max_drawdown:.2%}")
        print(f"  win_rate               {best.performance.win_rate:.2%}")
    if best.failures:
        print(f"  ⚠ {best.failures} candidate(s) failed; see log warnings")
    if outcome.best_scores:
        print(f"  Best-score trajectory: {', '.join(f'{s:.4f}' for s in outcome.best_scores)}")


def main():
    """
    **Exit codes**:
      - 0: Success
      - 1: Bad arguments, configuration, or data
    """
    args = parse_args()
    settings = get_settings()
    setup_logging(args.log_level or settings.logging.level)

    try:
        method = normalize_method(args.method)
        search_config = build_search_config(args, method, settings.search)
    except (OptimizationConfigError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    seed = args.seed if args.seed is not None else settings.search.seed
    try:
        universe = load_universe(args, seed)
        start, end = resolve_window(args, universe)
    except (FileNotFoundError, SchemaValidationError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Loaded {len(universe)} asset(s): {', '.join(universe)}")
    print(f"Method: {method}, config: {search_config}")

    optimizer = StrategyOptimizer(
        historical_data=universe,
        initial_snapshot=initial_snapshot(args, start),
        parameter_space=define_parameter_space(),
        risk_gate_factory=risk_gate_from_parameters,
        cash_asset=args.cash_asset,
        analytics=settings.analytics,
        search_settings=settings.search,
        random_source=make_random_source(seed),
    )

    clock = RealClock()
    started_ms = clock.now_ms()
    try:
        outcome = asyncio.run(optimizer.search(start, end, method, search_config))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print_results(outcome, args.top, clock.now_ms() - started_ms)


if __name__ == "__main__":
    main()
