#!/usr/bin/env python3
"""
Run a single multi-asset backtest and print a performance summary.

**Conceptual**: Wires the reference collaborators together
(IndicatorMarketAnalyzer, TrendFollowingSizer, ExposureRiskGate) and replays
either synthetic GBM data or CSV price histories through a BacktestRunner.
Nothing is written to disk; the summary goes to stdout.

**Usage**:
    # Synthetic BTC/ETH, 180 daily bars, reproducible
    python actions/run_backtest.py --symbols BTC ETH --bars 180 --seed 7

    # CSV histories (timestamp, open, high, low, close, volume)
    python actions/run_backtest.py --csv BTC=data/raw/BTC.csv ETH=data/raw/ETH.csv \
        --start 2024-01-01 --end 2024-06-30

    # Tighter risk limits
    python actions/run_backtest.py --max-position-fraction 0.4 --max-drawdown 0.15

**Portfolio model**: The run starts with --initial-cash units of a cash
pseudo-asset (--cash-asset, default USD) that pays for buys and receives
sale proceeds.
"""

import argparse
import asyncio
import sys
from pathlib import Path

import pandas as pd

# Add project root to Python path so we can import strategy_lab modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from strategy_lab.analytics.synthetic_data import generate_gbm_universe
from strategy_lab.backtesting.engine import BacktestRunner
from strategy_lab.config.settings import get_settings
from strategy_lab.data.loaders import load_universe_csv
from strategy_lab.data.schemas import SchemaValidationError
from strategy_lab.execution.ledger import PortfolioSnapshot
from strategy_lab.execution.risk_gate import ExposureRiskGate
from strategy_lab.strategies.indicator_analyzer import IndicatorMarketAnalyzer
from strategy_lab.strategies.trend_sizer import TrendFollowingSizer
from strategy_lab.utils.logger import setup_logging
from strategy_lab.utils.random import make_random_source
from strategy_lab.utils.time import RealClock, datetime_to_ms, ms_to_datetime

# 2024-01-01T00:00:00Z; start of synthetic histories
SYNTHETIC_START_MS = 1_704_067_200_000


def parse_time(value: str | None) -> int | None:
    """Accept integer epoch milliseconds or any date string pandas can parse."""
    if value is None:
        return None
    if value.lstrip("-").isdigit():
        return int(value)
    return datetime_to_ms(pd.Timestamp(value, tz="UTC").to_pydatetime())


def parse_csv_specs(specs: list[str]) -> dict[str, str]:
    paths = {}
    for spec in specs:
        if "=" not in spec:
            raise ValueError(f"--csv expects SYMBOL=PATH, got '{spec}'")
        symbol, path = spec.split("=", 1)
        paths[symbol.strip()] = path.strip()
    return paths


def add_data_arguments(parser: argparse.ArgumentParser) -> None:
    """Arguments shared with optimize_strategy_params.py."""
    parser.add_argument(
        "--symbols",
        nargs="+",
        default=["BTC", "ETH"],
        help="Symbols for synthetic data (default: BTC ETH)",
    )
    parser.add_argument(
        "--csv",
        nargs="+",
        default=None,
        metavar="SYMBOL=PATH",
        help="Load CSV histories instead of generating synthetic data",
    )
    parser.add_argument("--bars", type=int, default=180, help="Synthetic bars per symbol (default: 180)")
    parser.add_argument("--seed", type=int, default=None, help="Seed for synthetic data (default: STRATEGY_LAB_SEED)")
    parser.add_argument("--start", type=str, default=None, help="Start (YYYY-MM-DD or epoch ms; default: first bar)")
    parser.add_argument("--end", type=str, default=None, help="End (YYYY-MM-DD or epoch ms; default: last bar)")
    parser.add_argument("--initial-cash", type=float, default=10_000.0, help="Starting cash (default: 10000)")
    parser.add_argument("--cash-asset", type=str, default="USD", help="Cash pseudo-asset symbol (default: USD)")
    parser.add_argument("--log-level", type=str, default=None, help="Log level (default: STRATEGY_LAB_LOG_LEVEL)")


def load_universe(args, seed: int | None):
    if args.csv:
        return load_universe_csv(parse_csv_specs(args.csv))
    rng = make_random_source(seed)
    return generate_gbm_universe(args.symbols, rng, n_bars=args.bars, start_ms=SYNTHETIC_START_MS)


def resolve_window(args, universe) -> tuple[int, int]:
    first = min(series.timestamps[0] for series in universe.values() if len(series))
    last = max(series.timestamps[-1] for series in universe.values() if len(series))
    start = parse_time(args.start)
    end = parse_time(args.end)
    return (first if start is None else start, last if end is None else end)


def initial_snapshot(args, start: int) -> PortfolioSnapshot:
    return PortfolioSnapshot(
        timestamp=start,
        total_value=args.initial_cash,
        allocation={args.cash_asset: args.initial_cash},
        prices={args.cash_asset: 1.0},
    )


def parse_args():
    parser = argparse.ArgumentParser(
        description="Run a multi-asset backtest with the reference indicator strategy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    add_data_arguments(parser)
    parser.add_argument("--position-size", type=float, default=1.0, help="Units per full-confidence trade (default: 1.0)")
    parser.add_argument("--min-confidence", type=float, default=0.3, help="Ignore insights below this confidence (default: 0.3)")
    parser.add_argument("--max-position-fraction", type=float, default=0.5, help="Max single-asset share of value (default: 0.5)")
    parser.add_argument("--max-drawdown", type=float, default=None, help="Halt buys beyond this drawdown (default: off)")
    return parser.parse_args()


def print_summary(runner: BacktestRunner, elapsed_ms: int) -> None:
    details = runner.get_detailed_results()
    perf = details.performance
    history = details.portfolio_history
    final = history[-1]

    print("=" * 60)
    print("Backtest Summary")
    print("=" * 60)
    print(f"  Period:         {ms_to_datetime(history[0].timestamp):%Y-%m-%d} → {ms_to_datetime(final.timestamp):%Y-%m-%d}")
    print(f"  Steps:          {len(history) - 1}")
    print(f"  Trades:         {perf.trades}")
    print(f"  Total return:   {perf.total_return:.2%}")
    print(f"  Sharpe (daily): {perf.sharpe_ratio:.3f}")
    print(f"  Max drawdown:   {perf.max_drawdown:.2%}")
    print(f"  Win rate:       {perf.win_rate:.2%}")
    print(f"  Wall time:      {elapsed_ms / 1000:.2f}s")
    print()
    print("Risk")
    print(f"  VaR:            {details.risk_metrics.value_at_risk:.4f}")
    print(f"  Exp. shortfall: {details.risk_metrics.expected_shortfall:.4f}")
    print(f"  Diversification:{details.analysis.portfolio_analysis.diversification_score:.3f}")
    print()
    print("Final allocation")
    for asset, weight in sorted(final.weights().items()):
        print(f"  {asset:<8} {final.allocation[asset]:>14.6f} units  {weight:>7.2%}")
    print(f"  Total value:    {final.total_value:,.2f}")


def main():
    """
    **Exit codes**:
      - 0: Success
      - 1: Bad arguments or data
    """
    args = parse_args()
    settings = get_settings()
    setup_logging(args.log_level or settings.logging.level)

    seed = args.seed if args.seed is not None else settings.search.seed
    try:
        universe = load_universe(args, seed)
        start, end = resolve_window(args, universe)
    except (FileNotFoundError, SchemaValidationError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Loaded {len(universe)} asset(s): {', '.join(universe)}")

    runner = BacktestRunner(
        historical_data=universe,
        initial_snapshot=initial_snapshot(args, start),
        analyzer=IndicatorMarketAnalyzer(),
        sizer=TrendFollowingSizer(args.position_size, args.min_confidence),
        risk_gate=ExposureRiskGate(args.max_position_fraction, args.max_drawdown),
        cash_asset=args.cash_asset,
        analytics=settings.analytics,
    )

    clock = RealClock()
    started_ms = clock.now_ms()
    try:
        asyncio.run(runner.run_backtest(start, end))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print_summary(runner, clock.now_ms() - started_ms)


if __name__ == "__main__":
    main()
