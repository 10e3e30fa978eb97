"""
strategy_lab – Main entry point.

Runs a short synthetic backtest end to end to confirm the packages import and
wire together. See actions/ for the full command-line workflows.
"""

import asyncio

from strategy_lab.analytics.synthetic_data import generate_gbm_universe
from strategy_lab.backtesting.engine import BacktestRunner
from strategy_lab.execution.ledger import PortfolioSnapshot
from strategy_lab.strategies.indicator_analyzer import IndicatorMarketAnalyzer
from strategy_lab.strategies.trend_sizer import TrendFollowingSizer
from strategy_lab.utils.random import NumpyRandomSource


def main() -> None:
    """Run a 60-bar BTC/ETH backtest and print the headline metrics."""
    universe = generate_gbm_universe(["BTC", "ETH"], NumpyRandomSource(seed=0), n_bars=60)
    runner = BacktestRunner(
        historical_data=universe,
        initial_snapshot=PortfolioSnapshot(0, 10_000.0, {"USD": 10_000.0}, {"USD": 1.0}),
        analyzer=IndicatorMarketAnalyzer(short_window=5, long_window=20),
        sizer=TrendFollowingSizer(position_size=1.0),
        cash_asset="USD",
    )
    report = asyncio.run(runner.run_backtest(0, universe["BTC"].timestamps[-1]))
    print(f"strategy_lab ok: {report.trades} trades, total return {report.total_return:.2%}")


if __name__ == "__main__":
    main()
