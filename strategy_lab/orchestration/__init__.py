"""
Parameter search over backtests.

Grid, genetic, and iterative search engines with bounded concurrency, and the
StrategyOptimizer that scores each candidate with an isolated BacktestRunner.
"""
