"""
Performance, risk, and portfolio analytics.

Pure metric functions (returns, drawdown, Sharpe, VaR, expected shortfall,
correlation, concentration), the stateful PerformanceAnalyzer built on them,
and synthetic price generators for tests and demos.
"""
