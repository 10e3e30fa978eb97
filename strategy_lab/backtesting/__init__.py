"""
Event-driven backtest runner.

Replays a multi-asset history one timestamp at a time through an analyzer,
sizer, and risk gate, applying fills to a portfolio ledger and feeding every
trade and snapshot to a PerformanceAnalyzer.
"""
