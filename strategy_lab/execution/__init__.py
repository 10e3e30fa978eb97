"""
Trades, portfolio state, and the components that act on it.

Holds the trade and snapshot models, the unit-based portfolio ledger, the
exposure risk gate, and the single-shot portfolio rebalancer.
"""
