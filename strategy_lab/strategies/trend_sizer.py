"""
Trend-following trade sizer.

Buys on bullish insights and sells on bearish ones, scaling a base
`position_size` (in units) by the insight's confidence. Insights below
`min_confidence`, and neutral ones, produce no trade.

The two constructor arguments double as the default search dimensions for
StrategyOptimizer, via `trend_sizer_from_parameters`.
"""

from typing import Mapping

from strategy_lab.strategies.base import MarketInsight, Trend


class TrendFollowingSizer:
    def __init__(self, position_size: float = 1.0, min_confidence: float = 0.0):
        if position_size < 0:
            raise ValueError(f"position_size must be non-negative, got {position_size}")
        if not 0.0 <= min_confidence <= 1.0:
            raise ValueError(f"min_confidence must be in [0, 1], got {min_confidence}")
        self.position_size = position_size
        self.min_confidence = min_confidence

    def __call__(self, asset: str, insight: MarketInsight, price: float) -> float:
        if insight.confidence < self.min_confidence:
            return 0.0
        size = self.position_size * insight.confidence
        if insight.trend is Trend.BULLISH:
            return size
        if insight.trend is Trend.BEARISH:
            return -size
        return 0.0


def trend_sizer_from_parameters(parameters: Mapping[str, float]) -> TrendFollowingSizer:
    """Build a sizer from a ParameterSet; missing names fall back to defaults."""
    return TrendFollowingSizer(
        position_size=float(parameters.get("position_size", 1.0)),
        min_confidence=float(parameters.get("min_confidence", 0.0)),
    )
