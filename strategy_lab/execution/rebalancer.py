"""
Single-shot portfolio rebalancer.

**Conceptual**: Given a snapshot and target weights, emit the trades that
bring each drifted asset back to its target value, ordered by priority. Not
time-stepped: it looks at one snapshot and returns one ordered list.

**Mathematical**: For each asset with target weight w and current value V_a
(units × price):
    target_value = total_value × w
    deviation    = (V_a - target_value) / target_value
Assets with |deviation| > threshold get a trade of
    amount = (target_value - V_a) / price
(buy if positive, sell if negative).

**Priority**: |deviation| × trend adjustment, where the adjustment is the
insight's confidence when bullish, (1 - confidence) when bearish, and 0.5
when neutral or when there is no insight. Trades are returned in descending
priority; equal priorities keep target order. Priority only decides the
execution sequence; every trade in the list is valid on its own.

**Prices**: snapshot.prices[asset] when the snapshot carries one, otherwise
the PriceEstimator (default: FixedPriceEstimator, 1.0 per unit).

**Edge cases**:
- Held assets missing from the targets are treated as target 0.
- Target 0 with a holding → deviation 1.0 (sell everything); target 0 with
  nothing held → no trade.
- total_value 0 → no trades (nothing to allocate).
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from strategy_lab.execution.ledger import PortfolioSnapshot, Trade, TradeSide
from strategy_lab.strategies.base import (
    FixedPriceEstimator,
    MarketInsight,
    PriceEstimator,
    Trend,
)

log = logging.getLogger(__name__)

# Tolerance on the sum of target weights
WEIGHT_SUM_TOLERANCE = 1e-9

NEUTRAL_ADJUSTMENT = 0.5


@dataclass(frozen=True)
class RebalanceMetrics:
    """
    Attributes:
        current_deviation: Mean |current weight - target weight| over targets.
        rebalance_needed: current_deviation > threshold.
        optimization_score: 0.7 × current_deviation + 0.3 × risk_score
                            (lower is better).
    """
    current_deviation: float
    rebalance_needed: bool
    optimization_score: float


def trend_adjustment(insight: MarketInsight | None) -> float:
    if insight is None:
        return NEUTRAL_ADJUSTMENT
    if insight.trend is Trend.BULLISH:
        return insight.confidence
    if insight.trend is Trend.BEARISH:
        return 1.0 - insight.confidence
    return NEUTRAL_ADJUSTMENT


def validate_targets(target_weights: Mapping[str, float]) -> None:
    """
    Raises:
        ValueError: On negative/non-finite weights or weights summing above 1.
    """
    for asset, weight in target_weights.items():
        if not math.isfinite(weight) or weight < 0:
            raise ValueError(f"Target weight for {asset} must be a finite value >= 0, got {weight}")
    total = sum(target_weights.values())
    if total > 1.0 + WEIGHT_SUM_TOLERANCE:
        raise ValueError(f"Target weights sum to {total:.6f}; they must not exceed 1.0.")


class PortfolioRebalancer:
    """
    **Usage**:
        rebalancer = PortfolioRebalancer()
        trades = rebalancer.rebalance(snapshot, {"BTC": 0.5, "ETH": 0.5}, threshold=0.1)
    """

    def __init__(self, price_estimator: PriceEstimator | None = None, threshold: float = 0.1):
        """
        Args:
            price_estimator: Fallback pricing when the snapshot has no price.
            threshold: Default rebalance threshold on |deviation|.
        """
        if threshold < 0:
            raise ValueError(f"threshold must be non-negative, got {threshold}")
        self.price_estimator = price_estimator if price_estimator is not None else FixedPriceEstimator()
        self.threshold = threshold

    def price_for(self, snapshot: PortfolioSnapshot, asset: str, insight: MarketInsight | None) -> float:
        """
        Raises:
            ValueError: If the resolved price is not positive.
        """
        price = snapshot.prices.get(asset)
        if price is None:
            price = self.price_estimator(asset, insight)
        if not price > 0:
            raise ValueError(f"Price for {asset} must be positive, got {price}")
        return float(price)

    def _current_values(
        self,
        snapshot: PortfolioSnapshot,
        assets: List[str],
        insights: Mapping[str, MarketInsight],
    ) -> Dict[str, float]:
        values = {}
        for asset in assets:
            units = snapshot.allocation.get(asset, 0.0)
            values[asset] = units * self.price_for(snapshot, asset, insights.get(asset)) if units else 0.0
        return values

    def deviations(
        self,
        snapshot: PortfolioSnapshot,
        target_weights: Mapping[str, float],
        insights: Optional[Mapping[str, MarketInsight]] = None,
    ) -> Dict[str, float]:
        """asset → (current_value - target_value) / target_value, over targets and holdings."""
        insights = insights or {}
        targets = self._full_targets(snapshot, target_weights)
        values = self._current_values(snapshot, list(targets), insights)
        result = {}
        for asset, weight in targets.items():
            target_value = snapshot.total_value * weight
            if target_value > 0:
                result[asset] = (values[asset] - target_value) / target_value
            else:
                result[asset] = 1.0 if values[asset] > 0 else 0.0
        return result

    @staticmethod
    def _full_targets(snapshot: PortfolioSnapshot, target_weights: Mapping[str, float]) -> Dict[str, float]:
        targets = dict(target_weights)
        for asset in snapshot.allocation:
            targets.setdefault(asset, 0.0)
        return targets

    def rebalance(
        self,
        snapshot: PortfolioSnapshot,
        target_weights: Mapping[str, float],
        threshold: float | None = None,
        insights: Optional[Mapping[str, MarketInsight]] = None,
    ) -> List[Trade]:
        """
        Rebalancing trades for `snapshot`, highest priority first.

        Args:
            snapshot: Current portfolio (allocation in units).
            target_weights: asset → target weight; weights sum to <= 1.
            threshold: Minimum |deviation| that triggers a trade (defaults to
                       the rebalancer's threshold).
            insights: Optional asset → MarketInsight used for pricing and
                      priority.

        Returns:
            Ordered list of Trade, stamped with the snapshot's timestamp.

        Raises:
            ValueError: Negative threshold, invalid target weights, or a
                        non-positive price.
        """
        threshold = self.threshold if threshold is None else threshold
        if threshold < 0:
            raise ValueError(f"threshold must be non-negative, got {threshold}")
        validate_targets(target_weights)
        insights = insights or {}

        if snapshot.total_value <= 0:
            log.info("Portfolio value is 0; nothing to rebalance.")
            return []

        targets = self._full_targets(snapshot, target_weights)
        values = self._current_values(snapshot, list(targets), insights)
        deviations = self.deviations(snapshot, target_weights, insights)

        candidates = []
        for position, (asset, weight) in enumerate(targets.items()):
            deviation = deviations[asset]
            if abs(deviation) <= threshold:
                continue
            value_diff = snapshot.total_value * weight - values[asset]
            if value_diff == 0:
                continue

            insight = insights.get(asset)
            price = self.price_for(snapshot, asset, insight)
            priority = abs(deviation) * trend_adjustment(insight)
            candidates.append((priority, position, asset, value_diff, price))

        candidates.sort(key=lambda c: (-c[0], c[1]))

        trades = []
        for seq, (priority, _, asset, value_diff, price) in enumerate(candidates, start=1):
            trades.append(Trade(
                id=f"rebalance-{seq:04d}",
                asset=asset,
                side=TradeSide.BUY if value_diff > 0 else TradeSide.SELL,
                amount=abs(value_diff) / price,
                price=price,
                timestamp=snapshot.timestamp,
                strategy_tag="portfolio_optimization",
                execution_tag="rebalancing",
            ))
            log.debug("Rebalance %s %s: value %.4f, priority %.4f", trades[-1].side.value, asset, value_diff, priority)
        return trades

    def optimization_metrics(
        self,
        snapshot: PortfolioSnapshot,
        target_weights: Mapping[str, float],
        threshold: float | None = None,
        insights: Optional[Mapping[str, MarketInsight]] = None,
    ) -> RebalanceMetrics:
        """Mean weight deviation, whether a rebalance is due, and a combined score."""
        threshold = self.threshold if threshold is None else threshold
        insights = insights or {}

        if target_weights and snapshot.total_value > 0:
            values = self._current_values(snapshot, list(target_weights), insights)
            total_deviation = sum(
                abs(values[asset] / snapshot.total_value - weight)
                for asset, weight in target_weights.items()
            )
            current_deviation = total_deviation / len(target_weights)
        elif target_weights:
            current_deviation = sum(target_weights.values()) / len(target_weights)
        else:
            current_deviation = 0.0

        return RebalanceMetrics(
            current_deviation=current_deviation,
            rebalance_needed=current_deviation > threshold,
            optimization_score=current_deviation * 0.7 + snapshot.risk_score * 0.3,
        )
