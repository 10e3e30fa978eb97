"""
Portfolio ledger, trade records, and portfolio snapshots for backtesting.

**Conceptual**: The ledger is the mutable book a backtest run writes to. It
holds units per asset and the last known price per asset; everything a
caller sees is an immutable PortfolioSnapshot taken from it. The runner
appends one snapshot per simulated step and never edits an old one.

**Accounting model**:
  - `allocation` maps asset → units held (never negative).
  - `total_value = Σ allocation[asset] * price[asset]`, using the most recent
    price at or before the snapshot time (carried forward between bars).
  - Optional `cash_asset`: a pseudo-asset priced at 1.0 that pays for buys
    and receives sale proceeds. Without it the ledger is holdings-only, and
    a buy simply adds units at the trade price.
  - Sells are capped by the runner at current holdings, so a position is
    closed, never flipped short.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Tuple

log = logging.getLogger(__name__)

# Holdings below this are treated as zero and dropped from the allocation
ZERO_UNITS = 1e-12


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class Trade:
    """
    A single executed (simulated) trade. Immutable once created.

    Attributes:
        id: Identifier unique within the run that created it. Built from a
            per-run sequence number, so replays produce identical ids.
        asset: Asset symbol; always one of the run's historical-data symbols.
        side: TradeSide.BUY or TradeSide.SELL.
        amount: Units traded (> 0).
        price: Execution price per unit (>= 0).
        timestamp: Execution time in ms since epoch.
        strategy_tag: Which strategy produced it (e.g., "backtest").
        execution_tag: How it was executed (e.g., "simulated", "rebalancing").
    """
    id: str
    asset: str
    side: TradeSide
    amount: float
    price: float
    timestamp: int
    strategy_tag: str = "backtest"
    execution_tag: str = "simulated"

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError(f"Trade amount must be positive, got {self.amount} for {self.asset}")
        if self.price < 0:
            raise ValueError(f"Trade price must be non-negative, got {self.price} for {self.asset}")
        if not isinstance(self.side, TradeSide):
            object.__setattr__(self, 'side', TradeSide(self.side))

    @property
    def notional(self) -> float:
        """Traded value (amount * price)."""
        return self.amount * self.price


@dataclass(frozen=True)
class PortfolioSnapshot:
    """
    Point-in-time view of a portfolio.

    Attributes:
        timestamp: Snapshot time (ms since epoch).
        total_value: Portfolio value (>= 0).
        allocation: asset → units held.
        prices: asset → price used to value the allocation at this time.
        risk_score: Concentration-based risk score (Σ weight²); 0 when empty.
        recommendations: Human-readable hints, e.g. ["BTC:buy"].
    """
    timestamp: int
    total_value: float
    allocation: Dict[str, float] = field(default_factory=dict)
    prices: Dict[str, float] = field(default_factory=dict)
    risk_score: float = 0.0
    recommendations: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.total_value < 0:
            raise ValueError(f"total_value must be non-negative, got {self.total_value}")
        for asset, units in self.allocation.items():
            if units < 0:
                raise ValueError(f"allocation for {asset} must be non-negative, got {units}")
        object.__setattr__(self, 'recommendations', tuple(self.recommendations))

    def position_values(self) -> Dict[str, float]:
        """asset → units * price (assets without a known price are valued at 0)."""
        return {
            asset: units * self.prices.get(asset, 0.0)
            for asset, units in self.allocation.items()
        }

    def weights(self) -> Dict[str, float]:
        """
        Value weight per asset.

        Returns an empty dict when total_value is 0, so callers never see NaN
        from a zero-value normalization.
        """
        if self.total_value <= 0:
            return {}
        return {
            asset: value / self.total_value
            for asset, value in self.position_values().items()
        }


class PortfolioLedger:
    """
    Mutable book of holdings and prices owned by exactly one backtest run.

    **Usage**:
        ledger = PortfolioLedger(initial_snapshot, cash_asset="USD")
        ledger.update_prices({"BTC": 42_000.0})
        ledger.apply(trade)
        snap = ledger.snapshot(timestamp=t, risk_score=0.4)
    """

    def __init__(self, initial: PortfolioSnapshot, cash_asset: str | None = None):
        """
        Args:
            initial: Starting snapshot. Its allocation and prices are copied,
                     so the caller's snapshot is never mutated.
            cash_asset: Optional symbol of a unit-priced cash pseudo-asset.
        """
        self._holdings: Dict[str, float] = {
            asset: float(units) for asset, units in initial.allocation.items() if units > ZERO_UNITS
        }
        self._prices: Dict[str, float] = dict(initial.prices)
        self._cash_asset = cash_asset
        if cash_asset is not None:
            self._prices[cash_asset] = 1.0

    @property
    def cash_asset(self) -> str | None:
        return self._cash_asset

    def units(self, asset: str) -> float:
        return self._holdings.get(asset, 0.0)

    def price(self, asset: str) -> float | None:
        return self._prices.get(asset)

    def update_prices(self, prices: Dict[str, float]) -> None:
        """Merge new prices in; symbols not present keep their previous price."""
        self._prices.update(prices)
        if self._cash_asset is not None:
            self._prices[self._cash_asset] = 1.0

    def apply(self, trade: Trade) -> None:
        """
        Apply an admitted trade to holdings (and to cash, if configured).

        Sells larger than holdings are a caller error: the runner caps them
        before building the Trade.

        Raises:
            ValueError: If a sell exceeds current holdings.
        """
        held = self.units(trade.asset)

        if trade.side is TradeSide.BUY:
            self._set_units(trade.asset, held + trade.amount)
            if self._cash_asset is not None:
                self._set_units(self._cash_asset, self.units(self._cash_asset) - trade.notional)
        else:
            if trade.amount > held + ZERO_UNITS:
                raise ValueError(
                    f"Cannot sell {trade.amount} {trade.asset}: only {held} held."
                )
            self._set_units(trade.asset, held - trade.amount)
            if self._cash_asset is not None:
                self._set_units(self._cash_asset, self.units(self._cash_asset) + trade.notional)

        self._prices.setdefault(trade.asset, trade.price)

    def total_value(self) -> float:
        """Σ units * last price; assets never priced contribute 0."""
        return sum(units * self._prices.get(asset, 0.0) for asset, units in self._holdings.items())

    def weights(self) -> Dict[str, float]:
        total = self.total_value()
        if total <= 0:
            return {}
        return {
            asset: units * self._prices.get(asset, 0.0) / total
            for asset, units in self._holdings.items()
        }

    def snapshot(
        self,
        timestamp: int,
        risk_score: float = 0.0,
        recommendations: Tuple[str, ...] = (),
    ) -> PortfolioSnapshot:
        """Freeze the current book into a PortfolioSnapshot."""
        return PortfolioSnapshot(
            timestamp=timestamp,
            total_value=max(self.total_value(), 0.0),
            allocation=dict(self._holdings),
            prices={asset: self._prices[asset] for asset in self._holdings if asset in self._prices},
            risk_score=risk_score,
            recommendations=tuple(recommendations),
        )

    def _set_units(self, asset: str, units: float) -> None:
        if units < -ZERO_UNITS:
            # Buys are capped at available cash by the runner; this is rounding.
            log.warning("Holdings of %s went negative (%.6f); clamping to zero.", asset, units)
        if units <= ZERO_UNITS:
            self._holdings.pop(asset, None)
        else:
            self._holdings[asset] = units
