"""
Exposure- and drawdown-based risk gate for simulated trading.

**Conceptual**: The runner asks the gate two things each step:
  - update_portfolio(snapshot): observe the book before trades are sized
  - can_open_position(asset, amount, price): admit or reject one trade

ExposureRiskGate rejects buys that would push one asset above
`max_position_fraction` of portfolio value, and (optionally) halts all buys
once the drawdown from the observed equity peak exceeds `max_drawdown`.
Sells are always admitted: reducing exposure never violates either limit.
"""

import logging

from strategy_lab.execution.ledger import PortfolioSnapshot

log = logging.getLogger(__name__)


class ExposureRiskGate:
    """
    **Usage**:
        gate = ExposureRiskGate(max_position_fraction=0.5, max_drawdown=0.2)
        gate.update_portfolio(snapshot)
        gate.can_open_position("BTC", 0.1, 42_000.0)
    """

    def __init__(self, max_position_fraction: float = 1.0, max_drawdown: float | None = None):
        """
        Args:
            max_position_fraction: Largest post-trade value share of a single
                                   asset, in (0, 1].
            max_drawdown: Drawdown from peak equity at which new buys stop,
                          in (0, 1]. None disables the halt.
        """
        if not 0.0 < max_position_fraction <= 1.0:
            raise ValueError(
                f"max_position_fraction must be in (0, 1], got {max_position_fraction}"
            )
        if max_drawdown is not None and not 0.0 < max_drawdown <= 1.0:
            raise ValueError(f"max_drawdown must be in (0, 1], got {max_drawdown}")
        self.max_position_fraction = max_position_fraction
        self.max_drawdown = max_drawdown
        self._snapshot: PortfolioSnapshot | None = None
        self._peak_value = 0.0

    @property
    def current_drawdown(self) -> float:
        if self._snapshot is None or self._peak_value <= 0:
            return 0.0
        return (self._peak_value - self._snapshot.total_value) / self._peak_value

    def update_portfolio(self, snapshot: PortfolioSnapshot) -> None:
        self._snapshot = snapshot
        self._peak_value = max(self._peak_value, snapshot.total_value)

    def can_open_position(self, asset: str, amount: float, price: float) -> bool:
        if amount <= 0:
            return True
        if self._snapshot is None or self._snapshot.total_value <= 0:
            log.debug("Rejecting buy of %s: no valued portfolio observed yet.", asset)
            return False

        if self.max_drawdown is not None and self.current_drawdown >= self.max_drawdown:
            log.info(
                "Rejecting buy of %s: drawdown %.1f%% at or above limit %.1f%%.",
                asset, self.current_drawdown * 100, self.max_drawdown * 100,
            )
            return False

        held_value = self._snapshot.allocation.get(asset, 0.0) * price
        post_trade_fraction = (held_value + amount * price) / self._snapshot.total_value
        if post_trade_fraction > self.max_position_fraction:
            log.debug(
                "Rejecting buy of %s: position would be %.1f%% of portfolio (limit %.1f%%).",
                asset, post_trade_fraction * 100, self.max_position_fraction * 100,
            )
            return False
        return True
