"""
Tests for strategy_lab/execution/risk_gate.py
"""

import pytest

from strategy_lab.execution.ledger import PortfolioSnapshot
from strategy_lab.execution.risk_gate import ExposureRiskGate


def snapshot(total, allocation, prices):
    return PortfolioSnapshot(timestamp=0, total_value=total, allocation=allocation, prices=prices)


def test_buys_rejected_before_any_snapshot():
    gate = ExposureRiskGate()

    assert not gate.can_open_position("BTC", 1.0, 100.0)
    assert gate.can_open_position("BTC", -1.0, 100.0)


def test_position_fraction_limit():
    gate = ExposureRiskGate(max_position_fraction=0.5)
    gate.update_portfolio(snapshot(1_000.0, {"USD": 800.0, "BTC": 2.0}, {"USD": 1.0, "BTC": 100.0}))

    # Held 200 + 3 * 100 = 500 → exactly 50%
    assert gate.can_open_position("BTC", 3.0, 100.0)
    assert not gate.can_open_position("BTC", 3.1, 100.0)
    assert gate.can_open_position("ETH", 5.0, 100.0)


def test_drawdown_halt():
    gate = ExposureRiskGate(max_drawdown=0.2)
    gate.update_portfolio(snapshot(1_000.0, {"USD": 1_000.0}, {"USD": 1.0}))
    gate.update_portfolio(snapshot(790.0, {"USD": 790.0}, {"USD": 1.0}))

    assert gate.current_drawdown == pytest.approx(0.21)
    assert not gate.can_open_position("BTC", 0.01, 100.0)
    assert gate.can_open_position("BTC", -0.01, 100.0)


def test_invalid_limits():
    with pytest.raises(ValueError):
        ExposureRiskGate(max_position_fraction=0.0)
    with pytest.raises(ValueError):
        ExposureRiskGate(max_drawdown=1.5)
