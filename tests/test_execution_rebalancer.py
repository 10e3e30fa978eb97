"""
Tests for strategy_lab/execution/rebalancer.py
"""

import pytest

from strategy_lab.execution.ledger import PortfolioSnapshot, TradeSide
from strategy_lab.execution.rebalancer import PortfolioRebalancer, trend_adjustment
from strategy_lab.strategies.base import FixedPriceEstimator, MarketInsight, Trend


def snapshot(allocation, total, prices=None, risk_score=0.0):
    return PortfolioSnapshot(
        timestamp=1_000, total_value=total, allocation=allocation,
        prices=prices or {}, risk_score=risk_score,
    )


def test_two_asset_rebalance_scenario():
    """All-BTC book rebalanced to 50/50: sell ~50 BTC value, buy ~50 ETH value."""
    trades = PortfolioRebalancer().rebalance(
        snapshot({"BTC": 100.0}, 100.0), {"BTC": 0.5, "ETH": 0.5}, threshold=0.1,
    )

    by_asset = {t.asset: t for t in trades}
    assert by_asset["BTC"].side is TradeSide.SELL
    assert by_asset["BTC"].notional == pytest.approx(50.0)
    assert by_asset["ETH"].side is TradeSide.BUY
    assert by_asset["ETH"].notional == pytest.approx(50.0)
    # Equal priority keeps target order
    assert [t.asset for t in trades] == ["BTC", "ETH"]
    assert [t.id for t in trades] == ["rebalance-0001", "rebalance-0002"]
    assert all(t.timestamp == 1_000 for t in trades)
    assert all(t.strategy_tag == "portfolio_optimization" for t in trades)
    assert all(t.execution_tag == "rebalancing" for t in trades)


def test_bullish_insight_moves_asset_ahead():
    insights = {"ETH": MarketInsight(Trend.BULLISH, 0.9)}
    trades = PortfolioRebalancer().rebalance(
        snapshot({"BTC": 100.0}, 100.0), {"BTC": 0.5, "ETH": 0.5}, insights=insights,
    )

    # ETH: 1.0 * 0.9 beats BTC: 1.0 * 0.5
    assert [t.asset for t in trades] == ["ETH", "BTC"]


def test_within_threshold_produces_no_trades():
    trades = PortfolioRebalancer().rebalance(
        snapshot({"BTC": 52.0, "ETH": 48.0}, 100.0), {"BTC": 0.5, "ETH": 0.5}, threshold=0.1,
    )

    assert trades == []


def test_snapshot_prices_take_precedence_over_estimator():
    trades = PortfolioRebalancer(price_estimator=FixedPriceEstimator(1.0)).rebalance(
        snapshot({"BTC": 50.0}, 100.0, prices={"BTC": 2.0}), {"BTC": 0.5, "ETH": 0.5},
    )

    by_asset = {t.asset: t for t in trades}
    assert by_asset["BTC"].price == 2.0
    assert by_asset["BTC"].amount == pytest.approx(25.0)
    assert by_asset["ETH"].price == 1.0
    assert by_asset["ETH"].amount == pytest.approx(50.0)


def test_untargeted_holding_is_sold_out():
    trades = PortfolioRebalancer().rebalance(
        snapshot({"BTC": 50.0, "DOGE": 50.0}, 100.0), {"BTC": 1.0},
    )

    assert [(t.asset, t.side, t.amount) for t in trades] == [
        ("DOGE", TradeSide.SELL, pytest.approx(50.0)),
        ("BTC", TradeSide.BUY, pytest.approx(50.0)),
    ]


def test_zero_value_portfolio_yields_no_trades():
    assert PortfolioRebalancer().rebalance(snapshot({}, 0.0), {"BTC": 1.0}) == []


def test_invalid_targets_rejected():
    rebalancer = PortfolioRebalancer()
    book = snapshot({"BTC": 100.0}, 100.0)

    with pytest.raises(ValueError, match="must not exceed 1.0"):
        rebalancer.rebalance(book, {"BTC": 0.7, "ETH": 0.5})
    with pytest.raises(ValueError):
        rebalancer.rebalance(book, {"BTC": -0.1})
    with pytest.raises(ValueError):
        rebalancer.rebalance(book, {"BTC": 1.0}, threshold=-0.1)


def test_deviations():
    deviations = PortfolioRebalancer().deviations(snapshot({"BTC": 100.0}, 100.0), {"BTC": 0.5, "ETH": 0.5})

    assert deviations == {"BTC": pytest.approx(1.0), "ETH": pytest.approx(-1.0)}


def test_trend_adjustment():
    assert trend_adjustment(None) == 0.5
    assert trend_adjustment(MarketInsight(Trend.BULLISH, 0.8)) == 0.8
    assert trend_adjustment(MarketInsight(Trend.BEARISH, 0.8)) == pytest.approx(0.2)
    assert trend_adjustment(MarketInsight(Trend.NEUTRAL, 0.8)) == 0.5


def test_optimization_metrics():
    metrics = PortfolioRebalancer().optimization_metrics(
        snapshot({"BTC": 100.0}, 100.0, risk_score=1.0), {"BTC": 0.5, "ETH": 0.5}, threshold=0.1,
    )

    assert metrics.current_deviation == pytest.approx(0.5)
    assert metrics.rebalance_needed
    assert metrics.optimization_score == pytest.approx(0.5 * 0.7 + 1.0 * 0.3)
