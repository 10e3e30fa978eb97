"""
Tests for strategy_lab/analytics/performance.py

The analyzer is fed hand-built trades and snapshots so every metric can be
checked against a value worked out by hand.
"""

import numpy as np
import pytest

from strategy_lab.analytics.performance import (
    PerformanceAnalyzer,
    WinRatePairing,
    adjacent_win_count,
    fifo_win_count,
    pair_profit,
)
from strategy_lab.execution.ledger import PortfolioSnapshot, Trade, TradeSide

DAY_MS = 86_400_000


def snap(day, value, allocation=None, prices=None):
    return PortfolioSnapshot(
        timestamp=day * DAY_MS,
        total_value=value,
        allocation=allocation if allocation is not None else {"USD": value},
        prices=prices if prices is not None else {"USD": 1.0},
    )


def trade(side, price, asset="BTC", amount=1.0, day=0, tag="backtest", trade_id="t"):
    return Trade(
        id=trade_id, asset=asset, side=side, amount=amount, price=price,
        timestamp=day * DAY_MS, strategy_tag=tag,
    )


def analyzer_with_values(values):
    analyzer = PerformanceAnalyzer(snap(0, values[0]))
    for day, value in enumerate(values[1:], start=1):
        analyzer.update_portfolio(snap(day, value))
    return analyzer


def test_flat_market_reports_zeros():
    """Three days of unchanged value: no return, no drawdown, Sharpe guarded to 0."""
    report = analyzer_with_values([1_000.0, 1_000.0, 1_000.0]).get_performance_metrics()

    assert report.total_return == 0.0
    assert report.max_drawdown == 0.0
    assert report.sharpe_ratio == 0.0
    assert report.win_rate == 0.0
    assert report.trades == 0


def test_total_return_matches_first_and_last_values():
    analyzer = analyzer_with_values([1_000.0, 900.0, 1_200.0])

    assert np.isclose(analyzer.total_return(), 0.20)
    assert np.isclose(analyzer.max_drawdown(), 0.10)


def test_update_portfolio_rejects_older_snapshot():
    analyzer = analyzer_with_values([1_000.0, 1_000.0])

    with pytest.raises(ValueError, match="older"):
        analyzer.update_portfolio(snap(0, 1_000.0))


def test_sharpe_uses_daily_buckets():
    """Intraday snapshots collapse into their day's last value."""
    analyzer = PerformanceAnalyzer(snap(0, 100.0))
    analyzer.update_portfolio(PortfolioSnapshot(DAY_MS // 2, 500.0, {"USD": 500.0}))
    analyzer.update_portfolio(snap(1, 110.0))
    analyzer.update_portfolio(snap(2, 99.0))

    # Day 0 ends at 500 (the intraday snapshot), then 110, then 99
    assert np.allclose(analyzer.daily_returns(), [110.0 / 500.0 - 1, 99.0 / 110.0 - 1])
    returns = analyzer.daily_returns()
    expected = (returns.mean() - 0.02 / 365) / returns.std()
    assert np.isclose(analyzer.sharpe_ratio(), expected)


def test_pair_profit():
    assert pair_profit(trade(TradeSide.BUY, 100.0, amount=2.0), trade(TradeSide.SELL, 110.0)) == 20.0
    assert pair_profit(trade(TradeSide.SELL, 100.0), trade(TradeSide.BUY, 90.0)) == 10.0
    assert pair_profit(trade(TradeSide.BUY, 100.0), trade(TradeSide.BUY, 120.0)) == 0.0


def test_adjacent_win_rate_round_trip():
    analyzer = analyzer_with_values([1_000.0])
    analyzer.add_trade(trade(TradeSide.BUY, 100.0))
    analyzer.add_trade(trade(TradeSide.SELL, 110.0))

    assert analyzer.win_rate() == 0.5


def test_fifo_pairs_across_interleaved_assets():
    """
    buy BTC, buy ETH, sell BTC at a profit.

    Adjacent pairing never sees a same-asset neighbour; FIFO matches the BTC
    sell against the BTC buy.
    """
    trades = [
        trade(TradeSide.BUY, 100.0, asset="BTC"),
        trade(TradeSide.BUY, 50.0, asset="ETH"),
        trade(TradeSide.SELL, 110.0, asset="BTC"),
    ]
    assert adjacent_win_count(trades) == 0
    assert fifo_win_count(trades) == 1

    analyzer = PerformanceAnalyzer(snap(0, 1_000.0), win_rate_pairing="fifo")
    for t in trades:
        analyzer.add_trade(t)
    assert analyzer.win_rate_pairing is WinRatePairing.FIFO
    assert np.isclose(analyzer.win_rate(), 1 / 3)
    assert analyzer.win_rate(pairing=WinRatePairing.ADJACENT) == 0.0


def test_fifo_closes_oldest_lot_first():
    trades = [
        trade(TradeSide.BUY, 100.0),
        trade(TradeSide.BUY, 200.0),
        trade(TradeSide.SELL, 150.0),  # Closes the 100 lot → win
        trade(TradeSide.SELL, 150.0),  # Closes the 200 lot → loss
    ]
    assert fifo_win_count(trades) == 1


def test_value_at_risk_and_expected_shortfall_from_history():
    values = [100.0, 90.0, 99.0, 89.1]  # returns -10%, +10%, -10%
    analyzer = analyzer_with_values(values)

    # n = 3, index floor(3 * 0.05) = 0 → worst return
    assert np.isclose(analyzer.value_at_risk(), 0.10)
    assert analyzer.expected_shortfall() == 0.0
    assert np.isclose(analyzer.portfolio_volatility(), np.std([-0.1, 0.1, -0.1]))


def test_correlation_matrix_uses_weight_series():
    analyzer = PerformanceAnalyzer(snap(0, 100.0))
    prices = {"BTC": 1.0, "ETH": 1.0}
    analyzer.update_portfolio(snap(1, 100.0, {"BTC": 60.0, "ETH": 40.0}, prices))
    analyzer.update_portfolio(snap(2, 100.0, {"BTC": 70.0, "ETH": 30.0}, prices))

    matrix = analyzer.correlation_matrix()

    assert set(matrix) == {"BTC", "ETH", "USD"}
    assert np.isclose(matrix["BTC"]["ETH"], matrix["ETH"]["BTC"])
    assert analyzer.weight_series()["BTC"] == [0.0, 0.6, 0.7]


def test_correlation_matrix_zero_variance_pair_is_zero():
    analyzer = analyzer_with_values([100.0, 100.0, 100.0])

    assert analyzer.correlation_matrix() == {"USD": {"USD": 0.0}}


def test_diversification_of_latest_snapshot():
    analyzer = PerformanceAnalyzer(snap(0, 100.0))
    analyzer.update_portfolio(snap(1, 100.0, {"BTC": 50.0, "ETH": 50.0}, {"BTC": 1.0, "ETH": 1.0}))

    assert np.isclose(analyzer.diversification_score(), 0.5)
    assert np.isclose(analyzer.concentration(), 0.5)


def test_detailed_analysis():
    analyzer = PerformanceAnalyzer(snap(0, 1_000.0))
    analyzer.add_trade(trade(TradeSide.BUY, 100.0, day=1, tag="entry"))
    analyzer.update_portfolio(snap(1, 1_000.0, {"USD": 900.0, "BTC": 1.0}, {"USD": 1.0, "BTC": 100.0}))
    analyzer.add_trade(trade(TradeSide.SELL, 120.0, day=2, tag="exit"))
    analyzer.update_portfolio(snap(2, 1_020.0))

    details = analyzer.get_detailed_analysis()
    trades = details.trade_analysis

    assert trades.total_trades == 2
    assert np.isclose(trades.average_trade_size, 110.0)
    assert np.isclose(trades.trade_frequency, 1.0)  # 2 trades over 2 days
    assert trades.asset_distribution == {"BTC": 1.0}
    assert trades.strategy_performance == {"entry": 0.0, "exit": 20.0}

    portfolio = details.portfolio_analysis
    assert portfolio.current_allocation == {"USD": 1.0}
    assert [event.timestamp for event in portfolio.rebalancing_history] == [DAY_MS, 2 * DAY_MS]
    assert np.isclose(portfolio.rebalancing_history[0].weight_changes["BTC"], 0.1)

    assert details.risk_metrics.beta == 1.0


def test_trade_analysis_without_trades():
    analysis = analyzer_with_values([100.0]).trade_analysis()

    assert analysis.total_trades == 0
    assert analysis.asset_distribution == {}
