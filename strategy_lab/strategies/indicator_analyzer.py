"""
Reference MarketAnalyzer built on price/volume indicators.

**Conceptual**: Turns the bars visible at a step into a MarketInsight:
  1. Technical payload: SMA20, SMA50, RSI14, MACD(12, 26), log-price velocity.
  2. Fundamental payload: volume trend and recent return volatility.
  3. Sentiment payload (optional): a score from a caller-supplied provider.

**Trend rule** (on the technical payload):
  - bullish if SMA20 > SMA50 and RSI > 50 and MACD > 0
  - bearish if SMA20 < SMA50 and RSI < 50 and MACD < 0
  - neutral otherwise

**Confidence**: weighted mean of per-kind confidences, weights 0.4 technical,
0.3 fundamental, 0.3 sentiment (only kinds actually present count toward the
denominator). Technical confidence scores RSI and MACD in tiers:
  - RSI > 70 or < 30 → 1.0; RSI > 60 or < 40 → 0.5; else 0
  - |MACD| > 0.5 → 1.0; |MACD| > 0.2 → 0.5; else 0
and averages the two. Fundamental confidence tiers |volume_trend| the same
way (0.5 / 0.2). Sentiment confidence is |score|.

**Recommendation**: hold below 0.3 confidence; above 0.7 a bullish/bearish
trend becomes strong_buy/strong_sell; otherwise buy/sell; neutral → hold.

Short histories are handled by shrinking the moving-average windows to the
bars available, so the analyzer produces an insight from the first bar on.
"""

from typing import Callable, Optional, Sequence

import pandas as pd

from strategy_lab.data.schemas import MarketBar
from strategy_lab.strategies.base import (
    AnalysisPayload,
    FundamentalAnalysis,
    MarketInsight,
    MissingMarketDataError,
    Recommendation,
    SentimentAnalysis,
    TechnicalAnalysis,
    Trend,
)
from strategy_lab.utils.math import (
    compute_macd,
    compute_moving_average_simple,
    compute_population_std,
    compute_rsi,
    compute_simple_returns,
    compute_velocity,
    last_value,
)

TECHNICAL_WEIGHT = 0.4
FUNDAMENTAL_WEIGHT = 0.3
SENTIMENT_WEIGHT = 0.3

HOLD_BELOW_CONFIDENCE = 0.3
STRONG_ABOVE_CONFIDENCE = 0.7

SentimentProvider = Callable[[str, Sequence[MarketBar]], Optional[float]]


def _tier(value: float, high: float, low: float) -> float:
    if value > high:
        return 1.0
    if value > low:
        return 0.5
    return 0.0


def technical_confidence(analysis: TechnicalAnalysis) -> float:
    if analysis.rsi > 70 or analysis.rsi < 30:
        rsi_score = 1.0
    elif analysis.rsi > 60 or analysis.rsi < 40:
        rsi_score = 0.5
    else:
        rsi_score = 0.0
    macd_score = _tier(abs(analysis.macd), 0.5, 0.2)
    return (rsi_score + macd_score) / 2


def payload_confidence(payload: AnalysisPayload) -> tuple[float, float]:
    """(weight, confidence) of one payload."""
    match payload:
        case TechnicalAnalysis():
            return TECHNICAL_WEIGHT, technical_confidence(payload)
        case FundamentalAnalysis():
            return FUNDAMENTAL_WEIGHT, _tier(abs(payload.volume_trend), 0.5, 0.2)
        case SentimentAnalysis():
            return SENTIMENT_WEIGHT, min(abs(payload.score), 1.0)
        case _:
            raise TypeError(f"Unsupported analysis payload: {type(payload).__name__}")


def aggregate_confidence(payloads: Sequence[AnalysisPayload]) -> float:
    """Weighted mean confidence over the payloads present; 0.0 with none."""
    total_weight = 0.0
    weighted = 0.0
    for payload in payloads:
        weight, confidence = payload_confidence(payload)
        weighted += weight * confidence
        total_weight += weight
    if total_weight == 0:
        return 0.0
    return weighted / total_weight


def determine_trend(analysis: TechnicalAnalysis) -> Trend:
    if analysis.sma_short > analysis.sma_long and analysis.rsi > 50 and analysis.macd > 0:
        return Trend.BULLISH
    if analysis.sma_short < analysis.sma_long and analysis.rsi < 50 and analysis.macd < 0:
        return Trend.BEARISH
    return Trend.NEUTRAL


def recommend(trend: Trend, confidence: float) -> Recommendation:
    if confidence < HOLD_BELOW_CONFIDENCE:
        return Recommendation.HOLD
    strong = confidence > STRONG_ABOVE_CONFIDENCE
    if trend is Trend.BULLISH:
        return Recommendation.STRONG_BUY if strong else Recommendation.BUY
    if trend is Trend.BEARISH:
        return Recommendation.STRONG_SELL if strong else Recommendation.SELL
    return Recommendation.HOLD


class IndicatorMarketAnalyzer:
    """
    MarketAnalyzer implementation using SMA/RSI/MACD and volume statistics.

    **Usage**:
        analyzer = IndicatorMarketAnalyzer()
        insight = analyzer.analyze("BTC", series.bars_up_to(t))
    """

    def __init__(
        self,
        short_window: int = 20,
        long_window: int = 50,
        rsi_window: int = 14,
        velocity_window: int = 20,
        volume_window: int = 5,
        sentiment_provider: SentimentProvider | None = None,
    ):
        """
        Args:
            short_window: Bars in the short SMA.
            long_window: Bars in the long SMA.
            rsi_window: RSI smoothing window.
            velocity_window: Bars regressed for velocity.
            volume_window: Recent bars compared against the whole window for
                           volume trend and volatility.
            sentiment_provider: Optional callable (asset, window) → score in
                                [-1, 1] or None. Sentiment is included only
                                when this is set and returns a value.
        """
        if short_window < 1 or long_window < 1:
            raise ValueError("Moving-average windows must be >= 1.")
        if short_window >= long_window:
            raise ValueError(
                f"short_window ({short_window}) must be smaller than long_window ({long_window})."
            )
        self.short_window = short_window
        self.long_window = long_window
        self.rsi_window = rsi_window
        self.velocity_window = velocity_window
        self.volume_window = volume_window
        self.sentiment_provider = sentiment_provider

    def technical(self, closes: pd.Series) -> TechnicalAnalysis:
        n = len(closes)
        sma_short = last_value(compute_moving_average_simple(closes, min(self.short_window, n)))
        sma_long = last_value(compute_moving_average_simple(closes, min(self.long_window, n)))
        return TechnicalAnalysis(
            sma_short=sma_short,
            sma_long=sma_long,
            rsi=last_value(compute_rsi(closes, self.rsi_window), default=50.0),
            macd=last_value(compute_macd(closes), default=0.0),
            velocity=compute_velocity(closes, self.velocity_window),
        )

    def fundamental(self, closes: pd.Series, volumes: pd.Series) -> FundamentalAnalysis:
        recent_volume = volumes.iloc[-self.volume_window:].mean()
        overall_volume = volumes.mean()
        volume_trend = recent_volume / overall_volume - 1.0 if overall_volume > 0 else 0.0

        returns = compute_simple_returns(closes).dropna().iloc[-self.volume_window:]
        return FundamentalAnalysis(
            volume_trend=float(volume_trend),
            volatility=compute_population_std(returns.to_numpy()),
        )

    def analyze(self, asset: str, window: Sequence[MarketBar]) -> MarketInsight:
        """
        Build an insight from the visible bars.

        Raises:
            MissingMarketDataError: If the window is empty.
        """
        if not window:
            raise MissingMarketDataError(f"No market data available for {asset}")

        closes = pd.Series([bar.close for bar in window], dtype=float)
        volumes = pd.Series([bar.volume for bar in window], dtype=float)

        technical = self.technical(closes)
        payloads: list[AnalysisPayload] = [technical, self.fundamental(closes, volumes)]

        if self.sentiment_provider is not None:
            score = self.sentiment_provider(asset, window)
            if score is not None:
                payloads.append(SentimentAnalysis(score=float(score)))

        trend = determine_trend(technical)
        confidence = aggregate_confidence(payloads)
        return MarketInsight(
            trend=trend,
            confidence=confidence,
            recommendation=recommend(trend, confidence),
            analyses=tuple(payloads),
        )
