"""
Collaborator interfaces consumed by the backtest runner and the rebalancer.

**Conceptual**: The runner does not know how markets are analyzed, how risk
limits are enforced, or how a strategy sizes its trades. It talks to those
collaborators only through the Protocols below, so strategies plug in without
modifying the engine:
  - MarketAnalyzer: point-in-time bars → MarketInsight
  - RiskGate: admits or rejects candidate trades; observes snapshots
  - TradeSizer: (asset, insight, price) → signed amount (+buy / -sell)
  - PriceEstimator: (asset, insight | None) → price, used by the rebalancer

**Sync or async**: analyze() and update_portfolio() may be plain methods or
coroutines. The runner passes every result through `resolve()`, which awaits
awaitables, so an I/O-bound analyzer finishes before the step's trades are
applied.

**Analysis payloads**: A MarketInsight carries zero or more payloads, one
dataclass per analysis kind (TechnicalAnalysis, FundamentalAnalysis,
SentimentAnalysis). Consumers dispatch with `match` on the payload class, so
adding a new kind means adding a case rather than guessing at dictionary keys.

Structural typing (Protocol) rather than ABCs: any object with matching
methods is accepted.
"""

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Protocol, Sequence, Tuple, Union

from strategy_lab.data.schemas import MarketBar
from strategy_lab.execution.ledger import PortfolioSnapshot


class MissingMarketDataError(LookupError):
    """Raised when an analyzer has no usable bars for an asset at the current step."""
    pass


class Trend(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class Recommendation(str, Enum):
    STRONG_BUY = "strong_buy"
    BUY = "buy"
    HOLD = "hold"
    SELL = "sell"
    STRONG_SELL = "strong_sell"


class AnalysisKind(str, Enum):
    TECHNICAL = "technical"
    FUNDAMENTAL = "fundamental"
    SENTIMENT = "sentiment"


@dataclass(frozen=True)
class TechnicalAnalysis:
    """
    Indicator readings at the latest visible bar.

    Attributes:
        sma_short: Short simple moving average of closes (20 bars).
        sma_long: Long simple moving average of closes (50 bars).
        rsi: RSI (0-100).
        macd: MACD line (fast EMA - slow EMA).
        velocity: Log-price regression slope over the trend window.
    """
    sma_short: float
    sma_long: float
    rsi: float
    macd: float
    velocity: float = 0.0
    kind: AnalysisKind = field(default=AnalysisKind.TECHNICAL, init=False)


@dataclass(frozen=True)
class FundamentalAnalysis:
    """
    Market-structure readings derived from price and volume.

    Attributes:
        volume_trend: Recent mean volume / longer mean volume - 1.
        volatility: Population std of recent simple returns.
    """
    volume_trend: float
    volatility: float
    kind: AnalysisKind = field(default=AnalysisKind.FUNDAMENTAL, init=False)


@dataclass(frozen=True)
class SentimentAnalysis:
    """
    Externally supplied sentiment score in [-1, 1] (-1 bearish, +1 bullish).

    Attributes:
        score: Aggregate sentiment.
        source: Where the score came from (e.g., "market").
    """
    score: float
    source: str = "market"
    kind: AnalysisKind = field(default=AnalysisKind.SENTIMENT, init=False)


AnalysisPayload = Union[TechnicalAnalysis, FundamentalAnalysis, SentimentAnalysis]


@dataclass(frozen=True)
class MarketInsight:
    """
    An analyzer's view of one asset at one step.

    Attributes:
        trend: Direction call.
        confidence: Strength of the call in [0, 1].
        recommendation: Discrete action suggestion.
        analyses: Payloads the call was derived from.
    """
    trend: Trend
    confidence: float
    recommendation: Recommendation = Recommendation.HOLD
    analyses: Tuple[AnalysisPayload, ...] = ()

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")
        if not isinstance(self.trend, Trend):
            object.__setattr__(self, 'trend', Trend(self.trend))
        if not isinstance(self.recommendation, Recommendation):
            object.__setattr__(self, 'recommendation', Recommendation(self.recommendation))
        object.__setattr__(self, 'analyses', tuple(self.analyses))

    def payload(self, kind: AnalysisKind) -> AnalysisPayload | None:
        """First payload of the given kind, or None."""
        for analysis in self.analyses:
            if analysis.kind is kind:
                return analysis
        return None


class MarketAnalyzer(Protocol):
    def analyze(
        self, asset: str, window: Sequence[MarketBar]
    ) -> Union[MarketInsight, Awaitable[MarketInsight]]:
        """
        Produce an insight from the bars visible at the current step.

        Args:
            asset: Asset symbol.
            window: Bars with timestamp <= current step, oldest first.

        Raises:
            MissingMarketDataError: If the window is unusable.
        """
        ...


class RiskGate(Protocol):
    def can_open_position(self, asset: str, amount: float, price: float) -> bool:
        """True if a signed `amount` of `asset` at `price` may be traded now."""
        ...

    def update_portfolio(self, snapshot: PortfolioSnapshot) -> Union[None, Awaitable[None]]:
        """Observe the current portfolio before trades are considered."""
        ...


class TradeSizer(Protocol):
    def __call__(self, asset: str, insight: MarketInsight, price: float) -> float:
        """Signed units to trade: positive buys, negative sells, 0 does nothing."""
        ...


class PriceEstimator(Protocol):
    def __call__(self, asset: str, insight: MarketInsight | None) -> float:
        """Estimated unit price of `asset` when no quote is available."""
        ...


class PermissiveRiskGate:
    """Admits every trade. The runner's default gate."""

    def can_open_position(self, asset: str, amount: float, price: float) -> bool:
        return True

    def update_portfolio(self, snapshot: PortfolioSnapshot) -> None:
        return None


class FixedPriceEstimator:
    """Returns the same price for every asset (default 1.0)."""

    def __init__(self, price: float = 1.0):
        if price <= 0:
            raise ValueError(f"Estimated price must be positive, got {price}")
        self.price = price

    def __call__(self, asset: str, insight: MarketInsight | None) -> float:
        return self.price


async def resolve(value: Any) -> Any:
    """Await `value` if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value
