"""
Data models for ltpscope.

Market data, price levels, analysis results, stream envelopes and market
context documents, plus the ``Ok``/``Unavailable`` result type.
"""

from .analysis import (
    CandleDirection,
    EmaAlignment,
    Grade,
    LessonReference,
    LevelProximity,
    LevelsSummary,
    LTPAnalysis,
    MarketSnapshot,
    MTF_TIMEFRAMES,
    MTFAnalysis,
    PatienceCandle,
    PatienceSummary,
    PricePosition,
    SetupQuality,
    TimeframeTrend,
    TrendAlignment,
    TrendDirection,
    TrendSummary,
    TrendTimeframe,
    VwapPosition,
)
from .context import (
    AvoidanceSeverity,
    DirectionalAvoidance,
    EconomicEvent,
    EventImpact,
    ImminentEvent,
    MarketBreadth,
    MarketContext,
    MarketHotContext,
    ProactiveWarning,
    TradingConditions,
    VolatilityLevel,
)
from .levels import KeyLevel, LevelType, SwingPoint, SwingTimeframe, SwingType
from .market_data import (
    Bar,
    ContractType,
    EarningsEvent,
    IndexQuote,
    IndicatorSeries,
    IndicatorValue,
    MACDSeries,
    MACDValue,
    MarketSession,
    MarketStatus,
    OptionContract,
    OptionsChain,
    Quote,
    TickerDetails,
)
from .result import Ok, Result, Unavailable, value_or_none
from .stream import CachedQuote, StreamData, StreamMessage, StreamMessageType

__all__ = [
    # Market data
    "Bar",
    "ContractType",
    "EarningsEvent",
    "IndexQuote",
    "IndicatorSeries",
    "IndicatorValue",
    "MACDSeries",
    "MACDValue",
    "MarketSession",
    "MarketStatus",
    "OptionContract",
    "OptionsChain",
    "Quote",
    "TickerDetails",
    # Levels
    "KeyLevel",
    "LevelType",
    "SwingPoint",
    "SwingTimeframe",
    "SwingType",
    # Analysis
    "CandleDirection",
    "EmaAlignment",
    "Grade",
    "LessonReference",
    "LevelProximity",
    "LevelsSummary",
    "LTPAnalysis",
    "MarketSnapshot",
    "MTF_TIMEFRAMES",
    "MTFAnalysis",
    "PatienceCandle",
    "PatienceSummary",
    "PricePosition",
    "SetupQuality",
    "TimeframeTrend",
    "TrendAlignment",
    "TrendDirection",
    "TrendSummary",
    "TrendTimeframe",
    "VwapPosition",
    # Context
    "AvoidanceSeverity",
    "DirectionalAvoidance",
    "EconomicEvent",
    "EventImpact",
    "ImminentEvent",
    "MarketBreadth",
    "MarketContext",
    "MarketHotContext",
    "ProactiveWarning",
    "TradingConditions",
    "VolatilityLevel",
    # Stream
    "CachedQuote",
    "StreamData",
    "StreamMessage",
    "StreamMessageType",
    # Results
    "Ok",
    "Result",
    "Unavailable",
    "value_or_none",
]
