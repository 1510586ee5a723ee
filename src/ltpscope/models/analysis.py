"""
Analysis result models.

Trend, patience-candle and LTP confluence results. All of them are derived
values: built once by an analyzer and never mutated afterwards.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .levels import KeyLevel
from .market_data import Quote, to_utc_datetime, utc_now


class TrendDirection(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class PricePosition(str, Enum):
    """Price relative to a moving average or level."""

    ABOVE = "above"
    BELOW = "below"
    AT = "at"


class EmaAlignment(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    MIXED = "mixed"


class TrendTimeframe(str, Enum):
    """Timeframes evaluated by the trend analyzer."""

    FIVE_MINUTES = "5m"
    FIFTEEN_MINUTES = "15m"
    ONE_HOUR = "1h"
    FOUR_HOURS = "4h"
    DAILY = "daily"

    @property
    def aggregate_span(self) -> str:
        """Timespan label understood by the market data client."""
        mapping = {
            "5m": "5",
            "15m": "15",
            "1h": "60",
            "4h": "240",
            "daily": "day",
        }
        return mapping[self.value]


MTF_TIMEFRAMES = (
    TrendTimeframe.FIVE_MINUTES,
    TrendTimeframe.FIFTEEN_MINUTES,
    TrendTimeframe.ONE_HOUR,
    TrendTimeframe.DAILY,
)


class TimeframeTrend(BaseModel):
    """EMA-based trend classification on one timeframe."""

    timeframe: TrendTimeframe
    trend: TrendDirection
    ema9: float
    ema21: float
    price_vs_ema9: PricePosition
    price_vs_ema21: PricePosition
    ema_alignment: EmaAlignment

    model_config = ConfigDict(frozen=True)


class MTFAnalysis(BaseModel):
    """Multi-timeframe trend alignment for a symbol."""

    symbol: str
    current_price: float
    timeframes: List[TimeframeTrend]
    overall_bias: TrendDirection
    alignment_score: int = Field(..., ge=0, le=100)
    conflicting_timeframes: List[TrendTimeframe] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    def trend_for(self, timeframe: TrendTimeframe) -> Optional[TimeframeTrend]:
        for tf in self.timeframes:
            if tf.timeframe == timeframe:
                return tf
        return None


class CandleDirection(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"


class PatienceCandle(BaseModel):
    """Patience-candle state of the latest bar in a series."""

    forming: bool
    confirmed: bool
    direction: CandleDirection

    model_config = ConfigDict(frozen=True)


class VwapPosition(str, Enum):
    ABOVE_VWAP = "above_vwap"
    BELOW_VWAP = "below_vwap"
    AT_VWAP = "at_vwap"


class LevelProximity(str, Enum):
    AT_LEVEL = "at_level"
    NEAR_LEVEL = "near_level"
    BETWEEN_LEVELS = "between_levels"


class TrendAlignment(str, Enum):
    ALIGNED = "aligned"
    CONFLICTING = "conflicting"


class Grade(str, Enum):
    A_PLUS = "A+"
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    F = "F"


class SetupQuality(str, Enum):
    STRONG = "Strong"
    MODERATE = "Moderate"
    WEAK = "Weak"
    NO_SETUP = "No Setup"


class LevelsSummary(BaseModel):
    nearest: List[KeyLevel] = Field(default_factory=list)
    pdh: Optional[float] = None
    pdl: Optional[float] = None
    vwap: Optional[float] = None
    orb_high: Optional[float] = None
    orb_low: Optional[float] = None
    ema9: Optional[float] = None
    ema21: Optional[float] = None
    sma200: Optional[float] = None
    pmh: Optional[float] = None
    pml: Optional[float] = None
    price_vs_sma200: Optional[PricePosition] = None
    price_position: VwapPosition
    level_proximity: LevelProximity
    level_score: int = Field(..., ge=0, le=100)

    model_config = ConfigDict(frozen=True)


class TrendSummary(BaseModel):
    mtf: MTFAnalysis
    daily_trend: TrendDirection
    intraday_trend: TrendDirection
    trend_alignment: TrendAlignment
    trend_score: int = Field(..., ge=0, le=100)

    model_config = ConfigDict(frozen=True)


class PatienceSummary(BaseModel):
    candle_5m: Optional[PatienceCandle] = None
    candle_15m: Optional[PatienceCandle] = None
    candle_1h: Optional[PatienceCandle] = None
    patience_score: int = Field(..., ge=0, le=100)

    model_config = ConfigDict(frozen=True)


class LessonReference(BaseModel):
    """Pointer to training material relevant to a setup."""

    module_slug: str
    lesson_slug: str
    title: str
    module_title: Optional[str] = None
    description: Optional[str] = None
    relevance: int = Field(default=0, ge=0)

    @property
    def path(self) -> str:
        return f"{self.module_slug}/{self.lesson_slug}"

    model_config = ConfigDict(frozen=True)


class LTPAnalysis(BaseModel):
    """Levels / Trend / Patience confluence report for one symbol."""

    symbol: str
    timestamp: datetime = Field(default_factory=utc_now)
    levels: LevelsSummary
    trend: TrendSummary
    patience: PatienceSummary
    confluence_score: int = Field(..., ge=0, le=100)
    grade: Grade
    setup_quality: SetupQuality
    recommendation: str
    related_lessons: List[LessonReference] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @field_validator('timestamp', mode='before')
    @classmethod
    def validate_timestamp(cls, v) -> datetime:
        return to_utc_datetime(v)


class MarketSnapshot(BaseModel):
    """Quote, levels, short-term trend and 5m patience state in one object."""

    symbol: str
    quote: Quote
    key_levels: List[KeyLevel] = Field(default_factory=list)
    trend: TrendDirection
    vwap: float = 0.0
    patience_candle: Optional[PatienceCandle] = None
    timestamp: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)

