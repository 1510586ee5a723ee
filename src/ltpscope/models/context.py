"""
Market context models.

Breadth and hot-context documents are written to the cache by a separate
context worker using camelCase JSON, so these models accept camelCase
aliases as well as field names.
"""

import datetime as dt
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .market_data import MarketStatus


class ContextModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore"
    )


class AddTrend(str, Enum):
    STRONG_BULLISH = "strong_bullish"
    BULLISH = "bullish"
    NEUTRAL = "neutral"
    BEARISH = "bearish"
    STRONG_BEARISH = "strong_bearish"


class VoldTrend(str, Enum):
    BUYING_PRESSURE = "buying_pressure"
    NEUTRAL = "neutral"
    SELLING_PRESSURE = "selling_pressure"


class TradingBias(str, Enum):
    FAVOR_LONGS = "favor_longs"
    FAVOR_SHORTS = "favor_shorts"
    NEUTRAL = "neutral"
    CAUTION = "caution"


class AdvanceDecline(ContextModel):
    value: float = 0.0
    change: float = 0.0
    trend: AddTrend = AddTrend.NEUTRAL


class VolumeDelta(ContextModel):
    value: float = 0.0
    change: float = 0.0
    trend: VoldTrend = VoldTrend.NEUTRAL
    intensity: Optional[str] = None


class TickReading(ContextModel):
    current: float = 0.0
    high: float = 0.0
    low: float = 0.0
    extreme_reading: bool = False
    signal: str = "neutral"


class MarketBreadth(ContextModel):
    """ADD / VOLD / TICK breadth snapshot."""

    add: AdvanceDecline = Field(default_factory=AdvanceDecline)
    vold: VolumeDelta = Field(default_factory=VolumeDelta)
    tick: TickReading = Field(default_factory=TickReading)
    health_score: float = Field(default=50.0, ge=0, le=100)
    trading_bias: TradingBias = TradingBias.NEUTRAL
    coaching_message: Optional[str] = None


class WarningSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class ProactiveWarning(ContextModel):
    id: str
    timestamp: str
    severity: WarningSeverity
    type: str
    title: str
    message: str
    action_required: bool = False
    suggested_action: Optional[str] = None
    expires_at: Optional[str] = None


class ConditionStatus(str, Enum):
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class TradingConditions(ContextModel):
    status: ConditionStatus = ConditionStatus.GREEN
    message: str = "Market data unavailable. Trade with normal caution."
    restrictions: List[str] = Field(default_factory=list)
    breadth_bias: Optional[TradingBias] = None


class CalendarEvent(ContextModel):
    """Calendar entry as published by the context worker."""

    id: Optional[str] = None
    date: str
    time: str
    event: str
    impact: str
    minutes_until_event: Optional[float] = None
    is_imminent: bool = False
    coaching_message: Optional[str] = None


class CalendarContext(ContextModel):
    today_events: List[CalendarEvent] = Field(default_factory=list)
    next_event: Optional[CalendarEvent] = None
    has_high_impact_today: bool = False
    is_event_imminent: bool = False
    imminent_event: Optional[CalendarEvent] = None


class MarketHotContext(ContextModel):
    """Situational context published under ``context:hot``."""

    timestamp: str
    breadth: Optional[MarketBreadth] = None
    calendar: CalendarContext = Field(default_factory=CalendarContext)
    trading_conditions: TradingConditions = Field(default_factory=TradingConditions)
    active_warnings: List[ProactiveWarning] = Field(default_factory=list)


class EventImpact(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class EconomicEvent(BaseModel):
    date: dt.date
    time: str
    event: str
    impact: EventImpact

    model_config = ConfigDict(frozen=True)


class VolatilityLevel(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    EXTREME = "extreme"


class MarketContext(BaseModel):
    market_status: MarketStatus
    vix: float
    volatility_level: VolatilityLevel
    upcoming_events: List[EconomicEvent] = Field(default_factory=list)
    high_impact_today: bool = False

    model_config = ConfigDict(frozen=True)


class AvoidanceSeverity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DirectionalAvoidance(BaseModel):
    """Whether breadth argues against trading one direction."""

    avoid: bool = False
    reason: Optional[str] = None
    severity: AvoidanceSeverity = AvoidanceSeverity.LOW

    model_config = ConfigDict(frozen=True)


class ImminentEvent(BaseModel):
    is_imminent: bool = False
    event: Optional[CalendarEvent] = None
    minutes_away: float = -1

    model_config = ConfigDict(frozen=True)
