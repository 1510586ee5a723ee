"""
Core Market Data Models

Pydantic models for the provider data the analysis engines consume:
- Bar: OHLCV bar with a UTC timestamp
- Quote: Immutable snapshot quote for an equity ticker
- IndexQuote: Index value (VIX, SPX, ...)
- MarketStatus: Exchange session status
- IndicatorSeries / MACDSeries: Provider-computed technical indicators
- OptionContract / OptionsChain: Options snapshot data
- TickerDetails / EarningsEvent: Reference data and earnings dates

Prices are floats as delivered by the provider; every model is frozen so a
snapshot is replaced wholesale rather than mutated.
"""

import datetime as dt
import math
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def to_utc_datetime(v) -> datetime:
    """Coerce epoch milliseconds, ISO strings or datetimes to aware UTC."""
    if isinstance(v, datetime):
        dt = v
    elif isinstance(v, (int, float)):
        dt = datetime.fromtimestamp(v / 1000, tz=timezone.utc)
    elif isinstance(v, str):
        if v.endswith('Z'):
            v = v[:-1] + '+00:00'
        dt = datetime.fromisoformat(v)
    else:
        raise ValueError(f"Invalid timestamp format: {type(v)}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Bar(BaseModel):
    """OHLCV bar. Sequences of bars are ordered ascending by timestamp."""

    timestamp: datetime = Field(..., description="Bar open time (UTC)")
    open: float
    high: float
    low: float
    close: float
    volume: float = Field(default=0.0, ge=0)
    vwap: Optional[float] = None

    model_config = ConfigDict(frozen=True)

    @field_validator('timestamp', mode='before')
    @classmethod
    def validate_timestamp(cls, v) -> datetime:
        return to_utc_datetime(v)

    @field_validator('open', 'high', 'low', 'close')
    @classmethod
    def validate_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError(f"Price must be finite: {v}")
        return v

    @property
    def time_ms(self) -> int:
        return int(self.timestamp.timestamp() * 1000)

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open


class Quote(BaseModel):
    """Snapshot quote for a single ticker."""

    symbol: str
    price: float = 0.0
    last: float = 0.0
    change: float = 0.0
    change_percent: float = 0.0
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    close: float = 0.0
    volume: float = 0.0
    vwap: float = 0.0
    prev_close: float = 0.0
    prev_high: float = 0.0
    prev_low: float = 0.0
    timestamp: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)

    @field_validator('symbol')
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.upper().strip()

    @field_validator('timestamp', mode='before')
    @classmethod
    def validate_timestamp(cls, v) -> datetime:
        return to_utc_datetime(v)


class IndexQuote(BaseModel):
    """Index level such as VIX or SPX."""

    symbol: str
    value: float = 0.0
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    change: float = 0.0
    change_percent: float = 0.0
    timestamp: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)

    @field_validator('timestamp', mode='before')
    @classmethod
    def validate_timestamp(cls, v) -> datetime:
        return to_utc_datetime(v)


class MarketSession(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    EXTENDED_HOURS = "extended-hours"
    UNKNOWN = "unknown"


class MarketStatus(BaseModel):
    """Exchange session status."""

    market: MarketSession = MarketSession.UNKNOWN
    after_hours: bool = False
    early_hours: bool = False
    server_time: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @field_validator('market', mode='before')
    @classmethod
    def coerce_unknown(cls, v):
        try:
            return MarketSession(v)
        except ValueError:
            return MarketSession.UNKNOWN

    @property
    def is_open(self) -> bool:
        return self.market == MarketSession.OPEN


class IndicatorValue(BaseModel):
    timestamp: int = Field(..., description="Epoch milliseconds")
    value: float

    model_config = ConfigDict(frozen=True)


class IndicatorSeries(BaseModel):
    """Provider-computed SMA/EMA/RSI series, most recent value first."""

    indicator: str
    period: int
    values: List[IndicatorValue] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @property
    def latest(self) -> Optional[float]:
        return self.values[0].value if self.values else None


class MACDValue(BaseModel):
    timestamp: int
    macd: float
    signal: float = 0.0
    histogram: float = 0.0

    model_config = ConfigDict(frozen=True)


class MACDSeries(BaseModel):
    values: List[MACDValue] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class ContractType(str, Enum):
    CALL = "call"
    PUT = "put"


class OptionContract(BaseModel):
    """Options contract snapshot including greeks."""

    ticker: str
    underlying: str
    contract_type: ContractType
    strike: float
    expiration: str
    bid: float = 0.0
    ask: float = 0.0
    last: float = 0.0
    volume: float = 0.0
    open_interest: float = 0.0
    implied_volatility: float = 0.0
    delta: float = 0.0
    gamma: float = 0.0
    theta: float = 0.0
    vega: float = 0.0

    model_config = ConfigDict(frozen=True)


class OptionsChain(BaseModel):
    """Calls and puts for one expiration, each sorted ascending by strike."""

    underlying: str
    expiration_date: str
    calls: List[OptionContract] = Field(default_factory=list)
    puts: List[OptionContract] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class TickerDetails(BaseModel):
    """Reference data for a ticker; only the fields the coaching layer reads."""

    ticker: str
    name: Optional[str] = None
    market_cap: Optional[float] = None
    next_earnings_date: Optional[dt.date] = None

    model_config = ConfigDict(frozen=True)


class EarningsEvent(BaseModel):
    """Scheduled earnings release. Release time is not published, so it stays 'unknown'."""

    symbol: str
    date: dt.date
    time: str = "unknown"

    model_config = ConfigDict(frozen=True)
