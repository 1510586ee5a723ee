"""
Pub/sub envelope and hot-cache entry models.
"""

import time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class StreamMessageType(str, Enum):
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    QUOTE = "quote"
    TRADE = "trade"
    BAR = "bar"
    ERROR = "error"
    HEARTBEAT = "heartbeat"

    @property
    def updates_hot_cache(self) -> bool:
        return self in (StreamMessageType.QUOTE, StreamMessageType.TRADE, StreamMessageType.BAR)


class StreamData(BaseModel):
    """Tick payload. Fields are optional; trades carry price/size, bars OHLCV."""

    price: Optional[float] = None
    size: Optional[float] = None
    volume: Optional[float] = None
    vwap: Optional[float] = None
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    timestamp: Optional[int] = Field(None, description="Epoch milliseconds")

    model_config = ConfigDict(frozen=True)


class StreamMessage(BaseModel):
    """Message published on a per-symbol channel."""

    type: StreamMessageType
    symbol: Optional[str] = None
    data: Optional[StreamData] = None
    symbols: Optional[List[str]] = None
    message: Optional[str] = None

    model_config = ConfigDict(frozen=True)


def now_ms() -> int:
    return int(time.time() * 1000)


class CachedQuote(BaseModel):
    """Latest tick for a symbol, as stored in the hot cache."""

    symbol: str
    price: float
    timestamp: int = Field(..., description="Tick time, epoch milliseconds")
    data: Optional[StreamData] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_message(cls, symbol: str, message: StreamMessage) -> "CachedQuote":
        data = message.data
        price = 0.0
        timestamp = None
        if data is not None:
            price = data.price or data.close or 0.0
            timestamp = data.timestamp
        return cls(
            symbol=symbol.upper(),
            price=price,
            timestamp=timestamp or now_ms(),
            data=data
        )

    def age_ms(self, at_ms: Optional[int] = None) -> int:
        return (at_ms if at_ms is not None else now_ms()) - self.timestamp

    def is_fresh(self, freshness_ms: float, at_ms: Optional[int] = None) -> bool:
        return self.age_ms(at_ms) <= freshness_ms
