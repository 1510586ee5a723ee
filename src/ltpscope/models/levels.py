"""
Price level models: key levels and swing pivots.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class LevelType(str, Enum):
    """Source of a key level."""

    PDH = "pdh"
    PDL = "pdl"
    VWAP = "vwap"
    EMA9 = "ema9"
    EMA21 = "ema21"
    SMA200 = "sma200"
    ORB_HIGH = "orb_high"
    ORB_LOW = "orb_low"
    PMH = "pmh"
    PML = "pml"
    SWING_HIGH_1H = "swing_high_1h"
    SWING_HIGH_4H = "swing_high_4h"
    SWING_LOW_1H = "swing_low_1h"
    SWING_LOW_4H = "swing_low_4h"

    @property
    def base_strength(self) -> Optional[int]:
        """Fixed strength for non-swing levels; swing levels carry their own."""
        return LEVEL_STRENGTHS.get(self)


LEVEL_STRENGTHS = {
    LevelType.SMA200: 95,
    LevelType.VWAP: 90,
    LevelType.PDH: 85,
    LevelType.PDL: 85,
    LevelType.ORB_HIGH: 80,
    LevelType.ORB_LOW: 80,
    LevelType.EMA21: 75,
    LevelType.PMH: 75,
    LevelType.PML: 75,
    LevelType.EMA9: 70,
}


class KeyLevel(BaseModel):
    """
    A support/resistance level relative to the current price.

    ``distance`` is ``(current_price - price) / current_price * 100``:
    positive when price trades above the level.
    """

    type: LevelType
    price: float = Field(..., gt=0)
    strength: int = Field(..., ge=0, le=100)
    distance: float = Field(..., description="Percent distance from current price")
    touch_count: Optional[int] = Field(None, ge=1)
    timeframe: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def abs_distance(self) -> float:
        return abs(self.distance)


class SwingType(str, Enum):
    HIGH = "high"
    LOW = "low"


class SwingTimeframe(str, Enum):
    ONE_HOUR = "1H"
    FOUR_HOURS = "4H"
    DAILY = "D"


class SwingPoint(BaseModel):
    """A clustered pivot high/low on one timeframe."""

    price: float
    type: SwingType
    timestamp: int = Field(..., description="Most recent pivot time, epoch ms")
    touch_count: int = Field(default=1, ge=1)
    timeframe: SwingTimeframe
    strength: int = Field(default=60, ge=0, le=100)

    model_config = ConfigDict(frozen=True)
