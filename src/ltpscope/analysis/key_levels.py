"""
Key Level Detector

Builds the ranked list of support/resistance levels for a symbol:

- PDH / PDL and VWAP from the quote
- EMA9 / EMA21 / SMA200 from the daily indicator endpoints
- opening range (09:30-10:00) and premarket (04:00-09:30) high/low from
  1-minute bars of the most recent session in the bar set, exchange time
- swing levels from 4H and 1H pivots, merged, limited to levels near price

The result is sorted by absolute distance from the current price. Swing
levels are optional: if they cannot be computed they are left out.
"""

import asyncio
from datetime import time as dtime
from typing import Dict, List, Optional, Sequence

from ..config import LTPConfig
from ..logger import get_logger
from ..market_data.client import EXCHANGE_TZ
from ..market_data.service import MarketDataService
from ..models.levels import KeyLevel, LevelType, SwingPoint, SwingTimeframe, SwingType
from ..models.market_data import Bar
from .indicators import calculate_vwap
from .swing_points import detect_swing_points, filter_nearby_levels, merge_mtf_levels

logger = get_logger(__name__)

ORB_START = dtime(9, 30)
ORB_END = dtime(10, 0)
PREMARKET_START = dtime(4, 0)
SWING_BAR_LIMIT = 50


def level_distance(current_price: float, level_price: float) -> float:
    """Percent distance, positive when price is above the level."""
    return (current_price - level_price) / current_price * 100


def make_level(
    level_type: LevelType,
    price: float,
    current_price: float,
    strength: Optional[int] = None,
    touch_count: Optional[int] = None,
    timeframe: Optional[str] = None
) -> KeyLevel:
    return KeyLevel(
        type=level_type,
        price=price,
        strength=strength if strength is not None else level_type.base_strength,
        distance=level_distance(current_price, price),
        touch_count=touch_count,
        timeframe=timeframe
    )


def sort_by_distance(levels: Sequence[KeyLevel]) -> List[KeyLevel]:
    return sorted(levels, key=lambda level: level.abs_distance)


def session_levels(bars: Sequence[Bar]) -> Dict[LevelType, float]:
    """
    Opening-range and premarket high/low from intraday bars.

    Only bars on the most recent exchange-local date present are used, so
    the previous session's levels are still reported while the market is
    closed.
    """
    if not bars:
        return {}

    local = [(b, b.timestamp.astimezone(EXCHANGE_TZ)) for b in bars]
    session_date = local[-1][1].date()
    today = [(b, ts.time()) for b, ts in local if ts.date() == session_date]

    orb = [b for b, t in today if ORB_START <= t <= ORB_END]
    premarket = [b for b, t in today if PREMARKET_START <= t < ORB_START]

    levels: Dict[LevelType, float] = {}
    if orb:
        levels[LevelType.ORB_HIGH] = max(b.high for b in orb)
        levels[LevelType.ORB_LOW] = min(b.low for b in orb)
    if premarket:
        levels[LevelType.PMH] = max(b.high for b in premarket)
        levels[LevelType.PML] = min(b.low for b in premarket)
    return levels


def session_vwap(bars: Sequence[Bar]) -> float:
    """VWAP of the regular session on the most recent date in ``bars``."""
    if not bars:
        return 0.0
    session_date = bars[-1].timestamp.astimezone(EXCHANGE_TZ).date()
    regular = [
        b for b in bars
        if b.timestamp.astimezone(EXCHANGE_TZ).date() == session_date
        and b.timestamp.astimezone(EXCHANGE_TZ).time() >= ORB_START
    ]
    return calculate_vwap(regular)


def swing_level_type(swing: SwingPoint) -> LevelType:
    four_hour = swing.timeframe == SwingTimeframe.FOUR_HOURS
    if swing.type == SwingType.HIGH:
        return LevelType.SWING_HIGH_4H if four_hour else LevelType.SWING_HIGH_1H
    return LevelType.SWING_LOW_4H if four_hour else LevelType.SWING_LOW_1H


def swing_levels(
    bars_4h: Sequence[Bar],
    bars_1h: Sequence[Bar],
    current_price: float,
    max_distance_pct: float = 5.0,
    max_levels: int = 4
) -> List[KeyLevel]:
    """Merged 4H/1H swing levels within ``max_distance_pct`` of price, strongest first."""
    merged = merge_mtf_levels(
        detect_swing_points(bars_4h, SwingTimeframe.FOUR_HOURS),
        detect_swing_points(bars_1h, SwingTimeframe.ONE_HOUR)
    )
    nearby = filter_nearby_levels(merged, current_price, max_distance_pct)
    return [
        make_level(
            swing_level_type(swing),
            swing.price,
            current_price,
            strength=swing.strength,
            touch_count=swing.touch_count,
            timeframe=swing.timeframe.value
        )
        for swing in nearby[:max_levels]
    ]


class KeyLevelDetector:
    """Collects key levels for a symbol from quotes, indicators and bars."""

    def __init__(self, market_data: MarketDataService, config: Optional[LTPConfig] = None,
                 cache_ttl: Optional[int] = None):
        self.market_data = market_data
        self.config = config or LTPConfig()
        self.cache_ttl = cache_ttl or market_data.ttl.levels_ttl

    async def get_key_levels(self, symbol: str) -> List[KeyLevel]:
        """
        Key levels for ``symbol`` sorted ascending by absolute distance.

        Returns:
            Levels list; empty when no quote is available
        """
        symbol = symbol.upper()
        levels = await self.market_data.cache.get_or_compute(
            f"levels:{symbol}",
            self.cache_ttl,
            lambda: self._compute(symbol),
            schema=List[KeyLevel]
        )
        return levels or []

    async def _compute(self, symbol: str) -> Optional[List[KeyLevel]]:
        quote = await self.market_data.get_quote(symbol)
        if quote is None or quote.price <= 0:
            return None
        price = quote.price

        ema9, ema21, sma200, intraday, bars_4h, bars_1h = await asyncio.gather(
            self.market_data.get_ema(symbol, 9, "day", 1),
            self.market_data.get_ema(symbol, 21, "day", 1),
            self.market_data.get_sma(symbol, 200, "day", 1),
            self.market_data.get_intraday_bars(symbol, 1),
            self.market_data.get_aggregates(symbol, "240", SWING_BAR_LIMIT),
            self.market_data.get_aggregates(symbol, "60", SWING_BAR_LIMIT),
            return_exceptions=True
        )

        levels: List[KeyLevel] = []

        if quote.prev_high > 0:
            levels.append(make_level(LevelType.PDH, quote.prev_high, price))
        if quote.prev_low > 0:
            levels.append(make_level(LevelType.PDL, quote.prev_low, price))

        intraday_bars = intraday if isinstance(intraday, list) else []
        vwap = quote.vwap if quote.vwap > 0 else session_vwap(intraday_bars)
        if vwap > 0:
            levels.append(make_level(LevelType.VWAP, vwap, price))

        for level_type, series in ((LevelType.EMA9, ema9), (LevelType.EMA21, ema21), (LevelType.SMA200, sma200)):
            if isinstance(series, Exception):
                logger.warning(f"Failed to load {level_type.value} for {symbol}: {series}")
                continue
            value = series.latest if series is not None else None
            if value and value > 0:
                levels.append(make_level(level_type, value, price))

        if isinstance(intraday, Exception):
            logger.warning(f"Failed to load intraday bars for {symbol}: {intraday}")
        for level_type, value in session_levels(intraday_bars).items():
            if value > 0:
                levels.append(make_level(level_type, value, price))

        try:
            for result in (bars_4h, bars_1h):
                if isinstance(result, Exception):
                    raise result
            levels.extend(swing_levels(
                bars_4h,
                bars_1h,
                price,
                self.config.max_level_distance_pct,
                self.config.max_swing_levels
            ))
        except Exception as e:
            logger.warning(f"Failed to detect swing levels for {symbol}: {e}")

        return sort_by_distance(levels)
