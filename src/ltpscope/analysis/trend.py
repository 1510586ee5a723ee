"""
Trend Analyzer

Classifies the trend on each timeframe from EMA9/EMA21 and measures how
well the timeframes agree.

Per timeframe:
- price vs each EMA is "above"/"below" beyond a 0.1% band, else "at"
- EMA alignment is bullish when EMA9 > EMA21, bearish when lower
- the trend is bullish only when price is above both EMAs and the
  alignment is bullish (bearish symmetric), otherwise neutral

Across timeframes the majority direction is the overall bias. A unanimous
read scores 100, a majority scores its share of the timeframes, and a tie
is neutral at 50.
"""

import asyncio
import time
from typing import List, Optional, Sequence

from ..logger import get_logger
from ..market_data.service import MarketDataService
from ..models.analysis import (
    EmaAlignment,
    MTF_TIMEFRAMES,
    MTFAnalysis,
    PricePosition,
    TimeframeTrend,
    TrendDirection,
    TrendTimeframe,
)
from ..models.market_data import Bar
from .indicators import calculate_ema, round_half_up

logger = get_logger(__name__)

MIN_TREND_BARS = 21
TREND_BAR_LIMIT = 50
PRICE_BAND = 0.001


def _position(price: float, reference: float, band: float) -> PricePosition:
    if price > reference + band:
        return PricePosition.ABOVE
    if price < reference - band:
        return PricePosition.BELOW
    return PricePosition.AT


def classify_trend(bars: Sequence[Bar], timeframe: TrendTimeframe) -> Optional[TimeframeTrend]:
    """
    Classify the trend of one timeframe.

    Args:
        bars: Bars sorted ascending by time
        timeframe: Timeframe the bars belong to

    Returns:
        TimeframeTrend, or None with fewer than 21 bars
    """
    if len(bars) < MIN_TREND_BARS:
        return None

    price = bars[-1].close
    ema9 = calculate_ema(bars, 9)
    ema21 = calculate_ema(bars, 21)
    band = price * PRICE_BAND

    vs_ema9 = _position(price, ema9, band)
    vs_ema21 = _position(price, ema21, band)

    if ema9 > ema21:
        alignment = EmaAlignment.BULLISH
    elif ema9 < ema21:
        alignment = EmaAlignment.BEARISH
    else:
        alignment = EmaAlignment.MIXED

    trend = TrendDirection.NEUTRAL
    if vs_ema9 == vs_ema21 == PricePosition.ABOVE and alignment == EmaAlignment.BULLISH:
        trend = TrendDirection.BULLISH
    elif vs_ema9 == vs_ema21 == PricePosition.BELOW and alignment == EmaAlignment.BEARISH:
        trend = TrendDirection.BEARISH

    return TimeframeTrend(
        timeframe=timeframe,
        trend=trend,
        ema9=ema9,
        ema21=ema21,
        price_vs_ema9=vs_ema9,
        price_vs_ema21=vs_ema21,
        ema_alignment=alignment
    )


def analyze_alignment(symbol: str, current_price: float,
                      timeframes: List[TimeframeTrend]) -> Optional[MTFAnalysis]:
    """
    Combine per-timeframe trends into an MTF analysis.

    Returns:
        MTFAnalysis, or None when no timeframe could be classified
    """
    if not timeframes:
        return None

    total = len(timeframes)
    bullish = sum(1 for t in timeframes if t.trend == TrendDirection.BULLISH)
    bearish = sum(1 for t in timeframes if t.trend == TrendDirection.BEARISH)

    if bullish == total:
        bias, score = TrendDirection.BULLISH, 100
    elif bearish == total:
        bias, score = TrendDirection.BEARISH, 100
    elif bullish > bearish:
        bias, score = TrendDirection.BULLISH, round_half_up(bullish / total * 100)
    elif bearish > bullish:
        bias, score = TrendDirection.BEARISH, round_half_up(bearish / total * 100)
    else:
        bias, score = TrendDirection.NEUTRAL, 50

    conflicting = [
        t.timeframe for t in timeframes
        if t.trend != bias and t.trend != TrendDirection.NEUTRAL
    ]

    return MTFAnalysis(
        symbol=symbol.upper(),
        current_price=current_price,
        timeframes=timeframes,
        overall_bias=bias,
        alignment_score=score,
        conflicting_timeframes=conflicting
    )


class TrendAnalyzer:
    """
    Fetches bars per timeframe and runs the trend classification.

    Timeframes are evaluated concurrently; a timeframe without enough bars
    is left out of the MTF vote.
    """

    def __init__(self, market_data: MarketDataService, cache_ttl: Optional[int] = None):
        self.market_data = market_data
        self.cache_ttl = cache_ttl or market_data.ttl.indicators_ttl
        self.performance_stats = {
            'analyses_completed': 0,
            'total_analysis_time': 0.0,
            'cache_misses': 0,
        }

    async def get_timeframe_trend(self, symbol: str, timeframe: TrendTimeframe) -> Optional[TimeframeTrend]:
        timeframe = TrendTimeframe(timeframe)
        bars = await self.market_data.get_aggregates(symbol, timeframe.aggregate_span, TREND_BAR_LIMIT)
        return classify_trend(bars, timeframe)

    async def get_mtf_analysis(self, symbol: str) -> Optional[MTFAnalysis]:
        """Multi-timeframe analysis over 5m, 15m, 1h and daily, cached per symbol."""
        symbol = symbol.upper()
        return await self.market_data.cache.get_or_compute(
            f"mtf:{symbol}",
            self.cache_ttl,
            lambda: self._compute_mtf(symbol),
            schema=MTFAnalysis
        )

    async def _compute_mtf(self, symbol: str) -> Optional[MTFAnalysis]:
        start_time = time.time()
        self.performance_stats['cache_misses'] += 1

        quote, *results = await asyncio.gather(
            self.market_data.get_quote(symbol),
            *(self.get_timeframe_trend(symbol, tf) for tf in MTF_TIMEFRAMES)
        )

        if quote is None:
            logger.debug(f"No quote for {symbol}, skipping MTF analysis")
            return None

        analysis = analyze_alignment(symbol, quote.price, [t for t in results if t is not None])

        self.performance_stats['analyses_completed'] += 1
        self.performance_stats['total_analysis_time'] += time.time() - start_time
        return analysis
