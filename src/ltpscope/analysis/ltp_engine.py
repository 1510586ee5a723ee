"""
LTP Confluence Engine

Combines key levels, multi-timeframe trend and patience candles into one
Levels / Trend / Patience report:

- level score from the proximity of the nearest key level
- trend score from the MTF alignment, adjusted for daily/intraday agreement
- patience score from the 5m / 15m / 1h patience-candle states
- weighted confluence score, letter grade, setup quality and a templated
  recommendation

The report is all-or-nothing: without a quote or an MTF analysis no report
is produced.
"""

import asyncio
import math
import time
from typing import Dict, List, Optional, Sequence

from ..config import LTPConfig
from ..logger import get_logger, get_market_adapter
from ..market_data.service import MarketDataService
from ..models.analysis import (
    Grade,
    LessonReference,
    LevelProximity,
    LevelsSummary,
    LTPAnalysis,
    MarketSnapshot,
    MTFAnalysis,
    PatienceCandle,
    PatienceSummary,
    PricePosition,
    SetupQuality,
    TrendAlignment,
    TrendDirection,
    TrendSummary,
    TrendTimeframe,
    VwapPosition,
)
from ..models.levels import KeyLevel, LevelType
from ..models.market_data import Quote
from .indicators import round_half_up
from .key_levels import KeyLevelDetector
from .lessons import LessonProvider, NullLessonProvider
from .patience import detect_patience_candle
from .trend import TrendAnalyzer

logger = get_logger(__name__)

NEAREST_LEVELS = 4
PATIENCE_BAR_LIMIT = 50
SMA200_BAND = 0.002
VWAP_BAND = 0.001
SNAPSHOT_CHANGE_PCT = 0.5

# (confirmed, forming) bonus per timeframe
PATIENCE_BONUS = {
    "5m": (20, 10),
    "15m": (25, 12),
    "1h": (15, 8),
}
PATIENCE_BASE = 40

GRADE_THRESHOLDS = (
    (90, Grade.A_PLUS),
    (80, Grade.A),
    (70, Grade.B),
    (60, Grade.C),
    (50, Grade.D),
)


def _level_price(levels: Sequence[KeyLevel], level_type: LevelType) -> Optional[float]:
    for level in levels:
        if level.type == level_type:
            return level.price
    return None


def _band_position(price: float, reference: Optional[float], band: float) -> Optional[PricePosition]:
    if reference is None:
        return None
    if price > reference + band:
        return PricePosition.ABOVE
    if price < reference - band:
        return PricePosition.BELOW
    return PricePosition.AT


def vwap_position(price: float, vwap: Optional[float]) -> VwapPosition:
    if vwap is None:
        return VwapPosition.AT_VWAP
    if price > vwap * (1 + VWAP_BAND):
        return VwapPosition.ABOVE_VWAP
    if price < vwap * (1 - VWAP_BAND):
        return VwapPosition.BELOW_VWAP
    return VwapPosition.AT_VWAP


def level_proximity(levels: Sequence[KeyLevel], config: LTPConfig) -> LevelProximity:
    nearest = min((level.abs_distance for level in levels), default=math.inf)
    if nearest < config.at_level_pct:
        return LevelProximity.AT_LEVEL
    if nearest < config.near_level_pct:
        return LevelProximity.NEAR_LEVEL
    return LevelProximity.BETWEEN_LEVELS


def score_levels(levels: Sequence[KeyLevel], proximity: LevelProximity) -> int:
    """
    Level score: 50 between levels, 65 near a level, and the nearest
    level's strength plus 10 (at most 95) at a level.

    Args:
        levels: Key levels sorted by absolute distance
        proximity: Proximity of the nearest level

    Returns:
        Level score in [0, 100]
    """
    if proximity == LevelProximity.AT_LEVEL:
        return min(95, levels[0].strength + 10) if levels else 70
    if proximity == LevelProximity.NEAR_LEVEL:
        return 65
    return 50


def score_trend(mtf: MTFAnalysis) -> TrendSummary:
    """Trend summary with the MTF alignment score adjusted for daily/intraday agreement."""
    daily = mtf.trend_for(TrendTimeframe.DAILY)
    daily_trend = daily.trend if daily is not None else TrendDirection.NEUTRAL
    intraday_trend = mtf.overall_bias

    if (daily_trend == intraday_trend
            or TrendDirection.NEUTRAL in (daily_trend, intraday_trend)):
        alignment = TrendAlignment.ALIGNED
    else:
        alignment = TrendAlignment.CONFLICTING

    score = mtf.alignment_score
    if alignment == TrendAlignment.ALIGNED and daily_trend != TrendDirection.NEUTRAL:
        score = min(100, score + 10)
    elif alignment == TrendAlignment.CONFLICTING:
        score = max(30, score - 20)

    return TrendSummary(
        mtf=mtf,
        daily_trend=daily_trend,
        intraday_trend=intraday_trend,
        trend_alignment=alignment,
        trend_score=score
    )


def score_patience(candles: Dict[str, Optional[PatienceCandle]]) -> int:
    """
    Patience score from per-timeframe candle states.

    Args:
        candles: Candle state keyed by "5m", "15m" and "1h"

    Returns:
        Score starting at 40, capped at 100
    """
    score = PATIENCE_BASE
    for timeframe, (confirmed_bonus, forming_bonus) in PATIENCE_BONUS.items():
        candle = candles.get(timeframe)
        if candle is None:
            continue
        if candle.confirmed:
            score += confirmed_bonus
        elif candle.forming:
            score += forming_bonus
    return min(100, score)


def confluence_score(level_score: int, trend_score: int, patience_score: int,
                     config: Optional[LTPConfig] = None) -> int:
    config = config or LTPConfig()
    weighted = (
        level_score * config.level_weight
        + trend_score * config.trend_weight
        + patience_score * config.patience_weight
    )
    return max(0, min(100, round_half_up(weighted)))


def grade_for(score: int) -> Grade:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return Grade.F


def setup_quality_for(grade: Grade) -> SetupQuality:
    if grade in (Grade.A_PLUS, Grade.A):
        return SetupQuality.STRONG
    if grade in (Grade.B, Grade.C):
        return SetupQuality.MODERATE
    if grade == Grade.D:
        return SetupQuality.WEAK
    return SetupQuality.NO_SETUP


def build_recommendation(
    quality: SetupQuality,
    trend: TrendSummary,
    proximity: LevelProximity,
    patience: PatienceSummary
) -> str:
    """Templated recommendation citing bias, level proximity and patience state."""
    bias = trend.intraday_trend.value
    conflicting = trend.trend_alignment == TrendAlignment.CONFLICTING
    between_levels = proximity == LevelProximity.BETWEEN_LEVELS

    if quality == SetupQuality.STRONG:
        where = "key level" if proximity == LevelProximity.AT_LEVEL else "level zone"
        if patience.candle_15m is not None and patience.candle_15m.confirmed:
            timing = "Patience confirmed."
        elif patience.candle_5m is not None and patience.candle_5m.forming:
            timing = "Watch for patience confirmation."
        else:
            timing = "Wait for patience candle."
        return f"{bias.upper()} setup at {where}. MTF aligned. {timing}"

    if quality == SetupQuality.MODERATE:
        parts = [f"Potential {bias} setup forming."]
        if conflicting:
            parts.append("Caution: MTF conflict.")
        if between_levels:
            parts.append("Not at a key level yet.")
        parts.append("Wait for better confluence.")
        return " ".join(parts)

    if quality == SetupQuality.WEAK:
        parts = ["Weak setup conditions."]
        if conflicting:
            parts.append("Timeframes conflicting.")
        if between_levels:
            parts.append("Price between levels.")
        parts.append("No trade recommended.")
        return " ".join(parts)

    return "No clear setup. Wait for price to reach a key level with trend alignment."


def lesson_query(analysis: LTPAnalysis) -> str:
    """Free-text query describing the weak spots of a setup."""
    terms = ["ltp"]
    if analysis.levels.level_proximity != LevelProximity.AT_LEVEL:
        terms.append("key levels")
    if analysis.trend.trend_alignment == TrendAlignment.CONFLICTING:
        terms.append("trend multi timeframe")
    if analysis.patience.patience_score < 60:
        terms.append("patience candle")
    if analysis.setup_quality in (SetupQuality.WEAK, SetupQuality.NO_SETUP):
        terms.append("risk management")
    return " ".join(terms)


def build_ltp_analysis(
    symbol: str,
    quote: Quote,
    levels: Sequence[KeyLevel],
    mtf: MTFAnalysis,
    candles: Dict[str, Optional[PatienceCandle]],
    config: Optional[LTPConfig] = None
) -> LTPAnalysis:
    """
    Combine fetched inputs into an LTP report.

    Args:
        symbol: Ticker symbol
        quote: Current quote
        levels: Key levels sorted by absolute distance
        mtf: Multi-timeframe analysis
        candles: Patience-candle state keyed by "5m", "15m" and "1h"
        config: Thresholds and weights

    Returns:
        LTPAnalysis without related lessons
    """
    config = config or LTPConfig()
    price = quote.price

    vwap = _level_price(levels, LevelType.VWAP) or (quote.vwap or None)
    sma200 = _level_price(levels, LevelType.SMA200)
    proximity = level_proximity(levels, config)

    levels_summary = LevelsSummary(
        nearest=list(levels[:NEAREST_LEVELS]),
        pdh=_level_price(levels, LevelType.PDH),
        pdl=_level_price(levels, LevelType.PDL),
        vwap=vwap,
        orb_high=_level_price(levels, LevelType.ORB_HIGH),
        orb_low=_level_price(levels, LevelType.ORB_LOW),
        ema9=_level_price(levels, LevelType.EMA9),
        ema21=_level_price(levels, LevelType.EMA21),
        sma200=sma200,
        pmh=_level_price(levels, LevelType.PMH),
        pml=_level_price(levels, LevelType.PML),
        price_vs_sma200=_band_position(price, sma200, price * SMA200_BAND),
        price_position=vwap_position(price, vwap),
        level_proximity=proximity,
        level_score=score_levels(levels, proximity)
    )

    trend_summary = score_trend(mtf)

    patience_summary = PatienceSummary(
        candle_5m=candles.get("5m"),
        candle_15m=candles.get("15m"),
        candle_1h=candles.get("1h"),
        patience_score=score_patience(candles)
    )

    score = confluence_score(
        levels_summary.level_score,
        trend_summary.trend_score,
        patience_summary.patience_score,
        config
    )
    grade = grade_for(score)
    quality = setup_quality_for(grade)

    return LTPAnalysis(
        symbol=symbol,
        levels=levels_summary,
        trend=trend_summary,
        patience=patience_summary,
        confluence_score=score,
        grade=grade,
        setup_quality=quality,
        recommendation=build_recommendation(quality, trend_summary, proximity, patience_summary)
    )


def snapshot_trend(quote: Quote, levels: Sequence[KeyLevel]) -> TrendDirection:
    """Short-term trend from price vs daily EMA9/EMA21, else from the day's change."""
    ema9 = _level_price(levels, LevelType.EMA9)
    ema21 = _level_price(levels, LevelType.EMA21)
    if ema9 is not None and ema21 is not None:
        if quote.price > ema9 > ema21:
            return TrendDirection.BULLISH
        if quote.price < ema9 < ema21:
            return TrendDirection.BEARISH
        return TrendDirection.NEUTRAL
    if quote.change_percent > SNAPSHOT_CHANGE_PCT:
        return TrendDirection.BULLISH
    if quote.change_percent < -SNAPSHOT_CHANGE_PCT:
        return TrendDirection.BEARISH
    return TrendDirection.NEUTRAL


class LTPEngine:
    """
    Runs the level, trend and patience analyzers concurrently and grades
    the resulting confluence.
    """

    def __init__(
        self,
        market_data: MarketDataService,
        key_levels: KeyLevelDetector,
        trend: TrendAnalyzer,
        config: Optional[LTPConfig] = None,
        lessons: Optional[LessonProvider] = None,
        cache_ttl: Optional[int] = None
    ):
        self.market_data = market_data
        self.key_levels = key_levels
        self.trend = trend
        self.config = config or LTPConfig()
        self.lessons = lessons or NullLessonProvider()
        self.cache_ttl = cache_ttl or market_data.ttl.snapshot_ttl
        self.performance_stats = {
            'analyses_completed': 0,
            'analyses_unavailable': 0,
            'total_analysis_time': 0.0,
        }

    async def get_ltp_analysis(self, symbol: str) -> Optional[LTPAnalysis]:
        """
        LTP report for ``symbol``, cached under ``ltp:SYMBOL``.

        Returns:
            LTPAnalysis, or None when the quote or MTF analysis is unavailable
        """
        symbol = symbol.upper()
        try:
            return await self.market_data.cache.get_or_compute(
                f"ltp:{symbol}",
                self.cache_ttl,
                lambda: self._compute(symbol),
                schema=LTPAnalysis
            )
        except Exception as e:
            logger.error(f"LTP analysis failed for {symbol}: {e}")
            return None

    async def _compute(self, symbol: str) -> Optional[LTPAnalysis]:
        start_time = time.time()
        log = get_market_adapter(__name__, symbol=symbol)

        quote, levels, mtf, bars_5m, bars_15m, bars_1h = await asyncio.gather(
            self.market_data.get_quote(symbol),
            self.key_levels.get_key_levels(symbol),
            self.trend.get_mtf_analysis(symbol),
            self.market_data.get_aggregates(symbol, "5", PATIENCE_BAR_LIMIT),
            self.market_data.get_aggregates(symbol, "15", PATIENCE_BAR_LIMIT),
            self.market_data.get_aggregates(symbol, "60", PATIENCE_BAR_LIMIT)
        )

        if quote is None or mtf is None:
            self.performance_stats['analyses_unavailable'] += 1
            log.debug(f"LTP analysis unavailable: quote={quote is not None} mtf={mtf is not None}")
            return None

        candles = {
            "5m": detect_patience_candle(bars_5m),
            "15m": detect_patience_candle(bars_15m),
            "1h": detect_patience_candle(bars_1h),
        }
        analysis = build_ltp_analysis(symbol, quote, levels, mtf, candles, self.config)

        lessons = self._related_lessons(analysis)
        if lessons:
            analysis = analysis.model_copy(update={'related_lessons': lessons})

        self.performance_stats['analyses_completed'] += 1
        self.performance_stats['total_analysis_time'] += time.time() - start_time
        log.info(f"LTP {analysis.grade.value} ({analysis.confluence_score}) {analysis.setup_quality.value}")
        return analysis

    def _related_lessons(self, analysis: LTPAnalysis) -> List[LessonReference]:
        try:
            return self.lessons.find_relevant_lessons(lesson_query(analysis))
        except Exception as e:
            logger.warning(f"Lesson lookup failed for {analysis.symbol}: {e}")
            return []

    async def get_market_snapshot(self, symbol: str) -> Optional[MarketSnapshot]:
        """Quote, key levels, short-term trend and the 5m patience candle."""
        symbol = symbol.upper()
        quote, levels, bars_5m = await asyncio.gather(
            self.market_data.get_quote(symbol),
            self.key_levels.get_key_levels(symbol),
            self.market_data.get_intraday_bars(symbol, 5)
        )
        if quote is None:
            return None

        return MarketSnapshot(
            symbol=symbol,
            quote=quote,
            key_levels=levels,
            trend=snapshot_trend(quote, levels),
            vwap=quote.vwap,
            patience_candle=detect_patience_candle(bars_5m)
        )

    async def get_market_snapshots(self, symbols: Sequence[str]) -> Dict[str, MarketSnapshot]:
        snapshots = await asyncio.gather(*(self.get_market_snapshot(s) for s in symbols))
        return {s.symbol: s for s in snapshots if s is not None}
