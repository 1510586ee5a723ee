"""
Unit tests for the LTP confluence engine.
"""

from typing import List, Optional
from unittest.mock import AsyncMock

import pytest

from ltpscope.analysis.key_levels import KeyLevelDetector, make_level
from ltpscope.analysis.lessons import CatalogLesson, StaticLessonProvider
from ltpscope.analysis.ltp_engine import (
    LTPEngine,
    build_ltp_analysis,
    build_recommendation,
    confluence_score,
    grade_for,
    lesson_query,
    level_proximity,
    score_levels,
    score_patience,
    score_trend,
    setup_quality_for,
    snapshot_trend,
    vwap_position,
)
from ltpscope.analysis.trend import TrendAnalyzer
from ltpscope.config import LTPConfig
from ltpscope.market_data.service import MarketDataService
from ltpscope.models.analysis import (
    CandleDirection,
    EmaAlignment,
    Grade,
    LevelProximity,
    MTFAnalysis,
    PatienceCandle,
    PatienceSummary,
    PricePosition,
    SetupQuality,
    TimeframeTrend,
    TrendAlignment,
    TrendDirection,
    TrendTimeframe,
    VwapPosition,
)
from ltpscope.models.levels import KeyLevel, LevelType
from ltpscope.models.market_data import Quote


def mtf_analysis(bias: TrendDirection, score: int, daily: Optional[TrendDirection]) -> MTFAnalysis:
    timeframes = [
        TimeframeTrend(
            timeframe=TrendTimeframe.FIVE_MINUTES,
            trend=bias,
            ema9=100.0,
            ema21=99.0,
            price_vs_ema9=PricePosition.ABOVE,
            price_vs_ema21=PricePosition.ABOVE,
            ema_alignment=EmaAlignment.BULLISH
        )
    ]
    if daily is not None:
        timeframes.append(TimeframeTrend(
            timeframe=TrendTimeframe.DAILY,
            trend=daily,
            ema9=100.0,
            ema21=99.0,
            price_vs_ema9=PricePosition.ABOVE,
            price_vs_ema21=PricePosition.ABOVE,
            ema_alignment=EmaAlignment.BULLISH
        ))
    return MTFAnalysis(
        symbol="SPY",
        current_price=500.0,
        timeframes=timeframes,
        overall_bias=bias,
        alignment_score=score
    )


def candle(confirmed: bool = False, forming: bool = False) -> PatienceCandle:
    return PatienceCandle(forming=forming or confirmed, confirmed=confirmed, direction=CandleDirection.BULLISH)


@pytest.fixture
def at_vwap_levels() -> List[KeyLevel]:
    return [
        make_level(LevelType.VWAP, 499.5, 500.0),
        make_level(LevelType.PDH, 502.0, 500.0),
        make_level(LevelType.EMA9, 497.0, 500.0),
        make_level(LevelType.EMA21, 490.0, 500.0),
        make_level(LevelType.SMA200, 450.0, 500.0),
    ]


class TestLevelScoring:
    """Test level proximity and level score."""

    def test_proximity_bands(self) -> None:
        """Test the at / near / between thresholds."""
        config = LTPConfig()

        assert level_proximity([make_level(LevelType.PDH, 500.0, 500.0)], config) == LevelProximity.AT_LEVEL
        assert level_proximity([make_level(LevelType.PDH, 501.0, 500.0)], config) == LevelProximity.AT_LEVEL
        assert level_proximity([make_level(LevelType.PDH, 502.5, 500.0)], config) == LevelProximity.NEAR_LEVEL
        assert level_proximity([make_level(LevelType.PDH, 510.0, 500.0)], config) == LevelProximity.BETWEEN_LEVELS
        assert level_proximity([], config) == LevelProximity.BETWEEN_LEVELS

    def test_thresholds_are_configurable(self) -> None:
        """Test that widening the at band reclassifies a level."""
        config = LTPConfig(at_level_pct=1.0, near_level_pct=2.0)
        assert level_proximity([make_level(LevelType.PDH, 502.5, 500.0)], config) == LevelProximity.AT_LEVEL

    def test_at_level_score_capped_at_95(self, at_vwap_levels: List[KeyLevel]) -> None:
        """Test that a strength-90 level at price scores 95, not 100."""
        assert score_levels(at_vwap_levels, LevelProximity.AT_LEVEL) == 95

    def test_at_level_score_adds_ten(self) -> None:
        """Test that a strength-70 level at price scores 80."""
        levels = [make_level(LevelType.EMA9, 500.0, 500.0)]
        assert score_levels(levels, LevelProximity.AT_LEVEL) == 80

    def test_near_and_between_scores(self, at_vwap_levels: List[KeyLevel]) -> None:
        """Test the fixed near and between scores."""
        assert score_levels(at_vwap_levels, LevelProximity.NEAR_LEVEL) == 65
        assert score_levels(at_vwap_levels, LevelProximity.BETWEEN_LEVELS) == 50

    def test_vwap_position(self) -> None:
        """Test the 0.1% VWAP band."""
        assert vwap_position(500.0, 499.0) == VwapPosition.ABOVE_VWAP
        assert vwap_position(500.0, 501.0) == VwapPosition.BELOW_VWAP
        assert vwap_position(500.0, 500.2) == VwapPosition.AT_VWAP
        assert vwap_position(500.0, None) == VwapPosition.AT_VWAP


class TestTrendScoring:
    """Test daily / intraday agreement adjustments."""

    def test_aligned_with_daily_adds_ten(self) -> None:
        """Test that agreeing daily and intraday trends add 10."""
        summary = score_trend(mtf_analysis(TrendDirection.BULLISH, 75, TrendDirection.BULLISH))

        assert summary.trend_alignment == TrendAlignment.ALIGNED
        assert summary.trend_score == 85

    def test_aligned_bonus_capped(self) -> None:
        """Test that the aligned bonus never exceeds 100."""
        summary = score_trend(mtf_analysis(TrendDirection.BULLISH, 100, TrendDirection.BULLISH))
        assert summary.trend_score == 100

    def test_conflict_subtracts_twenty(self) -> None:
        """Test that opposing daily and intraday trends subtract 20."""
        summary = score_trend(mtf_analysis(TrendDirection.BULLISH, 75, TrendDirection.BEARISH))

        assert summary.trend_alignment == TrendAlignment.CONFLICTING
        assert summary.trend_score == 55

    def test_conflict_floor_is_30(self) -> None:
        """Test that a conflicting trend never scores below 30."""
        summary = score_trend(mtf_analysis(TrendDirection.BEARISH, 40, TrendDirection.BULLISH))
        assert summary.trend_score == 30

    def test_missing_daily_is_neutral(self) -> None:
        """Test that no daily timeframe counts as neutral and leaves the score unchanged."""
        summary = score_trend(mtf_analysis(TrendDirection.BULLISH, 75, None))

        assert summary.daily_trend == TrendDirection.NEUTRAL
        assert summary.trend_alignment == TrendAlignment.ALIGNED
        assert summary.trend_score == 75


class TestPatienceScoring:
    """Test patience score bonuses."""

    def test_no_candles_scores_base(self) -> None:
        """Test that no patience data scores 40."""
        assert score_patience({"5m": None, "15m": None, "1h": None}) == 40

    def test_all_confirmed_scores_100(self) -> None:
        """Test that confirmed candles on every timeframe reach 100."""
        candles = {"5m": candle(confirmed=True), "15m": candle(confirmed=True), "1h": candle(confirmed=True)}
        assert score_patience(candles) == 100

    def test_mixed_states(self) -> None:
        """Test forming and confirmed bonuses per timeframe."""
        candles = {"5m": candle(), "15m": candle(confirmed=True), "1h": candle(forming=True)}
        assert score_patience(candles) == 73


class TestGrading:
    """Test confluence, grades and setup quality."""

    def test_confluence_rounds_half_up(self) -> None:
        """Test that a weighted 46.5 rounds to 47."""
        assert confluence_score(50, 45, 44) == 47

    def test_confluence_respects_custom_weights(self) -> None:
        """Test that configured weights are applied."""
        config = LTPConfig(level_weight=0.5, trend_weight=0.25, patience_weight=0.25)
        assert confluence_score(80, 40, 40, config) == 60

    @pytest.mark.parametrize("score,grade", [
        (100, Grade.A_PLUS),
        (90, Grade.A_PLUS),
        (89, Grade.A),
        (80, Grade.A),
        (79, Grade.B),
        (70, Grade.B),
        (60, Grade.C),
        (50, Grade.D),
        (49, Grade.F),
        (0, Grade.F),
    ])
    def test_grade_thresholds(self, score: int, grade: Grade) -> None:
        """Test grade boundaries."""
        assert grade_for(score) == grade

    def test_setup_quality_mapping(self) -> None:
        """Test that grades map onto setup quality."""
        assert setup_quality_for(Grade.A_PLUS) == SetupQuality.STRONG
        assert setup_quality_for(Grade.A) == SetupQuality.STRONG
        assert setup_quality_for(Grade.B) == SetupQuality.MODERATE
        assert setup_quality_for(Grade.C) == SetupQuality.MODERATE
        assert setup_quality_for(Grade.D) == SetupQuality.WEAK
        assert setup_quality_for(Grade.F) == SetupQuality.NO_SETUP


class TestRecommendation:
    """Test recommendation templates."""

    def test_moderate_with_conflict_between_levels(self) -> None:
        """Test that moderate setups cite the conflict and missing level."""
        trend = score_trend(mtf_analysis(TrendDirection.BULLISH, 75, TrendDirection.BEARISH))
        patience = PatienceSummary(patience_score=40)

        text = build_recommendation(SetupQuality.MODERATE, trend, LevelProximity.BETWEEN_LEVELS, patience)

        assert text == (
            "Potential bullish setup forming. Caution: MTF conflict. "
            "Not at a key level yet. Wait for better confluence."
        )

    def test_strong_watching_5m(self) -> None:
        """Test that a forming 5m candle asks to watch for confirmation."""
        trend = score_trend(mtf_analysis(TrendDirection.BEARISH, 100, TrendDirection.BEARISH))
        patience = PatienceSummary(candle_5m=candle(forming=True), patience_score=50)

        text = build_recommendation(SetupQuality.STRONG, trend, LevelProximity.NEAR_LEVEL, patience)

        assert text == "BEARISH setup at level zone. MTF aligned. Watch for patience confirmation."

    def test_weak_setup(self) -> None:
        """Test the weak template."""
        trend = score_trend(mtf_analysis(TrendDirection.BULLISH, 50, None))
        text = build_recommendation(SetupQuality.WEAK, trend, LevelProximity.BETWEEN_LEVELS,
                                    PatienceSummary(patience_score=40))
        assert text == "Weak setup conditions. Price between levels. No trade recommended."

    def test_no_setup(self) -> None:
        """Test the no-setup template."""
        trend = score_trend(mtf_analysis(TrendDirection.NEUTRAL, 50, None))
        text = build_recommendation(SetupQuality.NO_SETUP, trend, LevelProximity.BETWEEN_LEVELS,
                                    PatienceSummary(patience_score=40))
        assert text.startswith("No clear setup.")


class TestBuildAnalysis:
    """Test report assembly from fetched inputs."""

    def test_strong_setup_at_vwap(self, sample_quote: Quote, at_vwap_levels: List[KeyLevel]) -> None:
        """Test an A+ report at VWAP with a confirmed 15m patience candle."""
        mtf = mtf_analysis(TrendDirection.BULLISH, 100, TrendDirection.BULLISH)
        candles = {"5m": None, "15m": candle(confirmed=True), "1h": None}

        analysis = build_ltp_analysis("SPY", sample_quote, at_vwap_levels, mtf, candles)

        assert analysis.levels.level_proximity == LevelProximity.AT_LEVEL
        assert analysis.levels.level_score == 95
        assert analysis.levels.vwap == 499.5
        assert analysis.levels.price_position == VwapPosition.ABOVE_VWAP
        assert analysis.levels.price_vs_sma200 == PricePosition.ABOVE
        assert len(analysis.levels.nearest) == 4
        assert analysis.trend.trend_score == 100
        assert analysis.patience.patience_score == 65
        assert analysis.confluence_score == 90
        assert analysis.grade == Grade.A_PLUS
        assert analysis.setup_quality == SetupQuality.STRONG
        assert analysis.recommendation == "BULLISH setup at key level. MTF aligned. Patience confirmed."

    def test_vwap_falls_back_to_quote(self, sample_quote: Quote) -> None:
        """Test that the quote VWAP is used when no VWAP level exists."""
        mtf = mtf_analysis(TrendDirection.NEUTRAL, 50, None)

        analysis = build_ltp_analysis("SPY", sample_quote, [], mtf, {})

        assert analysis.levels.vwap == 499.0
        assert analysis.levels.level_proximity == LevelProximity.BETWEEN_LEVELS
        assert analysis.levels.pdh is None

    def test_lesson_query_targets_weak_spots(self, sample_quote: Quote) -> None:
        """Test that the lesson query names what the setup is missing."""
        mtf = mtf_analysis(TrendDirection.BULLISH, 50, TrendDirection.BEARISH)
        analysis = build_ltp_analysis("SPY", sample_quote, [], mtf, {})

        query = lesson_query(analysis)

        assert "key levels" in query
        assert "trend multi timeframe" in query
        assert "patience candle" in query
        assert "risk management" in query


class TestSnapshotTrend:
    """Test the short-term snapshot trend."""

    def test_price_above_stacked_emas(self, sample_quote: Quote) -> None:
        """Test that price > EMA9 > EMA21 is bullish."""
        levels = [make_level(LevelType.EMA9, 497.0, 500.0), make_level(LevelType.EMA21, 490.0, 500.0)]
        assert snapshot_trend(sample_quote, levels) == TrendDirection.BULLISH

    def test_falls_back_to_change_percent(self) -> None:
        """Test that without EMAs the day's change decides."""
        quote = Quote(symbol="SPY", price=100.0, change_percent=-0.8)
        assert snapshot_trend(quote, []) == TrendDirection.BEARISH
        assert snapshot_trend(quote.model_copy(update={'change_percent': 0.2}), []) == TrendDirection.NEUTRAL


class TestLTPEngine:
    """Test the async engine end to end over stubbed analyzers."""

    @pytest.fixture
    def key_levels(self, at_vwap_levels: List[KeyLevel]) -> AsyncMock:
        detector = AsyncMock(spec=KeyLevelDetector)
        detector.get_key_levels.return_value = at_vwap_levels
        return detector

    @pytest.fixture
    def trend(self) -> AsyncMock:
        analyzer = AsyncMock(spec=TrendAnalyzer)
        analyzer.get_mtf_analysis.return_value = mtf_analysis(TrendDirection.BULLISH, 100, TrendDirection.BULLISH)
        return analyzer

    @pytest.mark.asyncio
    async def test_analysis_cached_per_symbol(
        self, market_data: MarketDataService, mock_client: AsyncMock, sample_quote: Quote,
        key_levels: AsyncMock, trend: AsyncMock
    ) -> None:
        """Test that a report is computed once and then served from cache."""
        mock_client.get_quote.return_value = sample_quote
        engine = LTPEngine(market_data, key_levels, trend)

        first = await engine.get_ltp_analysis("spy")
        second = await engine.get_ltp_analysis("SPY")

        assert first is not None
        assert first.symbol == "SPY"
        assert first.levels.level_score == 95
        assert first.patience.patience_score == 40
        assert second == first
        assert trend.get_mtf_analysis.await_count == 1
        assert engine.performance_stats['analyses_completed'] == 1

    @pytest.mark.asyncio
    async def test_missing_quote_gives_none(
        self, market_data: MarketDataService, key_levels: AsyncMock, trend: AsyncMock
    ) -> None:
        """Test that no quote means no report."""
        engine = LTPEngine(market_data, key_levels, trend)

        assert await engine.get_ltp_analysis("SPY") is None
        assert engine.performance_stats['analyses_unavailable'] == 1

    @pytest.mark.asyncio
    async def test_missing_mtf_gives_none(
        self, market_data: MarketDataService, mock_client: AsyncMock, sample_quote: Quote,
        key_levels: AsyncMock, trend: AsyncMock
    ) -> None:
        """Test that no trend analysis means no report."""
        mock_client.get_quote.return_value = sample_quote
        trend.get_mtf_analysis.return_value = None

        assert await LTPEngine(market_data, key_levels, trend).get_ltp_analysis("SPY") is None

    @pytest.mark.asyncio
    async def test_analyzer_error_gives_none(
        self, market_data: MarketDataService, mock_client: AsyncMock, sample_quote: Quote,
        key_levels: AsyncMock, trend: AsyncMock
    ) -> None:
        """Test that an analyzer exception is contained."""
        mock_client.get_quote.return_value = sample_quote
        key_levels.get_key_levels.side_effect = RuntimeError("boom")

        assert await LTPEngine(market_data, key_levels, trend).get_ltp_analysis("SPY") is None

    @pytest.mark.asyncio
    async def test_related_lessons_attached(
        self, market_data: MarketDataService, mock_client: AsyncMock, sample_quote: Quote,
        key_levels: AsyncMock, trend: AsyncMock
    ) -> None:
        """Test that matching lessons are attached to the report."""
        mock_client.get_quote.return_value = sample_quote
        lessons = StaticLessonProvider([
            CatalogLesson(
                module_slug="ltp-framework",
                module_title="The LTP Framework",
                lesson_slug="patience-candles",
                title="Patience Candles",
                description="Waiting for the consolidation bar"
            )
        ])

        analysis = await LTPEngine(market_data, key_levels, trend, lessons=lessons).get_ltp_analysis("SPY")

        assert [lesson.lesson_slug for lesson in analysis.related_lessons] == ["patience-candles"]

    @pytest.mark.asyncio
    async def test_market_snapshot(
        self, market_data: MarketDataService, mock_client: AsyncMock, sample_quote: Quote,
        key_levels: AsyncMock, trend: AsyncMock
    ) -> None:
        """Test that a snapshot combines quote, levels and short-term trend."""
        mock_client.get_quote.return_value = sample_quote
        engine = LTPEngine(market_data, key_levels, trend)

        snapshots = await engine.get_market_snapshots(["spy", "qqq"])

        assert list(snapshots) == ["SPY", "QQQ"]
        snapshot = snapshots["SPY"]
        assert snapshot.trend == TrendDirection.BULLISH
        assert snapshot.vwap == 499.0
        assert snapshot.patience_candle is None
        assert len(snapshot.key_levels) == 5
