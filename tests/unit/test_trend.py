"""
Unit tests for EMA trend classification and multi-timeframe alignment.
"""

from typing import List
from unittest.mock import AsyncMock

import pytest

from ltpscope.analysis.indicators import calculate_ema, calculate_vwap, round_half_up
from ltpscope.analysis.trend import TrendAnalyzer, analyze_alignment, classify_trend
from ltpscope.market_data.service import MarketDataService
from ltpscope.models.analysis import (
    EmaAlignment,
    PricePosition,
    TimeframeTrend,
    TrendDirection,
    TrendTimeframe,
)


def timeframe_trend(timeframe: TrendTimeframe, trend: TrendDirection) -> TimeframeTrend:
    return TimeframeTrend(
        timeframe=timeframe,
        trend=trend,
        ema9=100.0,
        ema21=100.0,
        price_vs_ema9=PricePosition.AT,
        price_vs_ema21=PricePosition.AT,
        ema_alignment=EmaAlignment.MIXED
    )


class TestIndicators:
    """Test indicator math."""

    def test_ema_of_constant_series(self, bars_from_closes) -> None:
        """Test that the EMA of a flat series equals the price."""
        bars = bars_from_closes([50.0] * 30)
        assert calculate_ema(bars, 9) == pytest.approx(50.0)

    def test_ema_needs_period_bars(self, bars_from_closes) -> None:
        """Test that too few bars give 0.0."""
        assert calculate_ema(bars_from_closes([1.0, 2.0]), 9) == 0.0

    def test_ema_seeded_with_sma(self, bars_from_closes) -> None:
        """Test the first EMA value is the SMA and later values are smoothed."""
        bars = bars_from_closes([1.0, 2.0, 3.0, 4.0])
        # seed (1+2+3)/3 = 2, then (4 - 2) * 0.5 + 2
        assert calculate_ema(bars, 3) == pytest.approx(3.0)

    def test_vwap_without_volume(self, bars_from_closes) -> None:
        """Test that VWAP is 0.0 when no volume traded."""
        assert calculate_vwap(bars_from_closes([10.0, 11.0], volume=0.0)) == 0.0

    def test_round_half_up(self) -> None:
        """Test that halves round up rather than to even."""
        assert round_half_up(2.5) == 3
        assert round_half_up(46.5) == 47
        assert round_half_up(46.49) == 46


class TestClassifyTrend:
    """Test single-timeframe trend classification."""

    def test_rising_series_is_bullish(self, bars_from_closes) -> None:
        """Test that price above rising EMAs is bullish."""
        bars = bars_from_closes([100.0 + i for i in range(30)])

        trend = classify_trend(bars, TrendTimeframe.FIVE_MINUTES)

        assert trend.trend == TrendDirection.BULLISH
        assert trend.ema_alignment == EmaAlignment.BULLISH
        assert trend.price_vs_ema9 == PricePosition.ABOVE
        assert trend.price_vs_ema21 == PricePosition.ABOVE

    def test_falling_series_is_bearish(self, bars_from_closes) -> None:
        """Test that price below falling EMAs is bearish."""
        bars = bars_from_closes([200.0 - i for i in range(30)])

        trend = classify_trend(bars, TrendTimeframe.DAILY)

        assert trend.trend == TrendDirection.BEARISH
        assert trend.ema_alignment == EmaAlignment.BEARISH

    def test_flat_series_is_neutral(self, bars_from_closes) -> None:
        """Test that price at both EMAs is neutral."""
        trend = classify_trend(bars_from_closes([100.0] * 30), TrendTimeframe.ONE_HOUR)

        assert trend.trend == TrendDirection.NEUTRAL
        assert trend.price_vs_ema9 == PricePosition.AT
        assert trend.ema_alignment == EmaAlignment.MIXED

    def test_insufficient_bars(self, bars_from_closes) -> None:
        """Test that fewer than 21 bars cannot be classified."""
        assert classify_trend(bars_from_closes([100.0] * 20), TrendTimeframe.ONE_HOUR) is None


class TestAnalyzeAlignment:
    """Test multi-timeframe voting."""

    def test_majority_bullish_scores_share(self) -> None:
        """Test that three bullish and one neutral timeframe score 75."""
        timeframes = [
            timeframe_trend(TrendTimeframe.FIVE_MINUTES, TrendDirection.BULLISH),
            timeframe_trend(TrendTimeframe.FIFTEEN_MINUTES, TrendDirection.BULLISH),
            timeframe_trend(TrendTimeframe.ONE_HOUR, TrendDirection.BULLISH),
            timeframe_trend(TrendTimeframe.DAILY, TrendDirection.NEUTRAL),
        ]

        mtf = analyze_alignment("spy", 500.0, timeframes)

        assert mtf.symbol == "SPY"
        assert mtf.overall_bias == TrendDirection.BULLISH
        assert mtf.alignment_score == 75
        assert mtf.conflicting_timeframes == []

    def test_unanimous_scores_100(self) -> None:
        """Test that a unanimous read scores 100."""
        timeframes = [timeframe_trend(tf, TrendDirection.BEARISH) for tf in TrendTimeframe]

        mtf = analyze_alignment("QQQ", 400.0, timeframes)

        assert mtf.overall_bias == TrendDirection.BEARISH
        assert mtf.alignment_score == 100

    def test_conflicting_timeframes_listed(self) -> None:
        """Test that timeframes against the bias are reported."""
        timeframes = [
            timeframe_trend(TrendTimeframe.FIVE_MINUTES, TrendDirection.BULLISH),
            timeframe_trend(TrendTimeframe.FIFTEEN_MINUTES, TrendDirection.BULLISH),
            timeframe_trend(TrendTimeframe.ONE_HOUR, TrendDirection.BEARISH),
            timeframe_trend(TrendTimeframe.DAILY, TrendDirection.NEUTRAL),
        ]

        mtf = analyze_alignment("SPY", 500.0, timeframes)

        assert mtf.overall_bias == TrendDirection.BULLISH
        assert mtf.alignment_score == 50
        assert mtf.conflicting_timeframes == [TrendTimeframe.ONE_HOUR]

    def test_tie_is_neutral(self) -> None:
        """Test that an even split is neutral at 50 with every directional timeframe conflicting."""
        timeframes = [
            timeframe_trend(TrendTimeframe.FIVE_MINUTES, TrendDirection.BULLISH),
            timeframe_trend(TrendTimeframe.FIFTEEN_MINUTES, TrendDirection.BEARISH),
        ]

        mtf = analyze_alignment("SPY", 500.0, timeframes)

        assert mtf.overall_bias == TrendDirection.NEUTRAL
        assert mtf.alignment_score == 50
        assert len(mtf.conflicting_timeframes) == 2

    def test_no_timeframes(self) -> None:
        """Test that no classifiable timeframe yields no analysis."""
        assert analyze_alignment("SPY", 500.0, []) is None


class TestTrendAnalyzer:
    """Test the cached MTF analyzer."""

    @pytest.mark.asyncio
    async def test_mtf_analysis_from_provider_bars(
        self, market_data: MarketDataService, mock_client: AsyncMock, sample_quote, bars_from_closes
    ) -> None:
        """Test that rising bars on every timeframe give a unanimous bullish read."""
        mock_client.get_quote.return_value = sample_quote
        mock_client.get_aggregates.return_value = bars_from_closes([100.0 + i for i in range(50)])

        analyzer = TrendAnalyzer(market_data)
        mtf = await analyzer.get_mtf_analysis("spy")

        assert mtf is not None
        assert mtf.current_price == 500.0
        assert [t.timeframe for t in mtf.timeframes] == [
            TrendTimeframe.FIVE_MINUTES,
            TrendTimeframe.FIFTEEN_MINUTES,
            TrendTimeframe.ONE_HOUR,
            TrendTimeframe.DAILY,
        ]
        assert mtf.overall_bias == TrendDirection.BULLISH
        assert mtf.alignment_score == 100

    @pytest.mark.asyncio
    async def test_mtf_analysis_cached(
        self, market_data: MarketDataService, mock_client: AsyncMock, sample_quote, bars_from_closes
    ) -> None:
        """Test that a second request within the TTL does not recompute."""
        mock_client.get_quote.return_value = sample_quote
        mock_client.get_aggregates.return_value = bars_from_closes([100.0 + i for i in range(50)])
        analyzer = TrendAnalyzer(market_data)

        first = await analyzer.get_mtf_analysis("SPY")
        second = await analyzer.get_mtf_analysis("SPY")

        assert first == second
        assert analyzer.performance_stats['cache_misses'] == 1

    @pytest.mark.asyncio
    async def test_no_quote_means_no_analysis(
        self, market_data: MarketDataService, mock_client: AsyncMock, bars_from_closes
    ) -> None:
        """Test that a missing quote yields None."""
        mock_client.get_aggregates.return_value = bars_from_closes([100.0] * 50)

        assert await TrendAnalyzer(market_data).get_mtf_analysis("SPY") is None
