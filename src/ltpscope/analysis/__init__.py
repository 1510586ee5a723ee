"""
Analysis engines: swing points, key levels, trend, patience candles and
the LTP confluence engine.
"""

from .key_levels import KeyLevelDetector, session_levels, sort_by_distance
from .lessons import LessonProvider, NullLessonProvider, StaticLessonProvider, build_lesson_provider
from .ltp_engine import LTPEngine, build_ltp_analysis, confluence_score, grade_for, setup_quality_for
from .patience import detect_patience_candle
from .swing_points import detect_swing_points, filter_nearby_levels, merge_mtf_levels
from .trend import TrendAnalyzer, analyze_alignment, classify_trend

__all__ = [
    "KeyLevelDetector",
    "LTPEngine",
    "LessonProvider",
    "NullLessonProvider",
    "StaticLessonProvider",
    "TrendAnalyzer",
    "analyze_alignment",
    "build_lesson_provider",
    "build_ltp_analysis",
    "classify_trend",
    "confluence_score",
    "detect_patience_candle",
    "detect_swing_points",
    "filter_nearby_levels",
    "grade_for",
    "merge_mtf_levels",
    "session_levels",
    "setup_quality_for",
    "sort_by_distance",
]
