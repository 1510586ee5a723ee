"""
Unit tests for lesson providers.
"""

from pathlib import Path

import pytest

from ltpscope.analysis.lessons import (
    NullLessonProvider,
    StaticLessonProvider,
    build_lesson_provider,
)

CATALOG = """
modules:
  - slug: ltp-framework
    title: The LTP Framework
    lessons:
      - slug: patience-candles
        title: Patience Candles
        description: Waiting for the consolidation bar before entry
        key_takeaways:
          - A patience candle has a small body and low volume
      - slug: trend-alignment
        title: Trend Alignment
        description: Trading with the higher timeframes
  - slug: levels
    lessons:
      - slug: key-levels
        title: Key Levels
        description: Where price reacts, including patience at support
"""


@pytest.fixture
def catalog_path(temp_dir: Path) -> Path:
    path = temp_dir / "lessons.yaml"
    path.write_text(CATALOG, encoding="utf-8")
    return path


class TestStaticLessonProvider:
    """Test catalog loading and keyword ranking."""

    def test_from_yaml(self, catalog_path: Path) -> None:
        """Test that every lesson in every module is loaded."""
        provider = StaticLessonProvider.from_yaml(catalog_path)

        assert [lesson.lesson_slug for lesson in provider.lessons] == [
            "patience-candles", "trend-alignment", "key-levels"
        ]
        assert provider.lessons[2].module_title == "levels"

    def test_title_matches_rank_first(self, catalog_path: Path) -> None:
        """Test that a keyword in the title outranks one in the description."""
        provider = StaticLessonProvider.from_yaml(catalog_path)

        results = provider.find_relevant_lessons("patience", limit=3)

        assert [r.lesson_slug for r in results] == ["patience-candles", "key-levels"]
        assert results[0].relevance == 3
        assert results[1].relevance == 1
        assert results[0].path == "ltp-framework/patience-candles"

    def test_limit_and_short_words(self, catalog_path: Path) -> None:
        """Test the result limit and that short words are ignored."""
        provider = StaticLessonProvider.from_yaml(catalog_path)

        assert provider.find_relevant_lessons("a to of", limit=3) == []
        assert len(provider.find_relevant_lessons("trend levels patience", limit=1)) == 1


class TestBuildLessonProvider:
    """Test provider selection."""

    def test_no_catalog_configured(self) -> None:
        """Test that no path gives the null provider."""
        provider = build_lesson_provider(None)

        assert isinstance(provider, NullLessonProvider)
        assert provider.find_relevant_lessons("patience") == []

    def test_missing_catalog_file(self, temp_dir: Path) -> None:
        """Test that a missing file falls back to the null provider."""
        assert isinstance(build_lesson_provider(temp_dir / "absent.yaml"), NullLessonProvider)

    def test_existing_catalog(self, catalog_path: Path) -> None:
        """Test that an existing file loads the static provider."""
        assert isinstance(build_lesson_provider(str(catalog_path)), StaticLessonProvider)
