"""
Lesson enrichment for LTP reports.

The confluence engine asks a ``LessonProvider`` for training material that
matches a setup's weak spots. The provider is chosen when the engine is
built: ``NullLessonProvider`` when no catalog is configured, or a
``StaticLessonProvider`` loaded from a YAML catalog::

    modules:
      - slug: ltp-framework
        title: The LTP Framework
        lessons:
          - slug: patience-candles
            title: Patience Candles
            description: Waiting for the consolidation bar before entry
            key_takeaways:
              - A patience candle has a small body and low volume
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence, Union

import yaml

from ..logger import get_logger
from ..models.analysis import LessonReference

logger = get_logger(__name__)


class LessonProvider(ABC):
    """Looks up lessons relevant to a free-text query."""

    @abstractmethod
    def find_relevant_lessons(self, query: str, limit: int = 3) -> List[LessonReference]:
        """Return up to ``limit`` lessons, most relevant first."""


class NullLessonProvider(LessonProvider):
    """Provider used when no lesson catalog is configured."""

    def find_relevant_lessons(self, query: str, limit: int = 3) -> List[LessonReference]:
        return []


@dataclass(frozen=True)
class CatalogLesson:
    module_slug: str
    module_title: str
    lesson_slug: str
    title: str
    description: str = ""
    key_takeaways: Sequence[str] = field(default_factory=tuple)

    @property
    def search_text(self) -> str:
        return " ".join([self.title, self.description, *self.key_takeaways]).lower()


def _keywords(query: str) -> List[str]:
    cleaned = re.sub(r"[^\w\s]", "", query.lower())
    return [word for word in cleaned.split() if len(word) > 2]


class StaticLessonProvider(LessonProvider):
    """
    Keyword matcher over an in-memory lesson catalog.

    Each query keyword found in a lesson's title, description or takeaways
    scores 1, plus 2 more when it appears in the title.
    """

    def __init__(self, lessons: Sequence[CatalogLesson]):
        self.lessons = list(lessons)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "StaticLessonProvider":
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f) or {}

        lessons = []
        for module in document.get("modules", []):
            for lesson in module.get("lessons", []):
                lessons.append(CatalogLesson(
                    module_slug=module["slug"],
                    module_title=module.get("title", module["slug"]),
                    lesson_slug=lesson["slug"],
                    title=lesson.get("title", lesson["slug"]),
                    description=lesson.get("description", ""),
                    key_takeaways=tuple(lesson.get("key_takeaways") or ())
                ))
        logger.info(f"Loaded {len(lessons)} lessons from {path}")
        return cls(lessons)

    def find_relevant_lessons(self, query: str, limit: int = 3) -> List[LessonReference]:
        keywords = _keywords(query)
        if not keywords:
            return []

        matches = []
        for lesson in self.lessons:
            text = lesson.search_text
            title = lesson.title.lower()
            relevance = 0
            for keyword in keywords:
                if keyword in text:
                    relevance += 1
                    if keyword in title:
                        relevance += 2
            if relevance:
                matches.append(LessonReference(
                    module_slug=lesson.module_slug,
                    lesson_slug=lesson.lesson_slug,
                    title=lesson.title,
                    module_title=lesson.module_title,
                    description=lesson.description or None,
                    relevance=relevance
                ))

        matches.sort(key=lambda m: m.relevance, reverse=True)
        return matches[:limit]


def build_lesson_provider(catalog_path: Union[str, Path, None]) -> LessonProvider:
    """Provider for the configured catalog, or the null provider."""
    if not catalog_path:
        return NullLessonProvider()
    path = Path(catalog_path)
    if not path.exists():
        logger.warning(f"Lesson catalog {path} not found, lesson enrichment disabled")
        return NullLessonProvider()
    return StaticLessonProvider.from_yaml(path)
