"""
Typed results for operations that can fail without raising.

``Ok`` carries a value, which may legitimately be empty (``None``, ``[]``).
``Unavailable`` means the backend or provider could not answer at all.
"""

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    def is_ok(self) -> bool:
        return True

    def unwrap_or(self, default: Any) -> T:
        return self.value


@dataclass(frozen=True)
class Unavailable:
    reason: str
    timed_out: bool = False

    def is_ok(self) -> bool:
        return False

    def unwrap_or(self, default: Any) -> Any:
        return default


Result = Union[Ok[T], Unavailable]


def value_or_none(result: "Result[Optional[T]]") -> Optional[T]:
    """Collapse a result to its value, or ``None`` when unavailable."""
    return result.unwrap_or(None)
