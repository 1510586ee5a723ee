"""
Exception types and timeout helpers for ltpscope.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class LTPScopeError(Exception):
    """Base exception for ltpscope."""


class ValidationError(LTPScopeError):
    """Provider input that does not match an expected format."""

    def __init__(self, message: str, value: Optional[str] = None):
        super().__init__(message)
        self.value = value


class FetchTimeoutError(LTPScopeError):
    """An external fetch did not complete within its timeout."""

    def __init__(self, label: str, timeout: float):
        super().__init__(f"{label} timed out after {timeout:.2f}s")
        self.label = label
        self.timeout = timeout


class CacheUnavailableError(LTPScopeError):
    """The distributed cache backend could not be reached."""


class StateTransitionError(LTPScopeError):
    """A connection state change that the state machine does not allow."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid state transition {current} -> {target}")
        self.current = current
        self.target = target


async def with_fetch_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    label: str = "fetch"
) -> T:
    """
    Await ``awaitable`` for at most ``timeout`` seconds.

    The in-flight operation is cancelled on expiry.

    Args:
        awaitable: Coroutine or future to await
        timeout: Timeout in seconds
        label: Name used in the error message

    Returns:
        The awaited result

    Raises:
        FetchTimeoutError: If the timeout expires first
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise FetchTimeoutError(label, timeout) from e
