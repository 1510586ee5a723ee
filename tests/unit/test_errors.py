"""
Unit tests for exception types and the fetch timeout helper.
"""

import asyncio

import pytest

from ltpscope.errors import FetchTimeoutError, LTPScopeError, StateTransitionError, with_fetch_timeout


class TestWithFetchTimeout:
    """Test the timeout wrapper."""

    @pytest.mark.asyncio
    async def test_returns_result_in_time(self) -> None:
        """Test that a fast awaitable's result is returned."""
        async def fetch() -> int:
            return 42

        assert await with_fetch_timeout(fetch(), 1.0) == 42

    @pytest.mark.asyncio
    async def test_raises_and_cancels_on_expiry(self) -> None:
        """Test that a slow awaitable raises FetchTimeoutError and is cancelled."""
        cancelled = asyncio.Event()

        async def slow() -> None:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(FetchTimeoutError) as exc_info:
            await with_fetch_timeout(slow(), 0.01, label="quote SPY")

        assert cancelled.is_set()
        assert exc_info.value.label == "quote SPY"
        assert str(exc_info.value) == "quote SPY timed out after 0.01s"
        assert isinstance(exc_info.value, LTPScopeError)


def test_state_transition_error_message() -> None:
    """Test the transition error text."""
    error = StateTransitionError("disconnected", "ready")

    assert str(error) == "Invalid state transition disconnected -> ready"
