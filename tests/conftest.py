"""
Pytest configuration and fixtures for ltpscope tests.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generator, List, Optional, Sequence
from unittest.mock import AsyncMock, patch

import pytest

from ltpscope.cache.backend import CacheBackend
from ltpscope.cache.tiered import HotCache, TieredCache
from ltpscope.config import CacheConfig, Config
from ltpscope.market_data.client import MarketDataClient
from ltpscope.market_data.service import MarketDataService
from ltpscope.models.market_data import Bar, Quote

BASE_TIME = datetime(2025, 3, 10, 14, 30, tzinfo=timezone.utc)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def mock_env_vars() -> Generator[dict, None, None]:
    """Mock environment variables for testing."""
    test_env = {
        "MARKET_API_KEY": "test_api_key",
        "MARKET_API_BASE_URL": "https://api.test.local/",
        "MARKET_WATCHLIST": "spy, qqq,nvda",
        "REDIS_URL": "",
        "LOG_LEVEL": "DEBUG",
        "LTP_AT_LEVEL_PCT": "0.25",
        "LTP_NEAR_LEVEL_PCT": "1.0",
        "HOT_CACHE_FRESHNESS_SECONDS": "3",
    }

    with patch.dict(os.environ, test_env, clear=False):
        yield test_env


@pytest.fixture
def test_config(mock_env_vars: dict) -> Config:
    """Create a test configuration instance."""
    return Config.load_from_env()


@pytest.fixture
def make_bar() -> Callable[..., Bar]:
    """Factory for a single bar; ``index`` spaces bars five minutes apart."""

    def factory(
        open: float,
        high: float,
        low: float,
        close: float,
        volume: float = 1000.0,
        index: int = 0,
        timestamp: Optional[datetime] = None
    ) -> Bar:
        return Bar(
            timestamp=timestamp or BASE_TIME + timedelta(minutes=5 * index),
            open=open,
            high=high,
            low=low,
            close=close,
            volume=volume
        )

    return factory


@pytest.fixture
def bars_from_closes() -> Callable[[Sequence[float]], List[Bar]]:
    """Build ascending bars whose open is the previous close."""

    def factory(closes: Sequence[float], volume: float = 1000.0) -> List[Bar]:
        bars = []
        previous = closes[0]
        for i, close in enumerate(closes):
            bars.append(Bar(
                timestamp=BASE_TIME + timedelta(minutes=5 * i),
                open=previous,
                high=max(previous, close) + 0.1,
                low=min(previous, close) - 0.1,
                close=close,
                volume=volume
            ))
            previous = close
        return bars

    return factory


@pytest.fixture
def sample_quote() -> Quote:
    """A quote for SPY trading at 500."""
    return Quote(
        symbol="SPY",
        price=500.0,
        last=500.0,
        change=2.5,
        change_percent=0.5,
        open=498.0,
        high=501.0,
        low=497.0,
        close=497.5,
        volume=1_000_000,
        vwap=499.0,
        prev_close=497.5,
        prev_high=502.0,
        prev_low=495.0
    )


@pytest.fixture
def memory_backend() -> CacheBackend:
    """Cache backend with no Redis client (in-process mode)."""
    return CacheBackend(client=None)


@pytest.fixture
def tiered_cache(memory_backend: CacheBackend) -> TieredCache:
    """Tiered cache over the in-process backend with a hot cache attached."""
    return TieredCache(memory_backend, hot=HotCache(memory_backend), key_prefix="test")


@pytest.fixture
def mock_client() -> AsyncMock:
    """Provider client stub; every data call returns an empty result by default."""
    client = AsyncMock(spec=MarketDataClient)
    client.is_configured = True
    client.get_quote.return_value = None
    client.get_aggregates.return_value = []
    client.get_indicator.return_value = None
    client.get_index_quote.return_value = None
    client.get_ticker_details.return_value = None
    client.default_expiration.return_value = "2025-03-14"
    return client


@pytest.fixture
def market_data(mock_client: AsyncMock, tiered_cache: TieredCache) -> MarketDataService:
    """Market data service backed by the stub client and a real tiered cache."""
    return MarketDataService(mock_client, tiered_cache, CacheConfig())
