"""
Market intelligence composition root.

``MarketIntelligence`` builds every component from a ``Config`` and wires
the dependencies explicitly: cache backend, hot cache, tiered cache,
provider client, cached market data, analyzers, context and the
redistributor. Consumers hold one instance per process and call its
read-only queries; each returns ``None`` or an empty value when the data
is unavailable.
"""

from typing import Dict, List, Optional, Sequence

from .analysis.key_levels import KeyLevelDetector
from .analysis.lessons import LessonProvider, build_lesson_provider
from .analysis.ltp_engine import LTPEngine
from .analysis.trend import TrendAnalyzer
from .cache.backend import CacheBackend
from .cache.rate_limit import RateLimiter
from .cache.tiered import HotCache, TieredCache
from .config import Config
from .context.market_context import MarketContextService
from .errors import FetchTimeoutError, with_fetch_timeout
from .logger import get_logger
from .market_data.client import MarketDataClient
from .market_data.service import MarketDataService
from .models.analysis import LTPAnalysis, MarketSnapshot, MTFAnalysis
from .models.context import (
    DirectionalAvoidance,
    MarketBreadth,
    MarketContext,
    ProactiveWarning,
    TradingConditions,
)
from .models.levels import KeyLevel
from .models.market_data import EarningsEvent, Quote
from .streaming.redistributor import MarketRedistributor

logger = get_logger(__name__)


class MarketIntelligence:
    """
    Facade over the market data, analysis and context components.

    Args:
        config: Application configuration
        backend: Cache backend; built from ``config.cache.redis_url`` if omitted
        client: Provider client; built from ``config.provider`` if omitted
        lessons: Lesson provider; built from ``config.ltp.lesson_catalog_path`` if omitted
    """

    def __init__(
        self,
        config: Config,
        backend: Optional[CacheBackend] = None,
        client: Optional[MarketDataClient] = None,
        lessons: Optional[LessonProvider] = None
    ):
        self.config = config

        self.backend = backend or CacheBackend.from_url(config.cache.redis_url)
        self.hot_cache = HotCache(
            self.backend,
            prefix=config.stream.hot_prefix,
            ttl=config.stream.hot_ttl,
            freshness_seconds=config.cache.hot_freshness_seconds
        )
        self.cache = TieredCache(self.backend, hot=self.hot_cache, key_prefix=config.cache.key_prefix)
        self.client = client or MarketDataClient(config.provider)
        self.market_data = MarketDataService(self.client, self.cache, config.cache)

        self.key_levels = KeyLevelDetector(self.market_data, config.ltp)
        self.trend = TrendAnalyzer(self.market_data)
        self.ltp = LTPEngine(
            self.market_data,
            self.key_levels,
            self.trend,
            config.ltp,
            lessons=lessons or build_lesson_provider(config.ltp.lesson_catalog_path)
        )
        self.context = MarketContextService(self.market_data, self.backend)
        self.redistributor = MarketRedistributor(self.backend, self.hot_cache, config.stream)
        self.rate_limiter = RateLimiter(self.backend)

        for message in config.describe_degraded_modes():
            logger.warning(f"Degraded mode: {message}")

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "MarketIntelligence":
        return cls(config or Config.load_from_env())

    # Market data

    async def get_quote(self, symbol: str) -> Optional[Quote]:
        return await self.market_data.get_quote(symbol)

    async def get_key_levels(self, symbol: str) -> List[KeyLevel]:
        return await self.key_levels.get_key_levels(symbol)

    async def get_mtf_analysis(self, symbol: str) -> Optional[MTFAnalysis]:
        return await self.trend.get_mtf_analysis(symbol)

    async def get_ltp_analysis(self, symbol: str, timeout: Optional[float] = None) -> Optional[LTPAnalysis]:
        """
        LTP report for ``symbol``.

        Args:
            symbol: Ticker symbol
            timeout: Optional bound in seconds on the whole analysis

        Returns:
            LTPAnalysis, or None when unavailable or timed out
        """
        if timeout is None:
            return await self.ltp.get_ltp_analysis(symbol)
        try:
            return await with_fetch_timeout(
                self.ltp.get_ltp_analysis(symbol),
                timeout,
                f"LTP analysis for {symbol.upper()}"
            )
        except FetchTimeoutError as e:
            logger.warning(str(e))
            return None

    async def get_market_snapshot(self, symbol: str) -> Optional[MarketSnapshot]:
        return await self.ltp.get_market_snapshot(symbol)

    async def get_market_snapshots(self, symbols: Sequence[str]) -> Dict[str, MarketSnapshot]:
        return await self.ltp.get_market_snapshots(symbols)

    async def get_upcoming_earnings(self, tickers: Sequence[str], days_ahead: int = 7) -> List[EarningsEvent]:
        return await self.market_data.get_upcoming_earnings(list(tickers), days_ahead)

    # Context

    async def get_market_context(self) -> MarketContext:
        return await self.context.get_market_context()

    async def get_active_warnings(self) -> List[ProactiveWarning]:
        return await self.context.get_active_warnings()

    async def get_market_breadth(self) -> Optional[MarketBreadth]:
        return await self.context.get_market_breadth()

    async def get_trading_conditions(self) -> TradingConditions:
        return await self.context.get_trading_conditions()

    async def should_avoid_longs(self) -> DirectionalAvoidance:
        return await self.context.should_avoid_longs()

    async def should_avoid_shorts(self) -> DirectionalAvoidance:
        return await self.context.should_avoid_shorts()

    # Maintenance

    async def clear_cache(self, symbol: Optional[str] = None) -> int:
        return await self.market_data.clear_cache(symbol)

    def get_status(self) -> Dict[str, object]:
        return {
            'provider_configured': self.config.provider.is_configured,
            'cache_distributed': self.backend.is_distributed,
            'cache_available': self.backend.is_available,
            'cache_stats': dict(self.cache.stats),
            'request_stats': self.client.monitor.get_stats(),
            'redistributor': self.redistributor.get_status(),
            'degraded': self.config.describe_degraded_modes(),
        }

    async def close(self) -> None:
        """Flush pending cache writes and release connections."""
        await self.redistributor.close()
        await self.cache.drain()
        await self.client.close()
        await self.backend.close()
        logger.info("Market intelligence closed")
