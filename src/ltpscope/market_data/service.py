"""
Cached market data facade.

``MarketDataService`` puts the tiered cache in front of every
``MarketDataClient`` call. It is constructed explicitly with its
dependencies; there is no module-level instance.
"""

import asyncio
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..config import CacheConfig
from ..cache.tiered import TieredCache
from ..logger import get_logger
from ..models.market_data import (
    Bar,
    EarningsEvent,
    IndexQuote,
    IndicatorSeries,
    MACDSeries,
    MarketStatus,
    OptionContract,
    OptionsChain,
    Quote,
    utc_now,
)
from ..models.stream import CachedQuote
from .client import EXCHANGE_TZ, MarketDataClient, normalize_timespan, resolve_index_ticker

logger = get_logger(__name__)


def quote_from_tick(tick: CachedQuote) -> Quote:
    """Build a quote from a hot-cache tick. Change fields are unknown and left at 0."""
    data = tick.data
    return Quote(
        symbol=tick.symbol,
        price=tick.price,
        last=tick.price,
        open=(data.open if data else None) or 0.0,
        high=(data.high if data else None) or 0.0,
        low=(data.low if data else None) or 0.0,
        close=(data.close if data else None) or 0.0,
        volume=(data.volume if data else None) or 0.0,
        vwap=(data.vwap if data else None) or 0.0,
        timestamp=tick.timestamp
    )


class MarketDataService:
    """
    Market data with tiered caching.

    Args:
        client: Provider client
        cache: Tiered cache (hot cache attached for quote lookups)
        cache_config: TTLs per data class
        clock: Current UTC time, used for date windows
    """

    def __init__(
        self,
        client: MarketDataClient,
        cache: TieredCache,
        cache_config: Optional[CacheConfig] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.client = client
        self.cache = cache
        self.ttl = cache_config or CacheConfig()
        self._clock = clock

    @property
    def is_configured(self) -> bool:
        return self.client.is_configured

    async def get_quote(self, symbol: str) -> Optional[Quote]:
        """Latest quote: a fresh streamed tick if there is one, else the snapshot endpoint."""
        symbol = symbol.upper()
        return await self.cache.get_or_compute(
            f"quote:{symbol}",
            self.ttl.quote_ttl,
            lambda: self.client.get_quote(symbol),
            schema=Quote,
            hot_symbol=symbol,
            from_hot=quote_from_tick
        )

    async def get_quotes(self, symbols: List[str]) -> Dict[str, Quote]:
        symbols = [s.upper() for s in symbols]
        quotes = await asyncio.gather(*(self.get_quote(s) for s in symbols))
        return {s: q for s, q in zip(symbols, quotes) if q is not None}

    async def get_aggregates(self, symbol: str, timespan: str = "day", limit: int = 50) -> List[Bar]:
        symbol = symbol.upper()
        multiplier, span = normalize_timespan(timespan)
        bars = await self.cache.get_or_compute(
            f"aggs:{symbol}:{span}:{multiplier}:{limit}",
            self.ttl.aggregates_ttl,
            lambda: self.client.get_aggregates(symbol, timespan, limit),
            schema=List[Bar]
        )
        return bars or []

    async def get_intraday_bars(self, symbol: str, interval_minutes: int = 5) -> List[Bar]:
        return await self.get_aggregates(symbol, str(interval_minutes), 500)

    async def get_weekly_bars(self, symbol: str, limit: int = 52) -> List[Bar]:
        return await self.get_aggregates(symbol, "week", limit)

    async def get_premarket_bars(self, symbol: str) -> List[Bar]:
        symbol = symbol.upper()
        bars = await self.cache.get_or_compute(
            f"premarket:{symbol}",
            self.ttl.aggregates_ttl,
            lambda: self.client.get_premarket_bars(symbol),
            schema=List[Bar]
        )
        return bars or []

    async def get_historical_bars(
        self,
        symbol: str,
        from_date: date,
        to_date: date,
        timespan: str = "minute",
        multiplier: int = 5
    ) -> List[Bar]:
        symbol = symbol.upper()
        bars = await self.cache.get_or_compute(
            f"hist:{symbol}:{from_date}:{to_date}:{timespan}:{multiplier}",
            self.ttl.historical_ttl,
            lambda: self.client.get_range_bars(symbol, from_date, to_date, timespan, multiplier),
            schema=List[Bar]
        )
        return bars or []

    async def get_event_bars(
        self,
        symbol: str,
        event_date: date,
        days_before: int = 2,
        days_after: int = 2,
        timespan: str = "minute",
        multiplier: int = 5
    ) -> List[Bar]:
        """Bars around an event date, e.g. an earnings release."""
        return await self.get_historical_bars(
            symbol,
            event_date - timedelta(days=days_before),
            event_date + timedelta(days=days_after),
            timespan,
            multiplier
        )

    async def get_upcoming_earnings(self, tickers: List[str], days_ahead: int = 7) -> List[EarningsEvent]:
        """
        Earnings releases for ``tickers`` within the next ``days_ahead`` days.

        Tickers without a published date, or with a date outside the window,
        are left out. Results are sorted by date.
        """
        tickers = [t.upper() for t in tickers]
        if not tickers:
            return []
        events = await self.cache.get_or_compute(
            f"earnings:{','.join(tickers)}:{days_ahead}",
            self.ttl.levels_ttl,
            lambda: self._fetch_earnings(tickers, days_ahead),
            schema=List[EarningsEvent]
        )
        return events or []

    async def _fetch_earnings(self, tickers: List[str], days_ahead: int) -> List[EarningsEvent]:
        today = self._clock().astimezone(EXCHANGE_TZ).date()
        end = today + timedelta(days=days_ahead)
        details = await asyncio.gather(*(self.client.get_ticker_details(t) for t in tickers))
        events = [
            EarningsEvent(symbol=d.ticker.upper(), date=d.next_earnings_date)
            for d in details
            if d is not None and d.next_earnings_date and today <= d.next_earnings_date <= end
        ]
        return sorted(events, key=lambda e: e.date)

    async def get_market_status(self) -> MarketStatus:
        status = await self.cache.get_or_compute(
            "status",
            self.ttl.levels_ttl,
            self.client.get_market_status,
            schema=MarketStatus
        )
        return status or MarketStatus()

    async def is_market_open(self) -> bool:
        return (await self.get_market_status()).is_open

    async def get_index_quote(self, index: str) -> Optional[IndexQuote]:
        symbol = index.upper()
        if self.cache.hot is not None:
            hot = await self.cache.hot.read_index(resolve_index_ticker(symbol))
            if hot is not None:
                return hot
        return await self.cache.get_or_compute(
            f"index:{symbol}",
            self.ttl.index_ttl,
            lambda: self.client.get_index_quote(symbol),
            schema=IndexQuote
        )

    async def get_vix(self) -> float:
        vix = await self.get_index_quote("VIX")
        return vix.value if vix else 0.0

    async def _indicator(self, kind: str, symbol: str, period: int, timespan: str, limit: int) -> Optional[IndicatorSeries]:
        symbol = symbol.upper()
        return await self.cache.get_or_compute(
            f"{kind}:{symbol}:{period}:{timespan}:{limit}",
            self.ttl.indicators_ttl,
            lambda: self.client.get_indicator(kind, symbol, period, timespan, limit),
            schema=IndicatorSeries
        )

    async def get_sma(self, symbol: str, period: int = 20, timespan: str = "day", limit: int = 50) -> Optional[IndicatorSeries]:
        return await self._indicator("sma", symbol, period, timespan, limit)

    async def get_ema(self, symbol: str, period: int = 9, timespan: str = "day", limit: int = 50) -> Optional[IndicatorSeries]:
        return await self._indicator("ema", symbol, period, timespan, limit)

    async def get_rsi(self, symbol: str, period: int = 14, timespan: str = "day", limit: int = 50) -> Optional[IndicatorSeries]:
        return await self._indicator("rsi", symbol, period, timespan, limit)

    async def get_macd(
        self,
        symbol: str,
        timespan: str = "day",
        short_window: int = 12,
        long_window: int = 26,
        signal_window: int = 9
    ) -> Optional[MACDSeries]:
        symbol = symbol.upper()
        return await self.cache.get_or_compute(
            f"macd:{symbol}:{timespan}:{short_window}:{long_window}:{signal_window}",
            self.ttl.indicators_ttl,
            lambda: self.client.get_macd(symbol, timespan, short_window, long_window, signal_window),
            schema=MACDSeries
        )

    async def get_options_chain(self, symbol: str, expiration_date: Optional[str] = None) -> Optional[OptionsChain]:
        symbol = symbol.upper()
        expiration = expiration_date or self.client.default_expiration()
        return await self.cache.get_or_compute(
            f"options:{symbol}:{expiration}",
            self.ttl.options_ttl,
            lambda: self.client.get_options_chain(symbol, expiration),
            schema=OptionsChain
        )

    async def get_options_contract(self, contract_ticker: str) -> Optional[OptionContract]:
        ticker = contract_ticker.upper()
        return await self.cache.get_or_compute(
            f"option:{ticker}",
            self.ttl.options_ttl,
            lambda: self.client.get_options_contract(ticker),
            schema=OptionContract
        )

    async def get_options_near_money(
        self,
        symbol: str,
        expiration_date: Optional[str] = None,
        strike_range_pct: float = 5.0
    ) -> List[OptionContract]:
        """Contracts within ``strike_range_pct`` of the current price, nearest strike first."""
        quote = await self.get_quote(symbol)
        if not quote or quote.price <= 0:
            return []
        chain = await self.get_options_chain(symbol, expiration_date)
        if not chain:
            return []

        low = quote.price * (1 - strike_range_pct / 100)
        high = quote.price * (1 + strike_range_pct / 100)
        near = [c for c in chain.calls + chain.puts if low <= c.strike <= high]
        return sorted(near, key=lambda c: abs(c.strike - quote.price))

    async def clear_cache(self, symbol: Optional[str] = None) -> int:
        removed = await self.cache.clear(symbol)
        logger.info(f"Cleared {removed} cache entries" + (f" for {symbol.upper()}" if symbol else ""))
        return removed
