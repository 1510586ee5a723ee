"""
Market context: volatility, economic calendar, breadth and coaching
guardrails.

Breadth (``context:breadth``), hot context (``context:hot``) and the
enhanced calendar (``context:calendar``) are written to the cache backend
by a separate context worker; this module only reads them. Every query is
read-only and returns a neutral default when the data is missing.
"""

import asyncio
import calendar
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..cache.backend import CacheBackend
from ..logger import get_logger
from ..market_data.client import EXCHANGE_TZ
from ..market_data.service import MarketDataService
from ..models.context import (
    AddTrend,
    AvoidanceSeverity,
    CalendarEvent,
    DirectionalAvoidance,
    EconomicEvent,
    EventImpact,
    ImminentEvent,
    MarketBreadth,
    MarketContext,
    MarketHotContext,
    ProactiveWarning,
    TradingBias,
    TradingConditions,
    VoldTrend,
    VolatilityLevel,
)
from ..models.market_data import utc_now

logger = get_logger(__name__)

BREADTH_KEY = "context:breadth"
HOT_CONTEXT_KEY = "context:hot"
CALENDAR_KEY = "context:calendar"

RELEASE_TIME = "08:30 ET"
FOMC_TIME = "14:00 ET"

FOMC_DECISION_DATES = (
    date(2024, 1, 31), date(2024, 3, 20), date(2024, 5, 1), date(2024, 6, 12),
    date(2024, 7, 31), date(2024, 9, 18), date(2024, 11, 7), date(2024, 12, 18),
    date(2025, 1, 29), date(2025, 3, 19), date(2025, 5, 7), date(2025, 6, 18),
    date(2025, 7, 30), date(2025, 9, 17), date(2025, 11, 5), date(2025, 12, 17),
    date(2026, 1, 28), date(2026, 3, 18), date(2026, 4, 29), date(2026, 6, 17),
    date(2026, 7, 29), date(2026, 9, 16), date(2026, 10, 28), date(2026, 12, 9),
)

_CALENDAR_ADAPTER = TypeAdapter(List[CalendarEvent])


def volatility_level(vix: float) -> VolatilityLevel:
    if vix < 15:
        return VolatilityLevel.LOW
    if vix < 20:
        return VolatilityLevel.NORMAL
    if vix < 30:
        return VolatilityLevel.HIGH
    return VolatilityLevel.EXTREME


def first_friday(year: int, month: int) -> date:
    first = date(year, month, 1)
    return first + timedelta(days=(calendar.FRIDAY - first.weekday()) % 7)


def _months_between(start: date, end: date):
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        yield year, month
        month += 1
        if month > 12:
            year, month = year + 1, 1


def economic_events_between(start: date, end: date) -> List[EconomicEvent]:
    """
    Scheduled macro releases between ``start`` and ``end`` inclusive.

    CPI is placed on the 12th, NFP on the first Friday and Retail Sales on
    the 15th of each month; FOMC decisions use the published dates.
    """
    events = []
    for year, month in _months_between(start, end):
        events.append(EconomicEvent(
            date=date(year, month, 12), time=RELEASE_TIME,
            event="CPI (Consumer Price Index)", impact=EventImpact.HIGH
        ))
        events.append(EconomicEvent(
            date=first_friday(year, month), time=RELEASE_TIME,
            event="Non-Farm Payrolls (NFP)", impact=EventImpact.HIGH
        ))
        events.append(EconomicEvent(
            date=date(year, month, 15), time=RELEASE_TIME,
            event="Retail Sales", impact=EventImpact.MEDIUM
        ))
    events.extend(
        EconomicEvent(date=d, time=FOMC_TIME, event="FOMC Rate Decision", impact=EventImpact.HIGH)
        for d in FOMC_DECISION_DATES
    )
    return sorted((e for e in events if start <= e.date <= end), key=lambda e: e.date)


def avoidance_for_longs(breadth: Optional[MarketBreadth]) -> DirectionalAvoidance:
    if breadth is None:
        return DirectionalAvoidance()
    if breadth.add.trend == AddTrend.STRONG_BEARISH:
        return DirectionalAvoidance(
            avoid=True,
            reason=f"ADD is {breadth.add.value:g}. The river is flowing DOWN hard. Don't swim upstream.",
            severity=AvoidanceSeverity.HIGH
        )
    if breadth.add.trend == AddTrend.BEARISH and breadth.vold.trend == VoldTrend.SELLING_PRESSURE:
        return DirectionalAvoidance(
            avoid=True,
            reason="Bearish breadth with selling pressure. Favor shorts or stay flat.",
            severity=AvoidanceSeverity.MEDIUM
        )
    if breadth.trading_bias == TradingBias.FAVOR_SHORTS:
        return DirectionalAvoidance(
            avoid=True,
            reason=breadth.coaching_message or "Market breadth favoring shorts.",
            severity=AvoidanceSeverity.MEDIUM
        )
    return DirectionalAvoidance()


def avoidance_for_shorts(breadth: Optional[MarketBreadth]) -> DirectionalAvoidance:
    if breadth is None:
        return DirectionalAvoidance()
    if breadth.add.trend == AddTrend.STRONG_BULLISH:
        return DirectionalAvoidance(
            avoid=True,
            reason=f"ADD is +{breadth.add.value:g}. Bulls are RIPPING. Don't fight it.",
            severity=AvoidanceSeverity.HIGH
        )
    if breadth.add.trend == AddTrend.BULLISH and breadth.vold.trend == VoldTrend.BUYING_PRESSURE:
        return DirectionalAvoidance(
            avoid=True,
            reason="Bullish breadth with buying pressure. Favor longs or stay flat.",
            severity=AvoidanceSeverity.MEDIUM
        )
    if breadth.trading_bias == TradingBias.FAVOR_LONGS:
        return DirectionalAvoidance(
            avoid=True,
            reason=breadth.coaching_message or "Market breadth favoring longs.",
            severity=AvoidanceSeverity.MEDIUM
        )
    return DirectionalAvoidance()


class MarketContextService:
    """
    Read-only market context queries.

    Args:
        market_data: Cached market data (status, VIX)
        backend: Cache backend holding the context worker's documents
        clock: Current UTC time
    """

    def __init__(
        self,
        market_data: MarketDataService,
        backend: CacheBackend,
        clock: Callable[[], datetime] = utc_now
    ):
        self.market_data = market_data
        self.backend = backend
        self._clock = clock

    def today(self) -> date:
        return self._clock().astimezone(EXCHANGE_TZ).date()

    async def _read(self, key: str, parse: Callable[[str], object]):
        result = await self.backend.get(key)
        if not result.is_ok() or not result.value:
            return None
        try:
            return parse(result.value)
        except (PydanticValidationError, ValueError) as e:
            logger.warning(f"Ignoring malformed {key} document: {e}")
            return None

    async def get_upcoming_economic_events(self, days: int = 7) -> List[EconomicEvent]:
        today = self.today()
        events = await self.market_data.cache.get_or_compute(
            f"econ:upcoming:{today.isoformat()}:{days}",
            self.market_data.ttl.levels_ttl,
            lambda: self._events(today, days),
            schema=List[EconomicEvent]
        )
        return events or []

    async def _events(self, today: date, days: int) -> List[EconomicEvent]:
        return economic_events_between(today, today + timedelta(days=days))

    async def has_high_impact_event_today(self) -> Tuple[bool, List[EconomicEvent]]:
        today = self.today()
        events = [
            e for e in await self.get_upcoming_economic_events(1)
            if e.date == today and e.impact == EventImpact.HIGH
        ]
        return bool(events), events

    async def get_market_context(self) -> MarketContext:
        """Market status, VIX regime and the coming week's macro events."""
        status, vix, events, (high_impact, _) = await asyncio.gather(
            self.market_data.get_market_status(),
            self.market_data.get_vix(),
            self.get_upcoming_economic_events(7),
            self.has_high_impact_event_today()
        )
        return MarketContext(
            market_status=status,
            vix=vix,
            volatility_level=volatility_level(vix),
            upcoming_events=events,
            high_impact_today=high_impact
        )

    async def get_market_breadth(self) -> Optional[MarketBreadth]:
        return await self._read(BREADTH_KEY, MarketBreadth.model_validate_json)

    async def get_hot_context(self) -> Optional[MarketHotContext]:
        return await self._read(HOT_CONTEXT_KEY, MarketHotContext.model_validate_json)

    async def get_active_warnings(self) -> List[ProactiveWarning]:
        hot = await self.get_hot_context()
        return list(hot.active_warnings) if hot else []

    async def get_enhanced_calendar(self) -> List[CalendarEvent]:
        events = await self._read(CALENDAR_KEY, _CALENDAR_ADAPTER.validate_json)
        return events or []

    async def check_imminent_event(self) -> ImminentEvent:
        hot = await self.get_hot_context()
        if hot is None or not hot.calendar.is_event_imminent or hot.calendar.imminent_event is None:
            return ImminentEvent()
        event = hot.calendar.imminent_event
        minutes = event.minutes_until_event if event.minutes_until_event is not None else -1
        return ImminentEvent(is_imminent=True, event=event, minutes_away=minutes)

    async def get_trading_conditions(self) -> TradingConditions:
        hot = await self.get_hot_context()
        if hot is None:
            return TradingConditions()
        conditions = hot.trading_conditions
        return TradingConditions(
            status=conditions.status,
            message=conditions.message,
            restrictions=list(conditions.restrictions),
            breadth_bias=hot.breadth.trading_bias if hot.breadth else None
        )

    async def should_avoid_longs(self) -> DirectionalAvoidance:
        return avoidance_for_longs(await self.get_market_breadth())

    async def should_avoid_shorts(self) -> DirectionalAvoidance:
        return avoidance_for_shorts(await self.get_market_breadth())
