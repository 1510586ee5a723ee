"""
Market context queries for coaching consumers.
"""

from .market_context import (
    MarketContextService,
    avoidance_for_longs,
    avoidance_for_shorts,
    economic_events_between,
    volatility_level,
)

__all__ = [
    "MarketContextService",
    "avoidance_for_longs",
    "avoidance_for_shorts",
    "economic_events_between",
    "volatility_level",
]
