"""
Market data access: the provider client and its cached facade.
"""

from .client import MarketDataClient, normalize_timespan, parse_bars, parse_option_ticker
from .service import MarketDataService, quote_from_tick

__all__ = [
    "MarketDataClient",
    "MarketDataService",
    "normalize_timespan",
    "parse_bars",
    "parse_option_ticker",
    "quote_from_tick",
]
