"""
Indicator math over bar sequences.
"""

import math
from typing import Sequence

from ..models.market_data import Bar


def calculate_ema(bars: Sequence[Bar], period: int) -> float:
    """
    Exponential moving average of closes, seeded with the SMA of the first
    ``period`` bars.

    Returns 0.0 when there are fewer than ``period`` bars.
    """
    if period <= 0 or len(bars) < period:
        return 0.0

    multiplier = 2 / (period + 1)
    ema = sum(b.close for b in bars[:period]) / period
    for bar in bars[period:]:
        ema = (bar.close - ema) * multiplier + ema
    return ema


def calculate_vwap(bars: Sequence[Bar]) -> float:
    """Volume-weighted average of typical price ((H+L+C)/3). 0.0 without volume."""
    total_volume = sum(b.volume for b in bars)
    if total_volume <= 0:
        return 0.0
    weighted = sum((b.high + b.low + b.close) / 3 * b.volume for b in bars)
    return weighted / total_volume


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up (``round`` uses banker's rounding)."""
    return int(math.floor(value + 0.5))
