"""
Patience-candle detection.

A patience candle is a small-bodied, low-volume bar that pauses a move.
The latest bar is "forming" one when its body is under half the 3-bar
average body and its volume is under 70% of the 3-bar average volume. It is
"confirmed" when the bar before it closed in the opposite direction.
"""

from typing import Optional, Sequence

from ..models.analysis import CandleDirection, PatienceCandle
from ..models.market_data import Bar

WINDOW = 3
BODY_RATIO = 0.5
VOLUME_RATIO = 0.7


def detect_patience_candle(bars: Sequence[Bar]) -> Optional[PatienceCandle]:
    """
    Evaluate the last three bars of a series.

    Args:
        bars: Bars sorted ascending by time

    Returns:
        Patience candle state of the latest bar, or None with fewer than 3 bars
    """
    if len(bars) < WINDOW:
        return None

    window = list(bars[-WINDOW:])
    _, prior, latest = window

    avg_body = sum(b.body for b in window) / WINDOW
    avg_volume = sum(b.volume for b in window) / WINDOW

    forming = latest.body < avg_body * BODY_RATIO and latest.volume < avg_volume * VOLUME_RATIO
    direction = CandleDirection.BULLISH if latest.close > latest.open else CandleDirection.BEARISH

    if direction == CandleDirection.BULLISH:
        opposed = prior.close < prior.open
    else:
        opposed = prior.close > prior.open

    return PatienceCandle(
        forming=forming,
        confirmed=forming and opposed,
        direction=direction
    )
