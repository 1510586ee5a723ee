"""
Swing Point Detector

Finds pivot highs and lows with the fractal rule (a bar whose high/low is
not exceeded by the ``lookback`` bars on either side), clusters pivots that
sit within a price tolerance into one level, and merges 4H and 1H levels so
that a 1H pivot near a 4H pivot strengthens the 4H level instead of being
listed twice.

All functions are pure.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ..models.levels import SwingPoint, SwingTimeframe, SwingType
from ..models.market_data import Bar

BASE_STRENGTH = 60
STRENGTH_PER_TOUCH = 10
CONFLUENCE_BONUS = 15
MAX_STRENGTH = 100


@dataclass(frozen=True)
class SwingConfig:
    lookback: int = 5
    tolerance_pct: float = 0.3
    min_touches: int = 2


DEFAULT_SWING_CONFIG = SwingConfig()

TIMEFRAME_CONFIGS: Dict[SwingTimeframe, SwingConfig] = {
    SwingTimeframe.ONE_HOUR: SwingConfig(lookback=5, tolerance_pct=0.3, min_touches=2),
    SwingTimeframe.FOUR_HOURS: SwingConfig(lookback=3, tolerance_pct=0.5, min_touches=2),
    SwingTimeframe.DAILY: SwingConfig(lookback=3, tolerance_pct=0.8, min_touches=2),
}


def _pct_diff(a: float, b: float) -> float:
    return abs(a - b) / b * 100


def detect_swing_points(
    bars: Sequence[Bar],
    timeframe: SwingTimeframe = SwingTimeframe.ONE_HOUR,
    config: Optional[SwingConfig] = None
) -> List[SwingPoint]:
    """
    Detect clustered swing highs and lows.

    Args:
        bars: Bars sorted ascending by time
        timeframe: Timeframe the bars belong to
        config: Detection settings (defaults per timeframe)

    Returns:
        Clustered swing points, strongest first, then most recent
    """
    timeframe = SwingTimeframe(timeframe)
    config = config or TIMEFRAME_CONFIGS.get(timeframe, DEFAULT_SWING_CONFIG)
    lookback = config.lookback

    if len(bars) < lookback * 2 + 1:
        return []

    raw: List[SwingPoint] = []
    for i in range(lookback, len(bars) - lookback):
        current = bars[i]
        surrounding = list(bars[i - lookback:i]) + list(bars[i + 1:i + lookback + 1])

        if all(b.high <= current.high for b in surrounding):
            raw.append(SwingPoint(
                price=current.high,
                type=SwingType.HIGH,
                timestamp=current.time_ms,
                touch_count=1,
                timeframe=timeframe,
                strength=BASE_STRENGTH
            ))
        if all(b.low >= current.low for b in surrounding):
            raw.append(SwingPoint(
                price=current.low,
                type=SwingType.LOW,
                timestamp=current.time_ms,
                touch_count=1,
                timeframe=timeframe,
                strength=BASE_STRENGTH
            ))

    return cluster_swing_points(raw, config.tolerance_pct, config.min_touches)


def cluster_swing_points(
    swings: Sequence[SwingPoint],
    tolerance_pct: float,
    min_touches: int
) -> List[SwingPoint]:
    """
    Group same-type pivots within ``tolerance_pct`` of each other.

    Each cluster with at least ``min_touches`` members becomes one level at
    the members' average price, with ``touch_count`` equal to the cluster
    size and strength ``min(100, 60 + 10 * touches)``.
    """
    ordered = sorted(swings, key=lambda s: s.price)
    used = set()
    clustered: List[SwingPoint] = []

    for i, anchor in enumerate(ordered):
        if i in used:
            continue

        members = [
            j for j, s in enumerate(ordered)
            if j not in used
            and s.type == anchor.type
            and _pct_diff(s.price, anchor.price) <= tolerance_pct
        ]
        if len(members) < min_touches:
            continue

        prices = [ordered[j].price for j in members]
        clustered.append(SwingPoint(
            price=round(sum(prices) / len(prices), 2),
            type=anchor.type,
            timestamp=max(ordered[j].timestamp for j in members),
            touch_count=len(members),
            timeframe=anchor.timeframe,
            strength=min(MAX_STRENGTH, BASE_STRENGTH + len(members) * STRENGTH_PER_TOUCH)
        ))
        used.update(members)

    return sorted(clustered, key=lambda s: (-s.strength, -s.timestamp))


def count_touches_at_level(
    bars: Sequence[Bar],
    level: float,
    swing_type: SwingType,
    tolerance_pct: float = 0.2,
    start_index: int = 0
) -> int:
    """Count bars from ``start_index`` whose high (resistance) or low (support) came within tolerance of ``level``."""
    tolerance = level * (tolerance_pct / 100)
    touches = 0
    for bar in bars[start_index:]:
        probe = bar.high if swing_type == SwingType.HIGH else bar.low
        if level - tolerance <= probe <= level + tolerance:
            touches += 1
    return touches


def filter_nearby_levels(
    swings: Sequence[SwingPoint],
    current_price: float,
    max_distance_pct: float = 5.0
) -> List[SwingPoint]:
    """Keep swings within ``max_distance_pct`` of ``current_price``."""
    if current_price <= 0:
        return []
    return [s for s in swings if _pct_diff(s.price, current_price) <= max_distance_pct]


def merge_mtf_levels(
    levels_4h: Sequence[SwingPoint],
    levels_1h: Sequence[SwingPoint],
    tolerance_pct: float = 0.3
) -> List[SwingPoint]:
    """
    Merge 4H and 1H swing levels.

    A 4H level absorbs the first unused same-type 1H level within
    ``tolerance_pct``: prices are averaged, touch counts summed, strength
    boosted by 15 (capped at 100) and the timeframe stays 4H. Unmatched 1H
    levels are kept as they are.

    Returns:
        Merged levels, strongest first, then by touch count
    """
    merged: List[SwingPoint] = []
    used_1h = set()

    for level_4h in levels_4h:
        match_index = next(
            (
                idx for idx, level_1h in enumerate(levels_1h)
                if idx not in used_1h
                and level_1h.type == level_4h.type
                and _pct_diff(level_1h.price, level_4h.price) <= tolerance_pct
            ),
            None
        )
        if match_index is None:
            merged.append(level_4h)
            continue

        used_1h.add(match_index)
        level_1h = levels_1h[match_index]
        merged.append(level_4h.model_copy(update={
            "price": round((level_4h.price + level_1h.price) / 2, 2),
            "touch_count": level_4h.touch_count + level_1h.touch_count,
            "strength": min(MAX_STRENGTH, level_4h.strength + CONFLUENCE_BONUS),
            "timeframe": SwingTimeframe.FOUR_HOURS,
        }))

    merged.extend(level for idx, level in enumerate(levels_1h) if idx not in used_1h)
    return sorted(merged, key=lambda s: (-s.strength, -s.touch_count))
