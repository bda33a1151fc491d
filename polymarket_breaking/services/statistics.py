"""Movement statistics over a window of price history.

All functions expect points ordered by timestamp ascending.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Optional

from polymarket_breaking.schemas import PriceHistoryPoint, PricePoint, Trend

# Composite score weights
PRICE_WEIGHT = 0.5
VOLUME_WEIGHT = 0.3
VOLATILITY_WEIGHT = 0.2

# Changes within +/- this band (inclusive) are "neutral"
TREND_THRESHOLD = 0.01

PRICE_HISTORY_MAX_POINTS = 24
MIN_POINTS = 2


@dataclass(frozen=True)
class PriceStatistics:
    """Snapshot of movement metrics for one market window."""

    price_change_percent: float
    volume_change_percent: float
    price_high: float
    price_low: float
    volatility_index: float
    movement_score: float
    trend: Trend


def relative_change(oldest: float, current: float) -> float:
    """Fractional change from oldest to current; 0 when oldest is not positive."""
    if oldest <= 0:
        return 0.0
    return (current - oldest) / oldest


def population_std_dev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return math.sqrt(variance)


def movement_score(price_change: float, volume_change: float, volatility: float) -> float:
    """Composite score: 50% price change, 30% volume change, 20% volatility."""
    return (
        abs(price_change) * PRICE_WEIGHT
        + abs(volume_change) * VOLUME_WEIGHT
        + volatility * VOLATILITY_WEIGHT
    )


def trend_direction(price_change: float) -> Trend:
    if price_change > TREND_THRESHOLD:
        return "up"
    if price_change < -TREND_THRESHOLD:
        return "down"
    return "neutral"


def calculate_price_statistics(
    points: Sequence[PriceHistoryPoint],
) -> Optional[PriceStatistics]:
    """Compute statistics for a window, or None with fewer than two points."""
    if len(points) < MIN_POINTS:
        return None

    oldest, current = points[0], points[-1]
    price_change = relative_change(oldest.price_yes, current.price_yes)
    volume_change = relative_change(oldest.volume or 0.0, current.volume or 0.0)

    prices = [p.price_yes for p in points]
    volatility = population_std_dev(prices)

    return PriceStatistics(
        price_change_percent=price_change,
        volume_change_percent=volume_change,
        price_high=max(prices),
        price_low=min(prices),
        volatility_index=volatility,
        movement_score=movement_score(price_change, volume_change, volatility),
        trend=trend_direction(price_change),
    )


def _round_half_up(value: float) -> int:
    # Python's round() is banker's rounding; indices must round .5 upward
    return math.floor(value + 0.5)


def sample_indices(length: int, max_points: int = PRICE_HISTORY_MAX_POINTS) -> list[int]:
    """Evenly spaced indices into a sequence, always keeping first and last."""
    if length <= max_points:
        return list(range(length))
    if max_points == 1:
        return [length - 1]
    step = (length - 1) / (max_points - 1)
    return [min(_round_half_up(i * step), length - 1) for i in range(max_points)]


def sample_price_history(
    points: Sequence[PriceHistoryPoint],
    max_points: int = PRICE_HISTORY_MAX_POINTS,
) -> list[PricePoint]:
    """Down-sample a window for display while preserving chronological order."""
    return [
        PricePoint(
            timestamp=points[i].timestamp,
            price_yes=points[i].price_yes,
            price_no=points[i].price_no,
            volume=points[i].volume,
        )
        for i in sample_indices(len(points), max_points)
    ]
