"""
Execution Engine - Candle Intervals and Aggregation.

============================================================
PURPOSE
============================================================
Parse interval strings (15m, 6h, 1d, 1w) and build
non-native intervals from a finer native series.

AGGREGATION:
    bucket = floor(time_ms / target_ms) * target_ms
    open   = first open
    high   = max high
    low    = min low
    close  = last close
    volume = sum volume

============================================================
"""

import math
from decimal import Decimal
from typing import Dict, List, Sequence, Tuple

from core.clock import from_epoch_ms, to_epoch_ms
from core.exceptions import ConfigurationError

from ..types import Candle


# Native OHLC intervals in minutes
KRAKEN_INTERVALS: Tuple[int, ...] = (1, 5, 15, 30, 60, 240, 1440, 10080, 21600)

_UNIT_MINUTES: Dict[str, int] = {
    "m": 1,
    "h": 60,
    "d": 1440,
    "w": 10080,
}

# Extra native buckets fetched so partial edge buckets can be dropped
AGGREGATION_PADDING = 10


def parse_interval(interval: str) -> int:
    """
    Interval string -> minutes.

    Raises:
        ConfigurationError: unknown unit or non-positive amount
    """
    text = interval.strip().lower()
    if len(text) < 2 or text[-1] not in _UNIT_MINUTES:
        raise ConfigurationError(
            f"Unsupported candle interval: {interval}",
            config_key="interval",
            actual_value=interval,
        )
    try:
        amount = int(text[:-1])
    except ValueError:
        raise ConfigurationError(
            f"Unsupported candle interval: {interval}",
            config_key="interval",
            actual_value=interval,
        )
    if amount <= 0:
        raise ConfigurationError(
            f"Candle interval must be positive: {interval}",
            config_key="interval",
            actual_value=interval,
        )
    return amount * _UNIT_MINUTES[text[-1]]


def native_interval_for(target_minutes: int) -> int:
    """Largest native interval that evenly divides the target."""
    if target_minutes in KRAKEN_INTERVALS:
        return target_minutes
    divisors = [m for m in KRAKEN_INTERVALS if target_minutes % m == 0]
    # 1 always divides, so divisors is never empty
    return max(divisors)


def native_fetch_limit(limit: int, target_minutes: int, native_minutes: int) -> int:
    """How many native candles to request to build `limit` target candles."""
    ratio = target_minutes / native_minutes
    return math.ceil(limit * ratio) + AGGREGATION_PADDING


def aggregate_candles(
    candles: Sequence[Candle],
    target_minutes: int,
    limit: int,
) -> List[Candle]:
    """
    Aggregate a finer series into target-interval buckets.

    Input must be time-ascending. Returns at most `limit` buckets,
    newest last.
    """
    target_ms = target_minutes * 60_000
    buckets: Dict[int, List[Candle]] = {}
    order: List[int] = []

    for candle in candles:
        bucket = (to_epoch_ms(candle.time) // target_ms) * target_ms
        if bucket not in buckets:
            buckets[bucket] = []
            order.append(bucket)
        buckets[bucket].append(candle)

    aggregated = []
    for bucket in sorted(order):
        members = buckets[bucket]
        aggregated.append(Candle(
            time=from_epoch_ms(bucket),
            open=members[0].open,
            high=max(c.high for c in members),
            low=min(c.low for c in members),
            close=members[-1].close,
            volume=sum((c.volume for c in members), Decimal("0")),
        ))

    return aggregated[-limit:] if limit > 0 else aggregated
