"""
Strategy Engine - Indicator Engine.

============================================================
PURPOSE
============================================================
Pure functions: close series -> EMA short, EMA long, RSI and
the composite rotation score.

    score = (ema_short / ema_long) * (1 - |RSI - 50| / 50)

Rewards bullish EMA crossovers, penalizes RSI extremes on
both sides of 50.

============================================================
NUMERIC CONTRACT
============================================================
- All outputs finite
- RSI in [0, 100]; flat series -> 50; no losses -> 100
- score > 0 whenever both EMAs are > 0 and RSI is not 0 or 100

============================================================
"""

import math
from dataclasses import dataclass
from typing import Iterable, List, Sequence

from core.exceptions import DataInsufficiencyError


DEFAULT_EMA_SHORT = 12
DEFAULT_EMA_LONG = 26
DEFAULT_RSI_PERIOD = 14


@dataclass(frozen=True)
class IndicatorResult:
    """Indicator values for one close series."""

    ema_short: float
    ema_long: float
    rsi: float
    score: float

    @property
    def is_bullish(self) -> bool:
        return self.ema_short > self.ema_long


def _floats(values: Iterable) -> List[float]:
    return [float(v) for v in values]


def ema_series(values: Sequence, period: int) -> List[float]:
    """
    EMA seeded with the simple average of the first `period` values.

    Returns one value per input from index period-1 onwards.
    """
    if period <= 0:
        raise ValueError(f"EMA period must be positive, got {period}")
    closes = _floats(values)
    if len(closes) < period:
        raise DataInsufficiencyError(
            f"EMA({period}) needs {period} values, got {len(closes)}",
            required=period,
            available=len(closes),
        )

    alpha = 2.0 / (period + 1)
    current = sum(closes[:period]) / period
    result = [current]
    for close in closes[period:]:
        current = close * alpha + current * (1 - alpha)
        result.append(current)
    return result


def ema(values: Sequence, period: int) -> float:
    """Latest EMA value."""
    return ema_series(values, period)[-1]


def rsi(values: Sequence, period: int = DEFAULT_RSI_PERIOD) -> float:
    """
    Wilder-smoothed RSI of the latest value.

    Needs period + 1 values (period price changes).
    """
    if period <= 0:
        raise ValueError(f"RSI period must be positive, got {period}")
    closes = _floats(values)
    if len(closes) < period + 1:
        raise DataInsufficiencyError(
            f"RSI({period}) needs {period + 1} values, got {len(closes)}",
            required=period + 1,
            available=len(closes),
        )

    changes = [b - a for a, b in zip(closes, closes[1:])]
    gains = [max(c, 0.0) for c in changes]
    losses = [max(-c, 0.0) for c in changes]

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        # Flat series: no net movement either way
        return 50.0 if avg_gain == 0 else 100.0

    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def composite_score(ema_short: float, ema_long: float, rsi_value: float) -> float:
    if ema_long == 0:
        return 0.0
    return (ema_short / ema_long) * (1.0 - abs(rsi_value - 50.0) / 50.0)


def compute_indicators(
    closes: Sequence,
    ema_short_period: int = DEFAULT_EMA_SHORT,
    ema_long_period: int = DEFAULT_EMA_LONG,
    rsi_period: int = DEFAULT_RSI_PERIOD,
) -> IndicatorResult:
    """
    Compute all indicators for a close series (oldest first).

    Raises:
        DataInsufficiencyError: fewer closes than the longest lookback needs
    """
    required = max(ema_long_period, ema_short_period, rsi_period + 1)
    if len(closes) < required:
        raise DataInsufficiencyError(
            f"Need {required} closes, got {len(closes)}",
            required=required,
            available=len(closes),
        )

    short = ema(closes, ema_short_period)
    long_ = ema(closes, ema_long_period)
    rsi_value = rsi(closes, rsi_period)
    score = composite_score(short, long_, rsi_value)

    for name, value in (("ema_short", short), ("ema_long", long_), ("rsi", rsi_value), ("score", score)):
        if not math.isfinite(value):
            raise ValueError(f"Indicator {name} is not finite: {value}")

    return IndicatorResult(ema_short=short, ema_long=long_, rsi=rsi_value, score=score)
