"""
Tuning Engine - Performance Metrics.

Aggregates one analysis window:
- Round-trips come from FIFO matching over the full history;
  only sells inside the window count
- Fees and trades-per-day count trades inside the window
- ROI comes from the NAV history endpoints
- Hold time averages closed positions (6h when there are none)
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Sequence

from core.clock import ensure_utc

from .fifo import RoundTrip, match_trades


DEFAULT_HOLD_HOURS = 6.0


@dataclass(frozen=True)
class PerformanceMetrics:
    """Metrics for one analysis window."""

    total_trades: int = 0
    """Completed round-trips."""

    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    """Percent, 0..100."""

    avg_profit_per_trade: float = 0.0
    total_profit: float = 0.0
    total_fees: float = 0.0
    roi: float = 0.0
    """Percent, from first to last NAV record."""

    avg_hold_time_hours: float = DEFAULT_HOLD_HOURS
    max_profit: float = 0.0
    max_loss: float = 0.0
    trades_per_day: int = 0
    """Individual buy and sell trades inside the window."""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _in_window(when: datetime, start: datetime, end: datetime) -> bool:
    return start <= ensure_utc(when) < end


def compute_roi(nav_history: Sequence) -> float:
    """ROI % between the oldest and newest NAV records."""
    if not nav_history:
        return 0.0
    start = nav_history[0].nav
    end = nav_history[-1].nav
    if start <= 0:
        return 0.0
    return float((end - start) / start * 100)


def average_hold_hours(closed_positions: Iterable) -> float:
    hours = [
        (ensure_utc(p.closed_at) - ensure_utc(p.opened_at)).total_seconds() / 3600
        for p in closed_positions
        if p.closed_at is not None
    ]
    if not hours:
        return DEFAULT_HOLD_HOURS
    return sum(hours) / len(hours)


def compute_metrics(
    trades: Sequence,
    window_start: datetime,
    window_end: datetime,
    closed_positions: Iterable = (),
    nav_history: Sequence = (),
) -> PerformanceMetrics:
    """
    Args:
        trades: Full trade history (any order)
        window_start: Inclusive, UTC
        window_end: Exclusive, UTC
        closed_positions: Positions with opened_at / closed_at
        nav_history: NAV records oldest first
    """
    start, end = ensure_utc(window_start), ensure_utc(window_end)

    trips: List[RoundTrip] = [
        t for t in match_trades(trades) if _in_window(t.closed_at, start, end)
    ]
    profits = [t.profit for t in trips]
    period_trades = [t for t in trades if _in_window(t.created_at, start, end)]

    count = len(profits)
    total_profit = sum(profits, Decimal("0"))
    wins = sum(1 for p in profits if p > 0)
    losses = sum(1 for p in profits if p < 0)

    return PerformanceMetrics(
        total_trades=count,
        winning_trades=wins,
        losing_trades=losses,
        win_rate=wins / count * 100 if count else 0.0,
        avg_profit_per_trade=float(total_profit / count) if count else 0.0,
        total_profit=float(total_profit),
        total_fees=float(sum((t.fee for t in period_trades), Decimal("0"))),
        roi=compute_roi(nav_history),
        avg_hold_time_hours=average_hold_hours(closed_positions),
        max_profit=float(max(profits + [Decimal("0")])),
        max_loss=float(min(profits + [Decimal("0")])),
        trades_per_day=len(period_trades),
    )
