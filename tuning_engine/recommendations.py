"""
Tuning Engine - Recommendation Rules.

============================================================
PURPOSE
============================================================
Threshold heuristics that turn period metrics into proposed
setting changes. Rules are evaluated independently; several
may fire in one run, including several for the same setting.

Rules never raise: a failing rule is logged and skipped.

============================================================
RULES
============================================================
1. Low win rate + fee drag          -> MIN_PROFIT_PCT +1 (cap 8)
2. Trading too often                -> COOLDOWN_CYCLES +1 (cap 5)
3. Tiny average profit              -> MIN_PROFIT_PCT +2 (cap 10)
4. Good win rate, small profits     -> MAX_POSITIONS -1
5. Losses larger than wins          -> MAX_LOSS_PCT -0.5 (floor 1)
6. Fees exceed / dominate profit    -> MIN_PROFIT_PCT +1, MAX_POSITIONS -1
7. Winners exit too early           -> MIN_PROFIT_PCT +0.5 (cap 4)
8. Losing with low win rate         -> MAX_POSITIONS -1
9. Long holds, small profit         -> MIN_PROFIT_PCT -0.5 (floor 2.5)

A MAX_POSITIONS reduction is preceded by a STRONG_SIGNAL_COUNT
reduction when the count would otherwise reach the new limit.

============================================================
"""

import logging
import os
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import ConfigurationError
from strategy_engine.config import StrategySettings

from .metrics import PerformanceMetrics


logger = logging.getLogger(__name__)


# ============================================================
# THRESHOLDS
# ============================================================


@dataclass(frozen=True)
class TuningThresholds:
    """Hand-tuned heuristic constants, overridable for experiments."""

    # Rule 1
    low_win_rate_pct: float = 40.0
    fee_drag_ratio: float = 0.3
    min_profit_step: Decimal = Decimal("1")
    min_profit_cap: Decimal = Decimal("8")

    # Rule 2
    max_trades_per_day: int = 5
    fee_trades_per_day: int = 3
    cooldown_cap: int = 5

    # Rule 3
    tiny_avg_profit: float = 0.01
    many_trades: int = 10
    min_profit_big_step: Decimal = Decimal("2")
    min_profit_big_cap: Decimal = Decimal("10")

    # Rules 4, 6, 8
    good_win_rate_pct: float = 50.0
    small_avg_profit: float = 0.05
    positions_floor: int = 2

    # Rule 5
    large_loss_usd: float = 0.5
    max_loss_step: Decimal = Decimal("0.5")
    max_loss_floor: Decimal = Decimal("1")

    # Rule 6
    fee_heavy_trades: int = 3
    fee_half_ratio: float = 0.5
    fee_half_trades: int = 5

    # Rule 7
    early_exit_avg_profit: float = 0.10
    early_exit_max_min_profit: Decimal = Decimal("2.5")
    early_exit_step: Decimal = Decimal("0.5")
    early_exit_cap: Decimal = Decimal("4")

    # Rule 9
    long_hold_hours: float = 24.0
    long_hold_win_rate_pct: float = 45.0
    long_hold_min_profit: Decimal = Decimal("3")
    long_hold_step: Decimal = Decimal("0.5")
    long_hold_floor: Decimal = Decimal("2.5")

    # Auto-apply bounds
    auto_apply: bool = True
    max_integer_step: int = 1
    max_relative_change: float = 0.5

    @classmethod
    def from_env(cls) -> "TuningThresholds":
        """Only the auto-apply policy is read from the environment."""
        raw_ratio = os.getenv("TUNER_MAX_RELATIVE_CHANGE", "0.5")
        try:
            ratio = float(raw_ratio)
        except ValueError:
            raise ConfigurationError(
                "TUNER_MAX_RELATIVE_CHANGE must be a number",
                config_key="TUNER_MAX_RELATIVE_CHANGE",
                actual_value=raw_ratio,
            )
        if not 0 < ratio <= 0.5:
            raise ConfigurationError(
                "TUNER_MAX_RELATIVE_CHANGE must be in (0, 0.5]",
                config_key="TUNER_MAX_RELATIVE_CHANGE",
                actual_value=raw_ratio,
            )
        return cls(
            auto_apply=os.getenv("TUNER_AUTO_APPLY", "true").lower() == "true",
            max_relative_change=ratio,
        )


# ============================================================
# RECOMMENDATION
# ============================================================


@dataclass(frozen=True)
class Recommendation:
    """One proposed setting change."""

    parameter: str
    old_value: str
    new_value: str
    reason: str
    expected_improvement: str
    rule: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _fmt(value: Decimal) -> str:
    return format(value.normalize(), "f")


def _fee_share(metrics: PerformanceMetrics) -> float:
    return metrics.total_fees / max(metrics.total_profit, 0.01) * 100


# ============================================================
# RULES
# ============================================================

Rule = Callable[[PerformanceMetrics, StrategySettings, TuningThresholds], List[Recommendation]]


def _raise_min_profit(
    settings: StrategySettings,
    step: Decimal,
    cap: Decimal,
    reason: str,
    expected: str,
    rule: str,
) -> List[Recommendation]:
    current = settings.min_profit_pct
    suggested = min(current + step, cap)
    if suggested <= current:
        return []
    return [Recommendation("MIN_PROFIT_PCT", _fmt(current), _fmt(suggested), reason, expected, rule)]


def _reduce_positions(
    settings: StrategySettings,
    floor: int,
    reason: str,
    expected: str,
    rule: str,
) -> List[Recommendation]:
    current = settings.max_positions
    if current <= floor:
        return []
    suggested = current - 1
    recs: List[Recommendation] = []
    strong = settings.strong_signal_count
    if suggested > 1 and strong >= suggested:
        # Applied first so STRONG_SIGNAL_COUNT stays below MAX_POSITIONS
        recs.append(Recommendation(
            "STRONG_SIGNAL_COUNT", str(strong), str(suggested - 1),
            f"Keeps one weak slot after reducing MAX_POSITIONS to {suggested}",
            "Lowest-ranked position can still be trimmed",
            rule,
        ))
    recs.append(Recommendation("MAX_POSITIONS", str(current), str(suggested), reason, expected, rule))
    return recs


def low_win_rate_fee_drag(m: PerformanceMetrics, s: StrategySettings, t: TuningThresholds) -> List[Recommendation]:
    if not (m.win_rate <= t.low_win_rate_pct and m.total_fees > m.total_profit * t.fee_drag_ratio):
        return []
    return _raise_min_profit(
        s, t.min_profit_step, t.min_profit_cap,
        f"Win rate is {m.win_rate:.1f}% and fees are {_fee_share(m):.1f}% of profits",
        "Higher profit threshold should reduce losing trades and fee drag",
        "low_win_rate_fee_drag",
    )


def excessive_frequency(m: PerformanceMetrics, s: StrategySettings, t: TuningThresholds) -> List[Recommendation]:
    fees_exceed = m.total_fees > m.total_profit
    if not (m.trades_per_day > t.max_trades_per_day or (fees_exceed and m.trades_per_day > t.fee_trades_per_day)):
        return []
    current = s.cooldown_cycles
    suggested = min(current + 1, t.cooldown_cap)
    if suggested <= current:
        return []
    suffix = " and fees exceed profits" if fees_exceed else ""
    return [Recommendation(
        "COOLDOWN_CYCLES", str(current), str(suggested),
        f"Trading {m.trades_per_day} times per day is too frequent{suffix}",
        "Longer cooldown reduces trading frequency and fees",
        "excessive_frequency",
    )]


def tiny_average_profit(m: PerformanceMetrics, s: StrategySettings, t: TuningThresholds) -> List[Recommendation]:
    if not (m.avg_profit_per_trade < t.tiny_avg_profit
            and (m.total_trades > t.many_trades or m.total_fees > m.total_profit)):
        return []
    return _raise_min_profit(
        s, t.min_profit_big_step, t.min_profit_big_cap,
        f"Average profit per trade is only ${m.avg_profit_per_trade:.4f}",
        "Higher threshold needed to overcome fees and make meaningful profits",
        "tiny_average_profit",
    )


def small_winners(m: PerformanceMetrics, s: StrategySettings, t: TuningThresholds) -> List[Recommendation]:
    if not (m.win_rate > t.good_win_rate_pct and m.avg_profit_per_trade < t.small_avg_profit):
        return []
    return _reduce_positions(
        s, t.positions_floor,
        f"Win rate is good ({m.win_rate:.1f}%) but profits are small",
        "Fewer positions allows larger allocations and better profit per trade",
        "small_winners",
    )


def asymmetric_losses(m: PerformanceMetrics, s: StrategySettings, t: TuningThresholds) -> List[Recommendation]:
    if not (m.max_loss < -t.large_loss_usd and abs(m.max_loss) > m.max_profit):
        return []
    current = s.max_loss_pct
    suggested = max(current - t.max_loss_step, t.max_loss_floor)
    if suggested >= current:
        return []
    return [Recommendation(
        "MAX_LOSS_PCT", _fmt(current), _fmt(suggested),
        f"Maximum loss (${m.max_loss:.2f}) exceeds maximum profit (${m.max_profit:.2f})",
        "Tighter stop-loss limits maximum losses",
        "asymmetric_losses",
    )]


def fee_dominance(m: PerformanceMetrics, s: StrategySettings, t: TuningThresholds) -> List[Recommendation]:
    if m.total_fees > m.total_profit and m.total_trades > t.fee_heavy_trades:
        reason = f"Fees (${m.total_fees:.2f}) exceed profits (${m.total_profit:.2f})"
        return _raise_min_profit(
            s, t.min_profit_step, t.min_profit_cap,
            f"{reason} - need larger profit targets",
            "Higher profit threshold needed to overcome fee drag",
            "fee_dominance",
        ) + _reduce_positions(
            s, t.positions_floor,
            f"{reason} - reduce trading frequency",
            "Fewer positions = fewer trades = lower fees",
            "fee_dominance",
        )
    if m.total_fees > m.total_profit * t.fee_half_ratio and m.total_trades > t.fee_half_trades:
        return _reduce_positions(
            s, t.positions_floor,
            f"Fees (${m.total_fees:.2f}) are {_fee_share(m):.1f}% of profits",
            "Fewer positions = fewer trades = lower fees",
            "fee_dominance",
        )
    return []


def early_exits(m: PerformanceMetrics, s: StrategySettings, t: TuningThresholds) -> List[Recommendation]:
    if not (m.win_rate > t.good_win_rate_pct and 0 < m.avg_profit_per_trade < t.early_exit_avg_profit):
        return []
    if s.min_profit_pct > t.early_exit_max_min_profit:
        return []
    return _raise_min_profit(
        s, t.early_exit_step, t.early_exit_cap,
        f"Win rate is good ({m.win_rate:.1f}%) but avg profit is small "
        f"(${m.avg_profit_per_trade:.4f}) - positions may be exiting too early",
        "Higher exit threshold lets positions run longer before scaling out",
        "early_exits",
    )


def losing_low_win_rate(m: PerformanceMetrics, s: StrategySettings, t: TuningThresholds) -> List[Recommendation]:
    if not (m.win_rate < t.low_win_rate_pct and m.avg_profit_per_trade < 0):
        return []
    return _reduce_positions(
        s, 1,
        f"Win rate is low ({m.win_rate:.1f}%) and losing money",
        "Fewer positions reduces risk of averaging up into weak signals",
        "losing_low_win_rate",
    )


def long_holds(m: PerformanceMetrics, s: StrategySettings, t: TuningThresholds) -> List[Recommendation]:
    if not (m.avg_hold_time_hours > t.long_hold_hours
            and m.avg_profit_per_trade < t.small_avg_profit
            and m.win_rate > t.long_hold_win_rate_pct):
        return []
    current = s.min_profit_pct
    if current <= t.long_hold_min_profit:
        return []
    suggested = max(current - t.long_hold_step, t.long_hold_floor)
    if suggested >= current:
        return []
    return [Recommendation(
        "MIN_PROFIT_PCT", _fmt(current), _fmt(suggested),
        f"Holding positions for {m.avg_hold_time_hours:.1f}h but avg profit is only "
        f"${m.avg_profit_per_trade:.4f}",
        "Lower exit threshold allows earlier full exits",
        "long_holds",
    )]


RULES: List[Rule] = [
    low_win_rate_fee_drag,
    excessive_frequency,
    tiny_average_profit,
    small_winners,
    asymmetric_losses,
    fee_dominance,
    early_exits,
    losing_low_win_rate,
    long_holds,
]


def generate_recommendations(
    metrics: PerformanceMetrics,
    settings: StrategySettings,
    thresholds: Optional[TuningThresholds] = None,
    rules: Optional[List[Rule]] = None,
) -> List[Recommendation]:
    """Run every rule; a rule that raises is logged and skipped."""
    thresholds = thresholds or TuningThresholds()
    recommendations: List[Recommendation] = []
    for rule in rules if rules is not None else RULES:
        try:
            recommendations.extend(rule(metrics, settings, thresholds))
        except Exception as e:
            logger.error(f"Recommendation rule {rule.__name__} failed: {e}", exc_info=True)
    return recommendations
