"""
Tuning Engine - Auto-Tuner.

============================================================
PURPOSE
============================================================
Nightly job:
1. Analyze the previous UTC day (FIFO round-trips, metrics)
2. Generate recommendations
3. Auto-apply the conservative ones
4. Append an optimization report (always, even on failure)

============================================================
AUTO-APPLY POLICY
============================================================
- Integer settings (CYCLES, POSITIONS, HOURS, COUNT): |Δ| <= 1
- Continuous settings: |Δ| / |current| <= 0.5, never from zero
- Δ is measured against the value stored at apply time
- At most one change per parameter per run

Anything else is recorded for manual approval.

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Set

from core.clock import ClockProtocol, SystemClock
from core.exceptions import TradingException
from monitoring.models import EventSeverity, EventType, TradingEvent
from monitoring.notifier import EventPublisher, NullEventPublisher
from storage.ledger import TradingLedger
from storage.types import PositionStatus, StoredOptimizationReport
from strategy_engine.config import StrategySettings, is_integer_setting
from strategy_engine.settings import SettingsService

from .metrics import PerformanceMetrics, compute_metrics
from .recommendations import Recommendation, TuningThresholds, generate_recommendations


logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TUNER_SOURCE = "auto_tuner"


@dataclass
class TuningResult:
    """Outcome of one tuning run."""

    window_start: datetime
    window_end: datetime
    status: str
    metrics: Optional[PerformanceMetrics] = None
    recommendations: List[Recommendation] = field(default_factory=list)
    applied: List[Recommendation] = field(default_factory=list)
    error: Optional[str] = None
    report: Optional[StoredOptimizationReport] = None

    def summary(self) -> str:
        text = f"{self.status}: {len(self.recommendations)} recommendations, {len(self.applied)} applied"
        return f"{text} ({self.error})" if self.error else text


def analysis_window(now: datetime):
    """Previous UTC day: [yesterday 00:00, today 00:00)."""
    end = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return end - timedelta(days=1), end


def is_conservative(
    parameter: str,
    current: Decimal,
    proposed: Decimal,
    thresholds: TuningThresholds,
) -> bool:
    """True when a change is small enough to apply without review."""
    delta = abs(proposed - current)
    if is_integer_setting(parameter):
        return delta <= thresholds.max_integer_step
    if current == 0:
        return False
    relative = delta / abs(current)
    return relative <= Decimal(str(thresholds.max_relative_change))


class AutoTuner:
    """Performance analyzer and bounded settings tuner."""

    def __init__(
        self,
        ledger: TradingLedger,
        settings_service: SettingsService,
        clock: Optional[ClockProtocol] = None,
        publisher: Optional[EventPublisher] = None,
        thresholds: Optional[TuningThresholds] = None,
        nav_history_window: int = 100,
    ):
        self._ledger = ledger
        self._settings = settings_service
        self._clock = clock or SystemClock()
        self._publisher = publisher or NullEventPublisher()
        self._thresholds = thresholds or TuningThresholds()
        self._nav_window = nav_history_window

    @property
    def thresholds(self) -> TuningThresholds:
        return self._thresholds

    async def run(self) -> TuningResult:
        """Analyze, recommend, apply and report. Never raises."""
        start, end = analysis_window(self._clock.now())
        result = TuningResult(window_start=start, window_end=end, status=STATUS_COMPLETED)
        logger.info(f"Optimization run for {start.date()}")

        snapshot: Optional[StrategySettings] = None
        try:
            snapshot = self._settings.load_snapshot()
            result.metrics = self.analyze(start, end)
            result.recommendations = generate_recommendations(
                result.metrics, snapshot, self._thresholds,
            )
            if self._thresholds.auto_apply:
                result.applied = await self.apply(result.recommendations)
        except Exception as e:
            logger.error(f"Optimization run failed: {e}", exc_info=True)
            result.status = STATUS_FAILED
            result.error = str(e)

        try:
            result.report = self._ledger.append_optimization_report(
                run_date=start,
                status=result.status,
                metrics=result.metrics.to_dict() if result.metrics else {},
                current_settings=snapshot.to_dict() if snapshot else {},
                recommendations=[r.to_dict() for r in result.recommendations],
                applied_changes=[r.to_dict() for r in result.applied],
                error=result.error,
            )
        except TradingException as e:
            logger.error(f"Failed to store optimization report: {e}")

        logger.info(
            f"Optimization {result.status}: {len(result.recommendations)} recommendations, "
            f"{len(result.applied)} applied"
        )
        return result

    # --------------------------------------------------------
    # ANALYSIS
    # --------------------------------------------------------

    def analyze(self, start: datetime, end: datetime) -> PerformanceMetrics:
        trades = self._ledger.get_trades(until=end)
        closed = self._ledger.get_positions(status=PositionStatus.CLOSED)
        nav_history = self._ledger.get_nav_history(self._nav_window)
        metrics = compute_metrics(trades, start, end, closed, nav_history)
        logger.info(
            f"Metrics: {metrics.total_trades} round-trips, win rate {metrics.win_rate:.1f}%, "
            f"profit ${metrics.total_profit:.4f}, fees ${metrics.total_fees:.4f}"
        )
        return metrics

    # --------------------------------------------------------
    # AUTO-APPLY
    # --------------------------------------------------------

    async def apply(self, recommendations: List[Recommendation]) -> List[Recommendation]:
        applied: List[Recommendation] = []
        changed: Set[str] = set()

        for rec in recommendations:
            if rec.parameter in changed:
                logger.info(f"{rec.parameter} already changed this run, recording only")
                continue
            try:
                current = Decimal(str(self._settings.get_value(rec.parameter)))
                proposed = Decimal(rec.new_value)
                if not is_conservative(rec.parameter, current, proposed, self._thresholds):
                    logger.warning(
                        f"Skipping {rec.parameter} {current} -> {proposed}: change too large"
                    )
                    continue
                self._settings.update_setting(rec.parameter, rec.new_value, source=TUNER_SOURCE)
            except (TradingException, InvalidOperation) as e:
                logger.error(f"Failed to apply {rec.parameter}: {e}")
                continue

            changed.add(rec.parameter)
            applied.append(rec)
            logger.info(f"Applied {rec.parameter}: {current} -> {proposed} ({rec.reason})")
            await self._publish_applied(rec, current)

        return applied

    async def _publish_applied(self, rec: Recommendation, previous: Decimal) -> None:
        try:
            await self._publisher.publish(TradingEvent(
                event_type=EventType.SETTINGS_AUTO_APPLIED,
                severity=EventSeverity.INFO,
                title=f"{rec.parameter} auto-tuned",
                message=f"{rec.parameter}: {previous} -> {rec.new_value}. {rec.reason}",
                details=rec.to_dict(),
                timestamp=self._clock.now(),
            ))
        except Exception as e:
            logger.error(f"Event publish failed: {e}")
