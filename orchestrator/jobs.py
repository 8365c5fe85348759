"""
Orchestrator - Jobs.

============================================================
PURPOSE
============================================================
Wire the trading core together and expose one coroutine per
scheduled job.

    strategy:  settings snapshot -> evaluator -> lifecycle manager
    reconcile: ledger vs exchange balances (+ NAV, + sweep)
    sweep:     cancel stale resting orders
    optimize:  nightly analysis and bounded tuning

Every run re-reads settings and positions from the durable
store; nothing is carried in memory between runs.

============================================================
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from core.clock import ClockProtocol, SystemClock
from execution_engine.adapters import ExchangeAdapter, KrakenAdapter, MockExchangeAdapter
from execution_engine.config import ExecutionEngineConfig
from execution_engine.gateway import ExchangeGateway
from execution_engine.order_manager import ExecutionReport, OrderLifecycleManager
from execution_engine.reconciliation import PositionReconciler, ReconciliationResult
from monitoring.notifier import EventPublisher, build_event_publisher
from storage.database import Database
from storage.ledger import TradingLedger
from strategy_engine.evaluator import StrategyEvaluator
from strategy_engine.settings import SettingsService
from strategy_engine.types import CycleResult
from tuning_engine.recommendations import TuningThresholds
from tuning_engine.tuner import AutoTuner, TuningResult

from .models import JobName, OrchestratorConfig
from .scheduler import (
    PeriodicTrigger,
    TradingScheduler,
    cadence_slot,
    daily_slot,
    hourly_slot,
    minutes_slot,
)


logger = logging.getLogger(__name__)


@dataclass
class StrategyRunResult:
    """One strategy job: the cycle plus what execution made of it."""

    cycle: CycleResult
    executions: List[ExecutionReport] = field(default_factory=list)
    dry_run: bool = False

    def summary(self) -> str:
        text = self.cycle.summary()
        if self.executions:
            filled = sum(1 for r in self.executions if r.succeeded)
            text += f"; executed {filled}/{len(self.executions)}"
        if self.dry_run:
            text += " (dry run)"
        return text


class TradingRuntime:
    """All collaborators for one process."""

    def __init__(
        self,
        ledger: TradingLedger,
        adapter: ExchangeAdapter,
        execution_config: Optional[ExecutionEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        publisher: Optional[EventPublisher] = None,
        thresholds: Optional[TuningThresholds] = None,
        dry_run: bool = False,
    ):
        self.clock = clock or SystemClock()
        self.config = execution_config or ExecutionEngineConfig()
        self.ledger = ledger
        self.adapter = adapter
        self.publisher = publisher or build_event_publisher(self.clock)
        self.dry_run = dry_run

        self.gateway = ExchangeGateway(adapter, self.config, ledger, self.clock)
        self.settings = SettingsService(ledger)
        self.order_manager = OrderLifecycleManager(
            self.gateway, ledger, self.config, self.clock, self.publisher,
        )
        self.reconciler = PositionReconciler(
            self.gateway,
            ledger,
            self.config.reconciliation,
            self.clock,
            self.publisher,
            order_manager=self.order_manager,
        )
        self.evaluator = StrategyEvaluator(self.gateway, ledger, self.clock)
        self.tuner = AutoTuner(
            ledger, self.settings, self.clock, self.publisher, thresholds,
            nav_history_window=self.config.reconciliation.nav_history_window,
        )

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self) -> None:
        await self.adapter.connect()

    async def close(self) -> None:
        await self.adapter.disconnect()
        await self.publisher.close()
        self.ledger.database.dispose()

    # --------------------------------------------------------
    # JOBS
    # --------------------------------------------------------

    async def run_strategy(self, dry_run: Optional[bool] = None) -> StrategyRunResult:
        """Load a fresh snapshot, evaluate, then execute the intents."""
        dry_run = self.dry_run if dry_run is None else dry_run
        snapshot = self.settings.load_snapshot()
        cycle = await self.evaluator.run_cycle(snapshot)
        result = StrategyRunResult(cycle=cycle, dry_run=dry_run)

        if dry_run or not cycle.intents:
            return result

        result.executions = await self.order_manager.execute_intents(cycle.intents)
        for report in result.executions:
            logger.info(
                f"{report.side.value} {report.symbol}: {report.status.value} "
                f"{report.filled_quantity}/{report.requested_quantity}"
            )
        return result

    async def run_reconciliation(self) -> ReconciliationResult:
        universe = self.settings.load_snapshot().universe
        return await self.reconciler.reconcile(universe)

    async def run_sweep(self) -> List[str]:
        return await self.order_manager.sweep_stale_orders()

    async def run_optimization(self) -> TuningResult:
        return await self.tuner.run()

    # --------------------------------------------------------
    # SCHEDULING
    # --------------------------------------------------------

    def current_cadence(self) -> int:
        return self.settings.load_snapshot().cadence_hours

    def build_scheduler(self, config: Optional[OrchestratorConfig] = None) -> TradingScheduler:
        config = config or OrchestratorConfig()
        triggers = [
            PeriodicTrigger(JobName.STRATEGY, cadence_slot(self.current_cadence), self.run_strategy, self.clock),
            PeriodicTrigger(JobName.RECONCILE, hourly_slot, self.run_reconciliation, self.clock),
            PeriodicTrigger(JobName.SWEEP, minutes_slot(config.sweep_interval_minutes), self.run_sweep, self.clock),
            PeriodicTrigger(
                JobName.OPTIMIZE,
                daily_slot(config.optimize_hour_utc, config.optimize_minute_utc),
                self.run_optimization,
                self.clock,
            ),
        ]
        return TradingScheduler(triggers, self.clock, config.tick_seconds)


def build_runtime(
    config: OrchestratorConfig,
    clock: Optional[ClockProtocol] = None,
    database: Optional[Database] = None,
) -> TradingRuntime:
    """Build the runtime from process configuration and the environment."""
    clock = clock or SystemClock()
    if database is None:
        database = Database.from_url(config.database_url) if config.database_url else Database.from_env()
    ledger = TradingLedger(database, clock)

    execution_config = ExecutionEngineConfig.from_env()
    execution_config.dry_run = execution_config.dry_run or config.dry_run

    if config.use_mock_exchange:
        logger.warning("Using MockExchangeAdapter - no real orders will be placed")
        adapter: ExchangeAdapter = MockExchangeAdapter()
    else:
        adapter = KrakenAdapter(execution_config.exchange, execution_config.timeout)

    return TradingRuntime(
        ledger,
        adapter,
        execution_config,
        clock,
        thresholds=TuningThresholds.from_env(),
        dry_run=config.dry_run,
    )
