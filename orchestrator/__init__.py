"""
Orchestrator Package.

============================================================
PURPOSE
============================================================
Process entry point: wires the trading core together, runs the
periodic triggers and exposes the CLI.

Triggers are independent. Each re-reads settings and positions
from the durable store, and none overlaps with its own previous
run.

============================================================
MODULES
============================================================
- models: Process configuration, job names and run records
- scheduler: PeriodicTrigger and TradingScheduler
- jobs: TradingRuntime (collaborator wiring, one coroutine per job)
- cli: argparse command line

============================================================
"""

from .models import (
    JobName,
    JobStatus,
    JobRun,
    OrchestratorConfig,
)
from .scheduler import (
    PeriodicTrigger,
    TradingScheduler,
    cadence_slot,
    hourly_slot,
    minutes_slot,
    daily_slot,
)
from .jobs import (
    StrategyRunResult,
    TradingRuntime,
    build_runtime,
)


__all__ = [
    "JobName",
    "JobStatus",
    "JobRun",
    "OrchestratorConfig",
    "PeriodicTrigger",
    "TradingScheduler",
    "cadence_slot",
    "hourly_slot",
    "minutes_slot",
    "daily_slot",
    "StrategyRunResult",
    "TradingRuntime",
    "build_runtime",
]
