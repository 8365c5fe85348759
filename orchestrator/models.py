"""
Orchestrator - Models.

============================================================
PURPOSE
============================================================
Process configuration and job bookkeeping for the scheduler.

Strategy parameters are NOT here; they are read from the
settings store at the start of every strategy run.

============================================================
"""

import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from dotenv import load_dotenv

from core.exceptions import ConfigurationError


load_dotenv()


# ============================================================
# ENUMS
# ============================================================


class JobName(str, Enum):
    """Scheduled jobs."""

    STRATEGY = "strategy"
    """Evaluate the strategy and execute its intents."""

    RECONCILE = "reconcile"
    """Diff the position ledger against exchange balances."""

    SWEEP = "sweep"
    """Cancel stale resting orders."""

    OPTIMIZE = "optimize"
    """Nightly performance analysis and tuning."""


class JobStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


# ============================================================
# CONFIGURATION
# ============================================================


@dataclass
class OrchestratorConfig:
    """Configuration for the scheduler process."""

    tick_seconds: float = 30.0
    """Scheduler tick interval."""

    sweep_interval_minutes: int = 5
    """Stale-order sweep cadence."""

    optimize_hour_utc: int = 0
    optimize_minute_utc: int = 5
    """Nightly optimization time."""

    log_level: str = "INFO"
    """Logging level."""

    use_mock_exchange: bool = False
    """Trade against MockExchangeAdapter instead of Kraken."""

    dry_run: bool = False
    """Evaluate but never place orders."""

    database_url: Optional[str] = None
    """Overrides DATABASE_URL when set."""

    def __post_init__(self):
        if self.tick_seconds <= 0:
            raise ConfigurationError(
                "tick_seconds must be positive",
                config_key="SCHEDULER_TICK_SECONDS",
                actual_value=self.tick_seconds,
            )
        if not 1 <= self.sweep_interval_minutes <= 60:
            raise ConfigurationError(
                "sweep_interval_minutes must be in 1..60",
                config_key="SWEEP_INTERVAL_MINUTES",
                actual_value=self.sweep_interval_minutes,
            )

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Load configuration from environment variables."""
        try:
            return cls(
                tick_seconds=float(os.getenv("SCHEDULER_TICK_SECONDS", "30")),
                sweep_interval_minutes=int(os.getenv("SWEEP_INTERVAL_MINUTES", "5")),
                log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
                use_mock_exchange=os.getenv("USE_MOCK_EXCHANGE", "false").lower() == "true",
                dry_run=os.getenv("DRY_RUN", "false").lower() == "true",
                database_url=os.getenv("DATABASE_URL"),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid scheduler configuration: {e}") from e


# ============================================================
# JOB RUNS
# ============================================================


@dataclass
class JobRun:
    """One execution of a scheduled job."""

    job: JobName
    slot: str
    """Schedule slot that triggered the run."""

    started_at: datetime
    status: JobStatus = JobStatus.RUNNING
    finished_at: Optional[datetime] = None
    summary: str = ""
    error: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()
