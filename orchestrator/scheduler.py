"""
Orchestrator - Scheduler.

============================================================
PURPOSE
============================================================
Run the strategy, reconciliation, sweep and optimization jobs
on their own cadences against shared persistent state.

- One PeriodicTrigger per job
- A trigger fires at most once per schedule slot
- A trigger whose previous run is still going is skipped
- Running jobs are never cancelled
- A job exception is logged; the scheduler keeps going

============================================================
SCHEDULES
============================================================
strategy   minute 0 of hours where hour % CADENCE_HOURS == 0
reconcile  minute 0 of every hour
sweep      every 5 minutes
optimize   00:05 UTC daily

============================================================
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.clock import ClockProtocol, SystemClock

from .models import JobName, JobRun, JobStatus


logger = logging.getLogger(__name__)

SlotFunction = Callable[[datetime], Optional[str]]
JobFunction = Callable[[], Awaitable[Any]]


# ============================================================
# SLOT FUNCTIONS
# ============================================================


def cadence_slot(cadence_hours: Callable[[], int]) -> SlotFunction:
    """Top of every N-th hour; N is re-read on every check."""

    def slot(now: datetime) -> Optional[str]:
        if now.minute != 0:
            return None
        every = cadence_hours()
        if every <= 0 or now.hour % every != 0:
            return None
        return now.strftime("%Y-%m-%dT%H:00")

    return slot


def hourly_slot(now: datetime) -> Optional[str]:
    if now.minute != 0:
        return None
    return now.strftime("%Y-%m-%dT%H:00")


def minutes_slot(every_minutes: int) -> SlotFunction:
    def slot(now: datetime) -> Optional[str]:
        if now.minute % every_minutes != 0:
            return None
        return now.strftime("%Y-%m-%dT%H:%M")

    return slot


def daily_slot(hour: int, minute: int) -> SlotFunction:
    def slot(now: datetime) -> Optional[str]:
        if now.hour != hour or now.minute != minute:
            return None
        return now.strftime("%Y-%m-%d")

    return slot


# ============================================================
# TRIGGER
# ============================================================


class PeriodicTrigger:
    """Runs one job when its slot function reports a new slot."""

    def __init__(
        self,
        job: JobName,
        slot_for: SlotFunction,
        run: JobFunction,
        clock: Optional[ClockProtocol] = None,
        max_history: int = 50,
    ):
        self.job = job
        self._slot_for = slot_for
        self._run = run
        self._clock = clock or SystemClock()
        self._max_history = max_history

        self._last_slot: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._history: List[JobRun] = []

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_slot(self) -> Optional[str]:
        return self._last_slot

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def get_history(self) -> List[JobRun]:
        return list(self._history)

    def check(self, now: datetime) -> Optional[asyncio.Task]:
        """
        Start the job if `now` falls in a slot not seen before.

        Returns:
            The started task, or None
        """
        try:
            slot = self._slot_for(now)
        except Exception as e:
            logger.error(f"Schedule check for {self.job.value} failed: {e}")
            return None

        if slot is None or slot == self._last_slot:
            return None
        self._last_slot = slot

        if self.is_running:
            logger.warning(f"Skipping {self.job.value} for {slot}: previous run still in progress")
            self._remember(JobRun(
                job=self.job, slot=slot, started_at=now,
                status=JobStatus.SKIPPED, finished_at=now,
                summary="previous run still in progress",
            ))
            return None

        run = JobRun(job=self.job, slot=slot, started_at=now)
        self._remember(run)
        self._task = asyncio.create_task(self._execute(run))
        return self._task

    async def run_now(self) -> JobRun:
        """Run immediately, outside the schedule, and wait for it."""
        now = self._clock.now()
        run = JobRun(job=self.job, slot=f"manual-{now.isoformat()}", started_at=now)
        self._remember(run)
        await self._execute(run)
        return run

    async def _execute(self, run: JobRun) -> None:
        logger.info(f"Job {self.job.value} started (slot {run.slot})")
        try:
            outcome = await self._run()
            run.status = JobStatus.SUCCEEDED
            run.summary = _summarize(outcome)
        except Exception as e:
            run.status = JobStatus.FAILED
            run.error = str(e)
            logger.error(f"Job {self.job.value} failed: {e}", exc_info=True)
        finally:
            run.finished_at = self._clock.now()
        logger.info(f"Job {self.job.value} {run.status.value.lower()} {run.summary}".rstrip())

    def _remember(self, run: JobRun) -> None:
        self._history.append(run)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]


def _summarize(outcome: Any) -> str:
    if outcome is None:
        return ""
    summary = getattr(outcome, "summary", None)
    if callable(summary):
        return summary()
    return str(outcome)


# ============================================================
# SCHEDULER
# ============================================================


class TradingScheduler:
    """Tick loop over the periodic triggers."""

    def __init__(
        self,
        triggers: List[PeriodicTrigger],
        clock: Optional[ClockProtocol] = None,
        tick_seconds: float = 30.0,
    ):
        self._triggers: Dict[JobName, PeriodicTrigger] = {t.job: t for t in triggers}
        self._clock = clock or SystemClock()
        self._tick_seconds = tick_seconds
        self._stop_requested = False

    @property
    def triggers(self) -> Dict[JobName, PeriodicTrigger]:
        return dict(self._triggers)

    def get_trigger(self, job: JobName) -> PeriodicTrigger:
        return self._triggers[job]

    def tick(self) -> List[asyncio.Task]:
        """Check every trigger once. Returns the tasks started."""
        now = self._clock.now()
        started = []
        for trigger in self._triggers.values():
            task = trigger.check(now)
            if task is not None:
                started.append(task)
        return started

    async def run_forever(self) -> None:
        logger.info(
            f"Scheduler started: {', '.join(j.value for j in self._triggers)} "
            f"(tick {self._tick_seconds}s)"
        )
        self._stop_requested = False
        try:
            while not self._stop_requested:
                self.tick()
                await self._clock.sleep(self._tick_seconds)
        finally:
            await self.wait_for_running()
            logger.info("Scheduler stopped")

    def request_stop(self) -> None:
        self._stop_requested = True

    async def wait_for_running(self) -> None:
        """Let in-flight jobs finish; they are never cancelled."""
        tasks = [t.task for t in self._triggers.values() if t.is_running]
        if tasks:
            logger.info(f"Waiting for {len(tasks)} running job(s)")
            await asyncio.gather(*tasks, return_exceptions=True)
