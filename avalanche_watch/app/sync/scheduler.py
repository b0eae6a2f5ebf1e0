"""
Scheduled job runner for the ingestion pipeline.

═══════════════════════════════════════════════════════════════════════════
SCHEDULED JOBS
═══════════════════════════════════════════════════════════════════════════

1. BULLETIN SYNC
   - Every SYNC_INTERVAL_MINUTES (30), aligned to the wall clock (:00, :30)
   - Also runs once at start-up

2. DAILY REMINDERS
   - Every REMINDER_INTERVAL_SECONDS (60), aligned to the minute
   - Matches reminder times against the current minute

═══════════════════════════════════════════════════════════════════════════
CONCURRENCY
═══════════════════════════════════════════════════════════════════════════

Jobs are blocking (HTTP + database), so each run happens on a thread
executor and the event loop stays free. Ticks are single-flight per job:
a tick that arrives while the previous run is still going is recorded as
skipped, never queued behind it. Cross-process exclusion for the sync
itself is the run guard's job (see core/run_guard.py).
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from avalanche_watch.app.core.config import settings
from avalanche_watch.app.core.logging_config import bind_log_context

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Job Status Model
# ═══════════════════════════════════════════════════════════════════════════

class JobStatus(str, Enum):
    """Status of a scheduled job run."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class JobRun:
    """One execution (or skipped tick) of a scheduled job."""
    run_id: str
    job_name: str
    status: JobStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "job_name": self.job_name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "elapsed_seconds": (
                (self.completed_at - self.started_at).total_seconds()
                if self.completed_at else None
            ),
            "error": self.error,
            "result": self.result,
        }


@dataclass
class PeriodicJob:
    name: str
    interval_seconds: float
    func: Callable[[], Any]
    run_on_start: bool = False
    running: bool = field(default=False, repr=False)


def _summarise(value: Any) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return {"value": value}


# Ticks land just after the boundary, never on the previous minute
TICK_MARGIN_SECONDS = 0.05


def seconds_until_next_tick(interval: float, now: Optional[float] = None) -> float:
    """Delay until just after the next wall-clock multiple of ``interval``."""
    now = time.time() if now is None else now
    remaining = interval - (now % interval)
    return (remaining if remaining > 0 else interval) + TICK_MARGIN_SECONDS


# ═══════════════════════════════════════════════════════════════════════════
# Runner
# ═══════════════════════════════════════════════════════════════════════════

class ScheduledJobRunner:
    """
    Runs periodic blocking jobs from an asyncio loop.

    Usage:
        runner = ScheduledJobRunner()
        runner.add_job("bulletin-sync", 1800, sync_service.run_sync, run_on_start=True)

        await runner.start()
        ...
        await runner.stop()
    """

    def __init__(self, history_size: int = 100):
        self._jobs: Dict[str, PeriodicJob] = {}
        self._history: Deque[JobRun] = deque(maxlen=history_size)
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._inflight: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    def add_job(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Any],
        *,
        run_on_start: bool = False,
    ) -> None:
        self._jobs[name] = PeriodicJob(name, interval_seconds, func, run_on_start)

    def job_names(self) -> List[str]:
        return list(self._jobs)

    def history(self, job_name: Optional[str] = None) -> List[JobRun]:
        """Most recent first."""
        runs = [r for r in self._history if job_name is None or r.job_name == job_name]
        return sorted(runs, key=lambda r: r.started_at, reverse=True)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for job in self._jobs.values():
            self._tasks.append(asyncio.create_task(self._job_loop(job)))
        logger.info("Scheduled job runner started (%s)", ", ".join(self._jobs))

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        # Let in-flight runs finish; their threads cannot be cancelled
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
            self._inflight.clear()
        logger.info("Scheduled job runner stopped")

    async def trigger(self, name: str) -> JobRun:
        """Run a job now (single-flight applies) and wait for it."""
        return await self._tick(self._jobs[name])

    # ── Internals ──

    async def _job_loop(self, job: PeriodicJob) -> None:
        if job.run_on_start:
            self._spawn(job)
        while self._running:
            try:
                await asyncio.sleep(seconds_until_next_tick(job.interval_seconds))
                self._spawn(job)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Scheduler error in %s: %s", job.name, e)
                await asyncio.sleep(60)

    def _spawn(self, job: PeriodicJob) -> None:
        task = asyncio.create_task(self._tick(job))
        self._inflight.append(task)
        task.add_done_callback(self._inflight_done)

    def _inflight_done(self, task: asyncio.Task) -> None:
        if task in self._inflight:
            self._inflight.remove(task)

    async def _tick(self, job: PeriodicJob) -> JobRun:
        run = JobRun(
            run_id=uuid.uuid4().hex[:8],
            job_name=job.name,
            status=JobStatus.RUNNING,
            started_at=datetime.now(timezone.utc),
        )
        self._history.append(run)

        if job.running:
            run.status = JobStatus.SKIPPED
            run.completed_at = run.started_at
            logger.info("Job %s still running — tick skipped", job.name)
            return run

        job.running = True
        loop = asyncio.get_running_loop()
        try:
            value = await loop.run_in_executor(None, _call_bound, job, run.run_id)
            run.result = _summarise(value)
            failed = getattr(value, "success", True) is False and not getattr(value, "skipped", False)
            run.status = JobStatus.FAILED if failed else JobStatus.COMPLETED
        except Exception as e:
            logger.exception("Job %s failed", job.name)
            run.status = JobStatus.FAILED
            run.error = str(e)
        finally:
            job.running = False
            run.completed_at = datetime.now(timezone.utc)
        return run


def _call_bound(job: PeriodicJob, run_id: str) -> Any:
    # Executor threads do not inherit the loop's context
    with bind_log_context(run_id=run_id, job=job.name):
        return job.func()


# ═══════════════════════════════════════════════════════════════════════════
# Default Wiring
# ═══════════════════════════════════════════════════════════════════════════

SYNC_JOB = "bulletin-sync"
REMINDER_JOB = "daily-reminders"


def build_default_runner(sync_service, alert_service) -> ScheduledJobRunner:
    """Bulletin sync every 30 min and reminder check every minute."""
    runner = ScheduledJobRunner()
    runner.add_job(
        SYNC_JOB,
        settings.SYNC_INTERVAL_MINUTES * 60,
        sync_service.run_sync,
        run_on_start=True,
    )
    runner.add_job(
        REMINDER_JOB,
        settings.REMINDER_INTERVAL_SECONDS,
        alert_service.dispatch_due_reminders,
    )
    return runner


_runner: Optional[ScheduledJobRunner] = None


def get_scheduler() -> ScheduledJobRunner:
    """Get or create the global runner."""
    global _runner
    if _runner is None:
        from avalanche_watch.app.services import get_alert_service, get_sync_service

        _runner = build_default_runner(get_sync_service(), get_alert_service())
    return _runner
