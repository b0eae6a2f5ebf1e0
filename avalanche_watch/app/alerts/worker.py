"""
worker.py — At-least-once background delivery of queued notification jobs.

A job is an immutable value (``ChangeAlertJob`` / ``ReminderJob``) that
names ids only; the handler reloads rule, subscriber and location when it
runs, so a retried job always sees current data.

═══════════════════════════════════════════════════════════════════════════
RETRY POLICY
═══════════════════════════════════════════════════════════════════════════

    Attempt 1: immediate
    Attempt 2: after DISPATCH_BACKOFF_SECONDS (60s, fixed)
    Attempt 3: after DISPATCH_BACKOFF_SECONDS (final)

A job fails an attempt when its handler raises. After the last attempt
the failure is logged with subscriber, rule and location ids and the job
is dropped.

A backoff never occupies a pool thread: a failed attempt arms a timer
that resubmits the job when it fires, so other pending jobs keep flowing.
Shutting the pool down drops retries that are not yet due (logged as
failures).

``inline=True`` runs first attempts synchronously in the caller's thread
(CLI, tests). Retries are queued instead and run by ``drain()``, which
``shutdown()`` calls; the CLI reaches it only after the sync run guard
has been released.
"""

from __future__ import annotations

import heapq
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy.orm import sessionmaker

from avalanche_watch.app.alerts import messages
from avalanche_watch.app.alerts.dispatcher import NotificationDispatcher
from avalanche_watch.app.alerts.models import (
    ChangeAlertJob,
    DispatchOutcome,
    NotificationKind,
    ReminderJob,
)
from avalanche_watch.app.core.config import settings
from avalanche_watch.app.core.database import session_scope
from avalanche_watch.app.core.logging_config import bind_log_context
from avalanche_watch.app.storage import repository
from avalanche_watch.app.storage.models import MonitoredLocation

logger = logging.getLogger(__name__)

Job = Union[ChangeAlertJob, ReminderJob]


@dataclass(frozen=True)
class RetryConfig:
    """Per-job retry parameters."""
    max_attempts: int = 3
    backoff_seconds: float = 60.0

    @classmethod
    def from_settings(cls) -> RetryConfig:
        return cls(
            max_attempts=settings.DISPATCH_MAX_ATTEMPTS,
            backoff_seconds=settings.DISPATCH_BACKOFF_SECONDS,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Job Handler
# ═══════════════════════════════════════════════════════════════════════════

class NotificationJobHandler:
    """Load the job's entities, render the message, dispatch with raise_errors."""

    def __init__(self, dispatcher: NotificationDispatcher, session_factory: Optional[sessionmaker] = None):
        self.dispatcher = dispatcher
        self._session_factory = session_factory

    def __call__(self, job: Job) -> Optional[DispatchOutcome]:
        if isinstance(job, ChangeAlertJob):
            return self.handle_change(job)
        if isinstance(job, ReminderJob):
            return self.handle_reminder(job)
        raise TypeError(f"Unsupported job type: {type(job).__name__}")

    def handle_change(self, job: ChangeAlertJob) -> Optional[DispatchOutcome]:
        with session_scope(self._session_factory) as session:
            subscriber = repository.get_subscriber(session, job.subscriber_id)
            location = session.get(MonitoredLocation, job.location_id)
            slug = location.slug if location else None

        if subscriber is None:
            logger.warning("Subscriber %d no longer exists — dropping alert", job.subscriber_id,
                           extra={"subscriber_id": job.subscriber_id, "rule_id": job.rule_id})
            return None

        msg = messages.change_message(job.change, rule_id=job.rule_id, location_slug=slug)
        return self.dispatcher.send(
            subscriber, msg.title, msg.body, msg.data,
            kind=NotificationKind.CHANGE,
            location_id=job.location_id,
            raise_errors=True,
        )

    def handle_reminder(self, job: ReminderJob) -> Optional[DispatchOutcome]:
        with session_scope(self._session_factory) as session:
            subscriber = repository.get_subscriber(session, job.subscriber_id)
            location = session.get(MonitoredLocation, job.location_id) if job.location_id else None
            level = None
            if location is not None:
                latest = repository.latest_statuses(session, location.id, limit=1)
                level = latest[0].danger_level_max if latest else None
            name = location.name if location else None
            slug = location.slug if location else None

        if subscriber is None:
            logger.warning("Subscriber %d no longer exists — dropping reminder", job.subscriber_id,
                           extra={"subscriber_id": job.subscriber_id, "rule_id": job.rule_id})
            return None

        msg = messages.reminder_message(
            rule_id=job.rule_id, location_name=name, location_slug=slug, current_level=level,
        )
        return self.dispatcher.send(
            subscriber, msg.title, msg.body, msg.data,
            kind=NotificationKind.REMINDER,
            location_id=job.location_id,
            raise_errors=True,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Worker
# ═══════════════════════════════════════════════════════════════════════════

class DispatchWorker:
    """
    Runs jobs with retry on a thread pool.

    Usage:
        worker = DispatchWorker(NotificationJobHandler(dispatcher))
        worker.submit(ChangeAlertJob(rule_id=1, subscriber_id=7, change=change))
        worker.shutdown()

    ``submit`` returns a Future that resolves to True once an attempt
    succeeds, or False once the last attempt has failed.
    """

    def __init__(
        self,
        handler: Callable[[Job], Any],
        *,
        retry: Optional[RetryConfig] = None,
        max_workers: Optional[int] = None,
        inline: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._handler = handler
        self.retry = retry or RetryConfig.from_settings()
        self.inline = inline
        self._sleep = sleep
        self._clock = clock
        self._executor = None if inline else ThreadPoolExecutor(
            max_workers=max_workers or settings.DISPATCH_WORKERS,
            thread_name_prefix="dispatch",
        )
        self._lock = threading.Lock()
        self._closing = False
        self._timers: Dict[int, Tuple[threading.Timer, Job, int, Future]] = {}
        self._pending: List[Tuple[float, int, Job, int, Future]] = []
        self._seq = 0
        self._stats: Dict[str, int] = {"submitted": 0, "completed": 0, "failed": 0, "retries": 0}

    def submit(self, job: Job) -> Future:
        self._bump("submitted")
        future: Future = Future()
        self._start(job, 1, future)
        return future

    def drain(self) -> None:
        """Run queued inline retries in due order, waiting out each backoff."""
        while True:
            with self._lock:
                if not self._pending:
                    return
                due, _, job, attempt, future = heapq.heappop(self._pending)
            wait = due - self._clock()
            if wait > 0:
                self._sleep(wait)
            self._attempt(job, attempt, future)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)

    def shutdown(self, wait: bool = True) -> None:
        """Inline mode drains retries; pool mode drops retries not yet due."""
        if self._executor is None:
            self.drain()
            return

        with self._lock:
            self._closing = True
            timers, self._timers = self._timers, {}
        for timer, job, attempt, future in timers.values():
            timer.cancel()
            self._give_up(job, attempt - 1, "worker shut down before retry", future)
        self._executor.shutdown(wait=wait)

    # ── Internals ──

    def _bump(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1

    def _start(self, job: Job, attempt: int, future: Future) -> None:
        if self._executor is None:
            self._attempt(job, attempt, future)
        else:
            self._executor.submit(self._attempt, job, attempt, future)

    def _attempt(self, job: Job, attempt: int, future: Future) -> None:
        try:
            with bind_log_context(job=job.describe(), attempt=attempt):
                self._handler(job)
        except Exception as exc:
            if attempt >= self.retry.max_attempts or not self._schedule_retry(job, attempt + 1, future):
                self._give_up(job, attempt, exc, future)
                return
            self._bump("retries")
            logger.warning(
                "Retry %d/%d for %s in %.0fs: %s",
                attempt, self.retry.max_attempts - 1, job.describe(),
                self.retry.backoff_seconds, exc,
                extra={"attempt": attempt, "rule_id": job.rule_id},
            )
            return

        self._bump("completed")
        future.set_result(True)

    def _schedule_retry(self, job: Job, attempt: int, future: Future) -> bool:
        # No pool thread waits out a backoff
        delay = self.retry.backoff_seconds
        with self._lock:
            if self._closing:
                return False
            self._seq += 1
            key = self._seq
            if self._executor is None:
                heapq.heappush(self._pending, (self._clock() + delay, key, job, attempt, future))
                return True
            timer = threading.Timer(delay, self._fire, args=(key,))
            timer.daemon = True
            self._timers[key] = (timer, job, attempt, future)
        timer.start()
        return True

    def _fire(self, key: int) -> None:
        with self._lock:
            entry = self._timers.pop(key, None)
        if entry is None:
            return
        _, job, attempt, future = entry
        try:
            self._start(job, attempt, future)
        except RuntimeError:
            # Executor shut down between the pop and the submit
            self._give_up(job, attempt - 1, "worker shut down before retry", future)

    def _give_up(self, job: Job, attempts: int, error: Any, future: Future) -> None:
        self._bump("failed")
        logger.error(
            "Job %s permanently failed after %d attempts: %s",
            job.describe(), attempts, error,
            extra={
                "subscriber_id": job.subscriber_id,
                "rule_id": job.rule_id,
                "location_id": job.location_id,
                "attempts": attempts,
            },
        )
        future.set_result(False)
