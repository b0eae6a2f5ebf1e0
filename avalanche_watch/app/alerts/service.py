"""
service.py — Public entry points of the notification side.

    evaluate_changes_and_notify(changes) → number of matched rules
    dispatch_due_reminders(now)          → number of reminders queued

Both evaluate rules inside one read session, then hand immutable jobs to
the ``DispatchWorker``. Queuing happens after the session is closed so a
slow delivery never holds a database transaction open.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy.orm import sessionmaker

from avalanche_watch.app.alerts.models import ChangeAlertJob, ChangeEvent, ReminderJob
from avalanche_watch.app.alerts.rules import RuleEngine
from avalanche_watch.app.alerts.worker import DispatchWorker
from avalanche_watch.app.core.database import session_scope

logger = logging.getLogger(__name__)


class AlertService:
    def __init__(
        self,
        worker: DispatchWorker,
        engine: Optional[RuleEngine] = None,
        session_factory: Optional[sessionmaker] = None,
    ):
        self.worker = worker
        self.engine = engine or RuleEngine()
        self._session_factory = session_factory

    def evaluate_changes_and_notify(self, changes: Sequence[ChangeEvent]) -> int:
        if not changes:
            return 0

        with session_scope(self._session_factory) as session:
            matched = self.engine.evaluate_changes(session, changes)

        for match in matched:
            self.worker.submit(ChangeAlertJob(
                rule_id=match.rule_id,
                subscriber_id=match.subscriber_id,
                change=match.change,
            ))

        logger.info("%d change(s) matched %d rule(s)", len(changes), len(matched))
        return len(matched)

    def dispatch_due_reminders(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)

        with session_scope(self._session_factory) as session:
            jobs: List[ReminderJob] = [
                ReminderJob(
                    rule_id=rule.id,
                    subscriber_id=rule.subscriber_id,
                    location_id=rule.location_id,
                    scheduled_for=now,
                )
                for rule in self.engine.due_reminders(session, now)
            ]

        for job in jobs:
            self.worker.submit(job)

        if jobs:
            logger.info("Queued %d daily reminder(s)", len(jobs))
        return len(jobs)
