"""
rules.py — Decide which subscribers hear about a danger change, and
which daily reminders are due.

═══════════════════════════════════════════════════════════════════════════
CHANGE MATCHING (checks run in this order, first rejection wins)
═══════════════════════════════════════════════════════════════════════════

    1. subscriber has notifications disabled        → reject
    2. rule scoped to a different location          → reject
    3. old level == new level                       → reject
    4. increase and not on_increase                 → reject
       decrease and not on_decrease                 → reject
    5. min_danger_level set and new < min           → reject
    6. max_danger_level set and new > max           → reject
    otherwise                                       → match

Only active rules are considered; a rule with no location is global.

═══════════════════════════════════════════════════════════════════════════
REMINDERS
═══════════════════════════════════════════════════════════════════════════

A reminder is due when the rule is active, its reminder is enabled, its
reminder time equals the current minute exactly (HH:MM:00) and today's
lowercase weekday is in ``active_days`` (empty = every day). The wall
clock is read in ``REMINDER_TIMEZONE``. The check is stateless: calling it
twice in the same minute returns the same rules.
"""

from __future__ import annotations

import logging
from datetime import datetime, time
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from avalanche_watch.app.alerts.models import ChangeEvent, MatchedRule
from avalanche_watch.app.core.config import settings
from avalanche_watch.app.storage import repository
from avalanche_watch.app.storage.models import AlertRule, Subscriber

logger = logging.getLogger(__name__)


WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


# ═══════════════════════════════════════════════════════════════════════════
# Predicates
# ═══════════════════════════════════════════════════════════════════════════

def should_trigger(rule: AlertRule, subscriber: Subscriber, change: ChangeEvent) -> bool:
    if not subscriber.notifications_enabled:
        return False
    if rule.location_id is not None and rule.location_id != change.location_id:
        return False

    old, new = change.old_level, change.new_level
    if new == old:
        return False
    if new > old and not rule.on_increase:
        return False
    if new < old and not rule.on_decrease:
        return False

    if rule.min_danger_level is not None and new < rule.min_danger_level:
        return False
    if rule.max_danger_level is not None and new > rule.max_danger_level:
        return False
    return True


def is_reminder_due(rule: AlertRule, local_now: datetime) -> bool:
    if not rule.is_active or not rule.reminder_enabled or rule.reminder_time is None:
        return False

    if rule.reminder_time != time(local_now.hour, local_now.minute):
        return False

    days = [str(d).lower() for d in (rule.active_days or [])]
    if days and WEEKDAYS[local_now.weekday()] not in days:
        return False
    return True


def to_local(now: datetime, tz_name: Optional[str] = None) -> datetime:
    """Aware datetimes are converted to the reminder zone; naive ones are taken as local."""
    if now.tzinfo is None:
        return now
    return now.astimezone(ZoneInfo(tz_name or settings.REMINDER_TIMEZONE))


# ═══════════════════════════════════════════════════════════════════════════
# Engine
# ═══════════════════════════════════════════════════════════════════════════

class RuleEngine:
    """Stateless rule evaluation over the store."""

    def __init__(self, timezone_name: Optional[str] = None):
        self.timezone_name = timezone_name or settings.REMINDER_TIMEZONE

    def evaluate_changes(
        self, session: Session, changes: Sequence[ChangeEvent]
    ) -> List[MatchedRule]:
        matched: List[MatchedRule] = []

        for change in changes:
            for rule in repository.rules_for_location(session, change.location_id):
                if not should_trigger(rule, rule.subscriber, change):
                    continue
                matched.append(MatchedRule(
                    rule_id=rule.id,
                    subscriber_id=rule.subscriber_id,
                    change=change,
                ))
                logger.info(
                    "Alert rule %d triggered for %s (%d → %d)",
                    rule.id, change.location_name, change.old_level, change.new_level,
                    extra={
                        "rule_id": rule.id,
                        "subscriber_id": rule.subscriber_id,
                        "location_id": change.location_id,
                    },
                )

        return matched

    def due_reminders(self, session: Session, now: datetime) -> List[AlertRule]:
        local_now = to_local(now, self.timezone_name)
        due = [
            rule for rule in repository.reminder_candidates(session)
            if is_reminder_due(rule, local_now)
        ]
        logger.debug("%d reminder(s) due at %s", len(due), local_now.strftime("%H:%M"))
        return due
