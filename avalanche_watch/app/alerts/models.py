"""
models.py — Shared data structures for the notification pipeline.

Defines:
    • NotificationKind — change alert vs. daily reminder
    • DispatchStatus   — final state of one dispatch
    • ChangeEvent      — a location's max danger level moved between cycles
    • MatchedRule      — a rule that accepted a change event
    • PushResponse     — parsed reply of the push provider
    • DispatchOutcome  — what happened to one notification
    • ChangeAlertJob / ReminderJob — immutable queued work items

═══════════════════════════════════════════════════════════════════════════
DISPATCH STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    pending ──▶ sent       provider reported success > 0
            ├─▶ failed     provider reported no success, or raised
            └─▶ skipped    no device token, notifications disabled,
                           or no push server key configured

Every terminal state is written to ``notification_records`` exactly once
per dispatch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class NotificationKind(str, Enum):
    CHANGE = "change"
    REMINDER = "reminder"


class DispatchStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ChangeEvent:
    """Emitted when the two most recent snapshots of a location differ in max level."""
    location_id: int
    location_name: str
    old_level: int
    new_level: int

    @property
    def increased(self) -> bool:
        return self.new_level > self.old_level

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location_id": self.location_id,
            "location_name": self.location_name,
            "old_level": self.old_level,
            "new_level": self.new_level,
        }


@dataclass(frozen=True)
class MatchedRule:
    rule_id: int
    subscriber_id: int
    change: ChangeEvent


@dataclass
class PushResponse:
    """Parsed provider reply: counts of accepted and rejected tokens."""
    success: int = 0
    failure: int = 0
    status_code: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def delivered(self) -> bool:
        return self.success > 0


@dataclass
class DispatchOutcome:
    status: DispatchStatus
    subscriber_id: int
    kind: NotificationKind
    record_id: Optional[int] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "subscriber_id": self.subscriber_id,
            "kind": self.kind.value,
            "record_id": self.record_id,
            "reason": self.reason,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Queued Jobs
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ChangeAlertJob:
    """Notify one rule's subscriber about one change event."""
    rule_id: int
    subscriber_id: int
    change: ChangeEvent

    @property
    def location_id(self) -> int:
        return self.change.location_id

    def describe(self) -> str:
        return f"change-alert rule={self.rule_id} location={self.change.location_id}"


@dataclass(frozen=True)
class ReminderJob:
    """Send the daily reminder for one rule at ``scheduled_for``."""
    rule_id: int
    subscriber_id: int
    location_id: Optional[int]
    scheduled_for: datetime

    def describe(self) -> str:
        return f"reminder rule={self.rule_id} location={self.location_id}"
