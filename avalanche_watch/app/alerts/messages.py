"""
messages.py — Notification text and data payloads.

Templates:

    change    title  "Avalanche Alert: <location>"
              body   "Danger level increased from 2 to 3 ↗"
                     "Danger level decreased from 3 to 2 ↘"

    reminder  title  "Daily Avalanche Update"
              body   "<location>: Current danger level 3 (considerable)"
                     "Check avalanche conditions for your favorite locations"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from avalanche_watch.app.alerts.models import ChangeEvent
from avalanche_watch.app.danger.mapper import LEVEL_NAMES

REMINDER_TITLE = "Daily Avalanche Update"
GENERIC_REMINDER_BODY = "Check avalanche conditions for your favorite locations"


@dataclass(frozen=True)
class RenderedMessage:
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)


def change_message(
    change: ChangeEvent, *, rule_id: Optional[int] = None, location_slug: Optional[str] = None
) -> RenderedMessage:
    direction, arrow = ("increased", "↗") if change.increased else ("decreased", "↘")
    return RenderedMessage(
        title=f"Avalanche Alert: {change.location_name}",
        body=f"Danger level {direction} from {change.old_level} to {change.new_level} {arrow}",
        data={
            "type": "alert",
            "alert_rule_id": rule_id,
            "location_id": change.location_id,
            "location_slug": location_slug,
            "old_level": change.old_level,
            "new_level": change.new_level,
        },
    )


def reminder_message(
    *,
    rule_id: int,
    location_name: Optional[str] = None,
    location_slug: Optional[str] = None,
    current_level: Optional[int] = None,
) -> RenderedMessage:
    if location_name is None:
        body = GENERIC_REMINDER_BODY
    elif current_level is None:
        body = f"{location_name}: No current danger level available"
    else:
        name = LEVEL_NAMES.get(current_level, "unknown").replace("_", " ")
        body = f"{location_name}: Current danger level {current_level} ({name})"

    return RenderedMessage(
        title=REMINDER_TITLE,
        body=body,
        data={
            "type": "daily_reminder",
            "alert_rule_id": rule_id,
            "location_slug": location_slug,
            "current_level": current_level,
        },
    )
