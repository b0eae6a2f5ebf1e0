"""
models.py — SQLAlchemy 2.0 ORM tables for the bulletin pipeline.

Defines:
    • Bulletin           — one provider bulletin per (external_id, language)
    • WarningRegion      — provider micro-region with its GeoJSON geometry
    • MonitoredLocation  — a place with an elevation range we track
    • Subscriber         — a device that receives push notifications
    • LocationStatus     — append-only danger snapshot per location per cycle
    • AlertRule          — change-alert and daily-reminder preferences
    • NotificationRecord — audit trail of every dispatch outcome

═══════════════════════════════════════════════════════════════════════════
TIME HANDLING
═══════════════════════════════════════════════════════════════════════════

Every DateTime column holds naive UTC. SQLite drops tzinfo on round-trip,
so values are normalised with ``to_utc_naive`` before they are written and
compared. ``utcnow()`` is the only clock used for ``created_at``.

═══════════════════════════════════════════════════════════════════════════
SNAPSHOT ORDERING
═══════════════════════════════════════════════════════════════════════════

LocationStatus rows are never updated by a live sync. "Latest" means the
greatest ``created_at``; rows written in the same instant are ordered by
``id`` so change detection is deterministic.
"""

from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from avalanche_watch.app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ═══════════════════════════════════════════════════════════════════════════
# Bulletins & Regions
# ═══════════════════════════════════════════════════════════════════════════

class Bulletin(Base):
    """A provider bulletin, stored once per (external_id, language)."""

    __tablename__ = "bulletins"
    __table_args__ = (UniqueConstraint("external_id", "language"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(120), nullable=False)
    language: Mapped[str] = mapped_column(String(5), nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    regions: Mapped[List[WarningRegion]] = relationship(back_populates="bulletin")


class WarningRegion(Base):
    """Provider micro-region; re-pointed to the newest bulletin on each sync."""

    __tablename__ = "warning_regions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    region_id: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    geometry: Mapped[dict] = mapped_column(JSON, nullable=False)
    bulletin_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bulletins.id"), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    bulletin: Mapped[Optional[Bulletin]] = relationship(back_populates="regions")


# ═══════════════════════════════════════════════════════════════════════════
# Locations & Snapshots
# ═══════════════════════════════════════════════════════════════════════════

class MonitoredLocation(Base):
    """A place (resort, summit, trailhead) with an elevation range."""

    __tablename__ = "monitored_locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(200), unique=True, nullable=True)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    elevation_min: Mapped[int] = mapped_column(Integer, nullable=False)
    elevation_max: Mapped[int] = mapped_column(Integer, nullable=False)

    statuses: Mapped[List[LocationStatus]] = relationship(back_populates="location")


class LocationStatus(Base):
    """Danger snapshot for one location, appended once per sync cycle."""

    __tablename__ = "location_statuses"
    __table_args__ = (
        Index("ix_location_statuses_location_created", "location_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    location_id: Mapped[int] = mapped_column(
        ForeignKey("monitored_locations.id"), nullable=False
    )
    bulletin_id: Mapped[int] = mapped_column(ForeignKey("bulletins.id"), nullable=False)
    warning_region_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("warning_regions.id"), nullable=True
    )
    danger_level_low: Mapped[int] = mapped_column(Integer, nullable=False)
    danger_level_high: Mapped[int] = mapped_column(Integer, nullable=False)
    danger_level_max: Mapped[int] = mapped_column(Integer, nullable=False)
    aspects: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    avalanche_problems: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    location: Mapped[MonitoredLocation] = relationship(back_populates="statuses")
    bulletin: Mapped[Bulletin] = relationship()
    warning_region: Mapped[Optional[WarningRegion]] = relationship()


# ═══════════════════════════════════════════════════════════════════════════
# Subscribers, Rules & Notification Log
# ═══════════════════════════════════════════════════════════════════════════

class Subscriber(Base):
    """A notification recipient (one push device token)."""

    __tablename__ = "subscribers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    device_token: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    notifications_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )

    rules: Mapped[List[AlertRule]] = relationship(back_populates="subscriber")


class AlertRule(Base):
    """
    Subscriber preference for change alerts and daily reminders.

    ``location_id`` NULL makes the rule global (every location).
    ``active_days`` holds lowercase English weekday names; empty = every day.
    """

    __tablename__ = "alert_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    subscriber_id: Mapped[int] = mapped_column(ForeignKey("subscribers.id"), nullable=False)
    location_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("monitored_locations.id"), nullable=True
    )
    on_increase: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    on_decrease: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    min_danger_level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_danger_level: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reminder_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reminder_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    active_days: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    subscriber: Mapped[Subscriber] = relationship(back_populates="rules")
    location: Mapped[Optional[MonitoredLocation]] = relationship()


class NotificationRecord(Base):
    """One row per dispatch outcome (sent, skipped or failed)."""

    __tablename__ = "notification_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    subscriber_id: Mapped[int] = mapped_column(ForeignKey("subscribers.id"), nullable=False)
    location_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("monitored_locations.id"), nullable=True
    )
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # change | reminder
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subscriber_id": self.subscriber_id,
            "location_id": self.location_id,
            "kind": self.kind,
            "title": self.title,
            "message": self.message,
            "status": self.status,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
