"""
Query and upsert helpers over the ORM tables.

Plain functions taking a ``Session`` as first argument; callers own the
transaction boundary.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from avalanche_watch.app.storage.models import (
    AlertRule,
    Bulletin,
    LocationStatus,
    MonitoredLocation,
    Subscriber,
    WarningRegion,
    to_utc_naive,
    utcnow,
)


# ── Bulletins ──

def upsert_bulletin(
    session: Session,
    *,
    external_id: str,
    language: str,
    valid_from: datetime,
    valid_until: datetime,
    payload: dict,
) -> Bulletin:
    bulletin = session.scalar(
        select(Bulletin).where(
            Bulletin.external_id == external_id,
            Bulletin.language == language,
        )
    )
    if bulletin is None:
        bulletin = Bulletin(external_id=external_id, language=language)
        session.add(bulletin)

    bulletin.valid_from = to_utc_naive(valid_from)
    bulletin.valid_until = to_utc_naive(valid_until)
    bulletin.payload = payload
    bulletin.fetched_at = utcnow()
    session.flush()
    return bulletin


def latest_bulletin(session: Session) -> Optional[Bulletin]:
    """Bulletin with the furthest validity end, any language."""
    return session.scalar(
        select(Bulletin).order_by(Bulletin.valid_until.desc(), Bulletin.id.desc()).limit(1)
    )


# ── Warning regions ──

def get_region(session: Session, region_id: str) -> Optional[WarningRegion]:
    return session.scalar(select(WarningRegion).where(WarningRegion.region_id == region_id))


def upsert_region(
    session: Session,
    *,
    region_id: str,
    name: str,
    geometry: dict,
    bulletin_id: int,
) -> WarningRegion:
    region = get_region(session, region_id)
    if region is None:
        region = WarningRegion(region_id=region_id)
        session.add(region)
    region.name = name
    region.geometry = geometry
    region.bulletin_id = bulletin_id
    return region


def regions_for_bulletin(session: Session, bulletin_id: int) -> List[WarningRegion]:
    stmt = (
        select(WarningRegion)
        .where(WarningRegion.bulletin_id == bulletin_id)
        .order_by(WarningRegion.id)
    )
    return list(session.scalars(stmt))


# ── Locations & statuses ──

def all_locations(session: Session) -> List[MonitoredLocation]:
    return list(session.scalars(select(MonitoredLocation).order_by(MonitoredLocation.id)))


def latest_statuses(
    session: Session, location_id: int, limit: int = 2
) -> List[LocationStatus]:
    """Most recent snapshots first; same-instant rows ordered by id."""
    stmt = (
        select(LocationStatus)
        .where(LocationStatus.location_id == location_id)
        .order_by(LocationStatus.created_at.desc(), LocationStatus.id.desc())
        .limit(limit)
    )
    return list(session.scalars(stmt))


def backdate_statuses(session: Session, bulletin_id: int, created_at: datetime) -> int:
    """Rewrite ``created_at`` of every snapshot derived from a bulletin."""
    result = session.execute(
        update(LocationStatus)
        .where(LocationStatus.bulletin_id == bulletin_id)
        .values(created_at=to_utc_naive(created_at))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


# ── Rules & subscribers ──

def rules_for_location(session: Session, location_id: int) -> List[AlertRule]:
    """Active rules that are global or scoped to the location."""
    stmt = (
        select(AlertRule)
        .where(
            AlertRule.is_active.is_(True),
            or_(AlertRule.location_id.is_(None), AlertRule.location_id == location_id),
        )
        .order_by(AlertRule.id)
    )
    return list(session.scalars(stmt))


def reminder_candidates(session: Session) -> List[AlertRule]:
    stmt = (
        select(AlertRule)
        .where(
            AlertRule.is_active.is_(True),
            AlertRule.reminder_enabled.is_(True),
            AlertRule.reminder_time.is_not(None),
        )
        .order_by(AlertRule.id)
    )
    return list(session.scalars(stmt))


def get_subscriber(session: Session, subscriber_id: int) -> Optional[Subscriber]:
    return session.get(Subscriber, subscriber_id)
