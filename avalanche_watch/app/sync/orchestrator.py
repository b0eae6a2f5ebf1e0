"""
orchestrator.py — One bulletin sync cycle, end to end.

═══════════════════════════════════════════════════════════════════════════
CYCLE STAGES
═══════════════════════════════════════════════════════════════════════════

    idle ─▶ fetching ─▶ storing_bulletin ─▶ processing_regions
         ─▶ computing_statuses ─▶ detecting_changes
         ─▶ queuing_notifications ─▶ done

The cycle stops at the first unrecoverable step and the result records the
stage it stopped in. Unrecoverable means: the provider returned nothing
usable, the store raised, or rule evaluation raised. Problems with a single
region or location are logged and that item is skipped.

Stages 2–5 share one transaction, committed before notifications are
queued, so queued jobs always see the snapshots that triggered them.

═══════════════════════════════════════════════════════════════════════════
BULLETIN IDENTITY & VALIDITY
═══════════════════════════════════════════════════════════════════════════

    external id   payload.id
                  → features[0].properties.bulletinID
                  → "bulletin-" + sha1(canonical payload)[:16]

    validity      payload.validFrom / validUntil
                  → payload.properties.validFrom / validUntil
                  → features[0].properties.validTime.startTime / endTime
                  → now / now + 1 day (logged)

All stored times are UTC.

═══════════════════════════════════════════════════════════════════════════
SINGLE FLIGHT
═══════════════════════════════════════════════════════════════════════════

Live sync, historical sync and history import share one run-guard lock.
A call that finds the lock held returns ``skipped=True`` immediately,
without touching the database.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from avalanche_watch.app.alerts.models import ChangeEvent
from avalanche_watch.app.core.config import settings
from avalanche_watch.app.core.database import session_scope
from avalanche_watch.app.core.errors import AvalancheWatchError, ValidationError
from avalanche_watch.app.core.run_guard import RunGuard, get_run_guard
from avalanche_watch.app.danger.mapper import resolve_danger
from avalanche_watch.app.ingestion.bulletin_client import BulletinClient, FetchOutcome, FetchStatus
from avalanche_watch.app.spatial.regions import GeoRegion, resolve_region
from avalanche_watch.app.storage import repository
from avalanche_watch.app.storage.models import Bulletin, LocationStatus, MonitoredLocation, utcnow

logger = logging.getLogger(__name__)


SYNC_LOCK = "bulletin-sync"
NO_BULLETIN_PREFIX = "No bulletin found"

_TIMESTAMP_FORMATS = (
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M%z",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)


class SyncStage(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    STORING_BULLETIN = "storing_bulletin"
    PROCESSING_REGIONS = "processing_regions"
    COMPUTING_STATUSES = "computing_statuses"
    DETECTING_CHANGES = "detecting_changes"
    QUEUING_NOTIFICATIONS = "queuing_notifications"
    DONE = "done"


# ═══════════════════════════════════════════════════════════════════════════
# Result Types
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class SyncResult:
    success: bool = False
    skipped: bool = False
    stage: SyncStage = SyncStage.IDLE
    language: str = ""
    bulletin_id: Optional[int] = None
    regions_processed: int = 0
    locations_updated: int = 0
    changes_detected: int = 0
    notifications_queued: int = 0
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    changes: List[ChangeEvent] = field(default_factory=list, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "stage": self.stage.value,
            "language": self.language,
            "bulletin_id": self.bulletin_id,
            "regions_processed": self.regions_processed,
            "locations_updated": self.locations_updated,
            "changes_detected": self.changes_detected,
            "notifications_queued": self.notifications_queued,
            "errors": list(self.errors),
            "duration_seconds": self.duration_seconds,
            "changes": [c.to_dict() for c in self.changes],
        }


@dataclass
class HistoricalSyncResult:
    success: bool = False
    skipped: bool = False
    stage: SyncStage = SyncStage.IDLE
    point_in_time: Optional[datetime] = None
    bulletin_id: Optional[int] = None
    regions_processed: int = 0
    locations_updated: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def no_data(self) -> bool:
        return bool(self.errors) and self.errors[0].startswith(NO_BULLETIN_PREFIX)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "stage": self.stage.value,
            "point_in_time": self.point_in_time.isoformat() if self.point_in_time else None,
            "bulletin_id": self.bulletin_id,
            "regions_processed": self.regions_processed,
            "locations_updated": self.locations_updated,
            "errors": list(self.errors),
        }


@dataclass
class HistoryImportReport:
    days: int
    language: str
    imported: int = 0
    skipped_days: int = 0
    failed: int = 0
    skipped: bool = False  # whole import skipped, lock held
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.skipped and self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "days": self.days,
            "language": self.language,
            "imported": self.imported,
            "skipped_days": self.skipped_days,
            "failed": self.failed,
            "failures": self.failures,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Payload Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _first_feature_properties(payload: Dict[str, Any]) -> Dict[str, Any]:
    features = payload.get("features") or []
    if features and isinstance(features[0], dict):
        return features[0].get("properties") or {}
    return {}


def extract_external_id(payload: Dict[str, Any]) -> str:
    external_id = payload.get("id") or _first_feature_properties(payload).get("bulletinID")
    if external_id:
        return str(external_id)
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return "bulletin-" + hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:16]


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601-ish timestamp to an aware UTC datetime; None if unparsable."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
            for fmt in _TIMESTAMP_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            if parsed is None:
                return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def extract_validity(
    payload: Dict[str, Any], now: Optional[datetime] = None
) -> Tuple[datetime, datetime]:
    now = now or datetime.now(timezone.utc)
    properties = payload.get("properties") or {}
    valid_time = _first_feature_properties(payload).get("validTime") or {}

    bounds = []
    for key, fallback_key, default in (
        ("validFrom", "startTime", now),
        ("validUntil", "endTime", now + timedelta(days=1)),
    ):
        raw = payload.get(key) or properties.get(key) or valid_time.get(fallback_key)
        parsed = parse_timestamp(raw)
        if parsed is None:
            if raw:
                logger.warning("Failed to parse %s %r — using default", key, raw)
            else:
                logger.info("Bulletin has no %s — using default", key)
            parsed = default
        bounds.append(parsed)
    return bounds[0], bounds[1]


# ═══════════════════════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════════════════════

class BulletinSyncService:
    """
    Usage:
        service = BulletinSyncService(BulletinClient(), alert_service)
        result = service.run_sync("de")
        print(result.to_dict())
    """

    def __init__(
        self,
        client: BulletinClient,
        alert_service=None,
        *,
        session_factory: Optional[sessionmaker] = None,
        run_guard: Optional[RunGuard] = None,
        subtract_holes: Optional[bool] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.alert_service = alert_service
        self._session_factory = session_factory
        self.run_guard = run_guard or get_run_guard()
        self.subtract_holes = (
            settings.GEO_SUBTRACT_HOLES if subtract_holes is None else subtract_holes
        )
        self._sleep = sleep

    # ── Entry points ──

    def run_sync(self, language: Optional[str] = None) -> SyncResult:
        lang = language or settings.DEFAULT_LANGUAGE
        result = SyncResult(language=lang)
        start = time.monotonic()

        with self.run_guard.hold(SYNC_LOCK) as acquired:
            if not acquired:
                result.skipped = True
                result.errors.append("Sync already in progress")
                return result

            logger.info("Starting bulletin sync", extra={"language": lang})
            try:
                self._sync_cycle(lang, result)
            finally:
                result.duration_seconds = round(time.monotonic() - start, 2)

        level = logging.INFO if result.success else logging.ERROR
        logger.log(
            level,
            "Bulletin sync %s at stage %s: %d regions, %d locations, %d changes, %d queued (%.2fs)",
            "completed" if result.success else "failed", result.stage.value,
            result.regions_processed, result.locations_updated,
            result.changes_detected, result.notifications_queued,
            result.duration_seconds,
            extra={"language": lang, "bulletin_id": result.bulletin_id, "stage": result.stage.value},
        )
        return result

    def run_historical_sync(
        self, point_in_time: datetime, language: Optional[str] = None
    ) -> HistoricalSyncResult:
        lang = language or settings.DEFAULT_LANGUAGE
        result = HistoricalSyncResult(point_in_time=point_in_time)

        with self.run_guard.hold(SYNC_LOCK) as acquired:
            if not acquired:
                result.skipped = True
                result.errors.append("Sync already in progress")
                return result
            self._historical_cycle(point_in_time, lang, result)
        return result

    def import_history(
        self, days: int, language: Optional[str] = None, now: Optional[datetime] = None
    ) -> HistoryImportReport:
        """
        Back-fill the last ``days`` days, oldest first, one midday bulletin
        per day in ``BULLETIN_TIMEZONE``.
        """
        if days < 1:
            raise ValidationError("days must be at least 1", field="days", value=days)

        lang = language or settings.DEFAULT_LANGUAGE
        report = HistoryImportReport(days=days, language=lang)
        tz = ZoneInfo(settings.BULLETIN_TIMEZONE)
        if now is None:
            local_now = datetime.now(tz)
        elif now.tzinfo is None:
            local_now = now.replace(tzinfo=tz)
        else:
            local_now = now.astimezone(tz)

        with self.run_guard.hold(SYNC_LOCK) as acquired:
            if not acquired:
                report.skipped = True
                return report

            for offset in range(days, 0, -1):
                day: date = (local_now - timedelta(days=offset)).date()
                point = datetime.combine(day, dt_time(12, 0), tzinfo=tz)

                result = HistoricalSyncResult(point_in_time=point)
                self._historical_cycle(point, lang, result)

                if result.success:
                    report.imported += 1
                elif result.no_data:
                    report.skipped_days += 1
                else:
                    report.failed += 1
                    report.failures.append({"date": day.isoformat(), "errors": result.errors})
                    logger.warning("History import failed for %s: %s", day, "; ".join(result.errors))

                if offset > 1 and settings.HISTORY_IMPORT_DELAY_SECONDS > 0:
                    self._sleep(settings.HISTORY_IMPORT_DELAY_SECONDS)

        logger.info(
            "History import done: %d imported, %d without bulletin, %d failed",
            report.imported, report.skipped_days, report.failed,
            extra={"language": lang},
        )
        return report

    # ── Cycles ──

    def _fetch(self, result, fetch: Callable[[], FetchOutcome]) -> Optional[FetchOutcome]:
        result.stage = SyncStage.FETCHING
        try:
            outcome = fetch()
        except (AvalancheWatchError, httpx.HTTPError) as e:
            result.errors.append(f"Bulletin fetch failed: {e}")
            return None
        return outcome

    def _sync_cycle(self, language: str, result: SyncResult) -> None:
        outcome = self._fetch(result, lambda: self.client.fetch(language))
        if outcome is None:
            return
        if not outcome.available:
            result.errors.append(
                f"Failed to fetch bulletin ({outcome.status.value})"
                + (f": {outcome.error_message}" if outcome.error_message else "")
            )
            return

        try:
            with session_scope(self._session_factory) as session:
                result.stage = SyncStage.STORING_BULLETIN
                bulletin = self.store_bulletin(session, outcome.payload, language)
                result.bulletin_id = bulletin.id

                result.stage = SyncStage.PROCESSING_REGIONS
                result.regions_processed = self.process_warning_regions(session, bulletin)

                result.stage = SyncStage.COMPUTING_STATUSES
                result.locations_updated = self.compute_location_statuses(session, bulletin)

                result.stage = SyncStage.DETECTING_CHANGES
                result.changes = self.detect_danger_changes(session)
                result.changes_detected = len(result.changes)
        except SQLAlchemyError as e:
            logger.error("Store failure during %s: %s", result.stage.value, e,
                         extra={"stage": result.stage.value})
            result.errors.append(f"Storage failure during {result.stage.value}: {e}")
            return

        result.stage = SyncStage.QUEUING_NOTIFICATIONS
        if result.changes and self.alert_service is not None:
            try:
                result.notifications_queued = self.alert_service.evaluate_changes_and_notify(
                    result.changes
                )
            except Exception as e:
                logger.exception("Rule evaluation failed")
                result.errors.append(f"Rule evaluation failed: {e}")
                return

        result.stage = SyncStage.DONE
        result.success = True

    def _historical_cycle(
        self, point_in_time: datetime, language: str, result: HistoricalSyncResult
    ) -> None:
        label = point_in_time.isoformat()
        outcome = self._fetch(result, lambda: self.client.fetch_for_date(point_in_time, language))
        if outcome is None:
            return
        if outcome.status == FetchStatus.NO_DATA:
            result.errors.append(f"{NO_BULLETIN_PREFIX} for {label}")
            return
        if not outcome.available:
            result.errors.append(
                f"Failed to fetch bulletin for {label} ({outcome.status.value}): "
                f"{outcome.error_message}"
            )
            return

        try:
            with session_scope(self._session_factory) as session:
                result.stage = SyncStage.STORING_BULLETIN
                bulletin = self.store_bulletin(session, outcome.payload, language)
                result.bulletin_id = bulletin.id

                result.stage = SyncStage.PROCESSING_REGIONS
                result.regions_processed = self.process_warning_regions(session, bulletin)

                result.stage = SyncStage.COMPUTING_STATUSES
                result.locations_updated = self.compute_location_statuses(session, bulletin)
                repository.backdate_statuses(session, bulletin.id, bulletin.valid_from)
        except SQLAlchemyError as e:
            logger.error("Historical sync store failure for %s: %s", label, e,
                         extra={"stage": result.stage.value})
            result.errors.append(f"Storage failure during {result.stage.value}: {e}")
            return

        result.stage = SyncStage.DONE
        result.success = True

    # ── Stage helpers ──

    def store_bulletin(self, session: Session, payload: Dict[str, Any], language: str) -> Bulletin:
        external_id = extract_external_id(payload)
        valid_from, valid_until = extract_validity(payload)
        bulletin = repository.upsert_bulletin(
            session,
            external_id=external_id,
            language=language,
            valid_from=valid_from,
            valid_until=valid_until,
            payload=payload,
        )
        logger.info("Bulletin %s stored", external_id,
                    extra={"bulletin_id": external_id, "language": language})
        return bulletin

    def process_warning_regions(self, session: Session, bulletin: Bulletin) -> int:
        processed = 0

        for feature in (bulletin.payload or {}).get("features") or []:
            try:
                geometry = feature.get("geometry")
                regions = (feature.get("properties") or {}).get("regions") or []
            except AttributeError:
                logger.warning("Skipping malformed feature in bulletin %s", bulletin.external_id)
                continue
            if not geometry or not regions:
                continue

            for region in regions:
                region_id = region.get("regionID") if isinstance(region, dict) else None
                if not region_id:
                    continue
                name = region.get("name")
                try:
                    with session.begin_nested():
                        repository.upsert_region(
                            session,
                            region_id=str(region_id),
                            name=name if isinstance(name, str) and name else str(region_id),
                            geometry=geometry,
                            bulletin_id=bulletin.id,
                        )
                        session.flush()
                except (SQLAlchemyError, TypeError, ValueError) as e:
                    logger.error("Failed to store warning region %s: %s", region_id, e,
                                 extra={"region_id": str(region_id),
                                        "bulletin_id": bulletin.external_id})
                    continue
                processed += 1

        logger.info("Warning regions processed: %d", processed,
                    extra={"bulletin_id": bulletin.external_id})
        return processed

    def compute_location_statuses(self, session: Session, bulletin: Bulletin) -> int:
        stored = repository.regions_for_bulletin(session, bulletin.id)
        if not stored:
            logger.warning("No warning regions found for bulletin %s", bulletin.external_id,
                           extra={"bulletin_id": bulletin.external_id})
            return 0

        regions = [
            GeoRegion.from_geojson(r.region_id, r.name, r.geometry, source=r) for r in stored
        ]
        created_at = utcnow()
        updated = 0

        for location in repository.all_locations(session):
            try:
                status = self._status_for(location, bulletin, regions, created_at)
            except Exception as e:
                logger.error("Failed to compute status for %s: %s", location.name, e,
                             extra={"location_id": location.id})
                continue
            session.add(status)
            updated += 1

        session.flush()
        logger.info("Location statuses computed: %d", updated,
                    extra={"bulletin_id": bulletin.external_id})
        return updated

    def _status_for(
        self,
        location: MonitoredLocation,
        bulletin: Bulletin,
        regions: List[GeoRegion],
        created_at: datetime,
    ) -> LocationStatus:
        region = resolve_region(
            location.latitude, location.longitude, regions,
            subtract_holes=self.subtract_holes,
        )
        resolution = resolve_danger(
            bulletin.payload, region.region_id, location.elevation_min, location.elevation_max,
        )
        return LocationStatus(
            location_id=location.id,
            bulletin_id=bulletin.id,
            warning_region_id=region.source.id,
            danger_level_low=resolution.danger.low,
            danger_level_high=resolution.danger.high,
            danger_level_max=resolution.danger.max,
            aspects=list(resolution.danger.aspects),
            avalanche_problems=[p.to_dict() for p in resolution.problems],
            created_at=created_at,
        )

    def detect_danger_changes(self, session: Session) -> List[ChangeEvent]:
        changes: List[ChangeEvent] = []

        for location in repository.all_locations(session):
            statuses = repository.latest_statuses(session, location.id, limit=2)
            if len(statuses) < 2:
                continue
            latest, previous = statuses
            if latest.danger_level_max != previous.danger_level_max:
                changes.append(ChangeEvent(
                    location_id=location.id,
                    location_name=location.name,
                    old_level=previous.danger_level_max,
                    new_level=latest.danger_level_max,
                ))
                logger.info(
                    "Danger level changed at %s: %d → %d",
                    location.name, previous.danger_level_max, latest.danger_level_max,
                    extra={"location_id": location.id},
                )
        return changes
