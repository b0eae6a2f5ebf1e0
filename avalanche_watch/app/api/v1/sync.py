"""
FastAPI routes: bulletin sync, history back-fill and reminder dispatch.

Provides endpoints to:
    POST /api/v1/sync                        — run one live sync cycle
    POST /api/v1/sync/history                — sync the bulletin valid at a moment
    POST /api/v1/sync/history/import         — back-fill the last N days
    POST /api/v1/alerts/reminders/dispatch   — queue reminders due this minute
    GET  /api/v1/sync/jobs                   — scheduler run history

Sync work is blocking, so the handlers are plain ``def`` and FastAPI runs
them on its thread pool.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from avalanche_watch.app.alerts.service import AlertService
from avalanche_watch.app.core.config import settings
from avalanche_watch.app.services import get_alert_service, get_sync_service
from avalanche_watch.app.sync.orchestrator import BulletinSyncService, SyncStage
from avalanche_watch.app.sync.scheduler import ScheduledJobRunner, get_scheduler

router = APIRouter(prefix="/api/v1", tags=["bulletin-sync"])


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------

class _LanguageMixin(BaseModel):
    language: Optional[str] = Field(
        None, examples=["de"], description="Bulletin language (de, fr, it, en)",
    )

    @field_validator("language")
    @classmethod
    def _supported(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.lower()
        if v not in settings.SUPPORTED_LANGUAGES:
            raise ValueError(f"language must be one of {settings.SUPPORTED_LANGUAGES}")
        return v


class SyncRequest(_LanguageMixin):
    pass


class HistoricalSyncRequest(_LanguageMixin):
    point_in_time: datetime = Field(
        ..., examples=["2025-01-15T12:00:00+01:00"],
        description="Moment the bulletin was valid (naive = UTC)",
    )


class HistoryImportRequest(_LanguageMixin):
    days: int = Field(30, ge=1, le=365, description="Number of past days to import")


class ReminderDispatchRequest(BaseModel):
    now: Optional[datetime] = Field(
        None, description="Override the current time (defaults to now, UTC)",
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _status_code(success: bool, skipped: bool, stage: SyncStage) -> int:
    if success:
        return 200
    if skipped:
        return 409
    if stage == SyncStage.FETCHING:
        return 502
    return 500


def get_job_runner() -> ScheduledJobRunner:
    return get_scheduler()


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/sync", summary="Run a live bulletin sync")
def run_sync(
    body: Optional[SyncRequest] = None,
    service: BulletinSyncService = Depends(get_sync_service),
):
    result = service.run_sync(body.language if body else None)
    return JSONResponse(
        status_code=_status_code(result.success, result.skipped, result.stage),
        content=result.to_dict(),
    )


@router.post("/sync/history", summary="Sync the bulletin valid at a point in time")
def run_historical_sync(
    body: HistoricalSyncRequest,
    service: BulletinSyncService = Depends(get_sync_service),
):
    result = service.run_historical_sync(body.point_in_time, body.language)
    status = 404 if result.no_data else _status_code(result.success, result.skipped, result.stage)
    return JSONResponse(status_code=status, content=result.to_dict())


@router.post("/sync/history/import", summary="Back-fill bulletins for the last N days")
def import_history(
    body: HistoryImportRequest,
    service: BulletinSyncService = Depends(get_sync_service),
):
    report = service.import_history(body.days, body.language)
    status = 409 if report.skipped else 200
    return JSONResponse(status_code=status, content=report.to_dict())


@router.post("/alerts/reminders/dispatch", summary="Queue daily reminders due now")
def dispatch_reminders(
    body: Optional[ReminderDispatchRequest] = None,
    alerts: AlertService = Depends(get_alert_service),
) -> Dict[str, Any]:
    queued = alerts.dispatch_due_reminders(body.now if body else None)
    return {"queued": queued}


@router.get("/sync/jobs", summary="Scheduled job history")
def list_jobs(
    job_name: Optional[str] = Query(None, description="Filter by job name"),
    limit: int = Query(20, ge=1, le=100),
    runner: ScheduledJobRunner = Depends(get_job_runner),
) -> Dict[str, Any]:
    runs: List[Dict[str, Any]] = [r.to_dict() for r in runner.history(job_name)[:limit]]
    return {
        "scheduler_running": runner.running,
        "jobs": runner.job_names(),
        "runs": runs,
    }
