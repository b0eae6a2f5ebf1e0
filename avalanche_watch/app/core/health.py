"""
Deep health probe.

Components:
    database        SELECT 1 against the configured engine
    run_guard       Redis PING when the Redis backend is configured
    bulletin_data   newest stored bulletin must still be valid
    push_provider   server key present

A missing or expired bulletin, an unreachable Redis or a missing push key
degrade the report; only an unreachable database makes it unhealthy, which
is what /health/ready turns into a 503.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from avalanche_watch.app.core.config import settings

logger = logging.getLogger(__name__)

_started = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    message: str = ""
    latency_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"name": self.name, "status": self.status.value,
                             "latency_ms": round(self.latency_ms, 2)}
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    components: List[ComponentHealth] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> HealthStatus:
        worst = max((_SEVERITY[c.status] for c in self.components), default=0)
        return next(s for s, rank in _SEVERITY.items() if rank == worst)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "timestamp": self.checked_at.isoformat(),
            "uptime_seconds": round(time.monotonic() - _started, 1),
            "components": [c.to_dict() for c in self.components],
        }


def _redact(url: str) -> str:
    return url.split("@")[-1]


def _timed(name: str, check: Callable[[ComponentHealth], None],
           on_error: HealthStatus = HealthStatus.UNHEALTHY) -> ComponentHealth:
    comp = ComponentHealth(name=name)
    start = time.monotonic()
    try:
        check(comp)
    except Exception as e:
        logger.warning("Health check %s failed: %s", name, e)
        comp.status = on_error
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


# ── Checks ──

def check_database(engine: Engine) -> ComponentHealth:
    def probe(comp: ComponentHealth) -> None:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        comp.details = {"url": _redact(str(engine.url))}

    return _timed("database", probe)


def check_run_guard() -> ComponentHealth:
    from avalanche_watch.app.core.run_guard import RedisRunGuard, get_run_guard

    def probe(comp: ComponentHealth) -> None:
        guard = get_run_guard()
        comp.details = {"backend": guard.backend}
        if isinstance(guard, RedisRunGuard):
            guard.ping()
            comp.details["url"] = _redact(settings.REDIS_URL)

    # Without Redis each process still syncs, only cross-host exclusion is lost
    return _timed("run_guard", probe, on_error=HealthStatus.DEGRADED)


def check_bulletin_data(engine: Engine, now: Optional[datetime] = None) -> ComponentHealth:
    from avalanche_watch.app.storage import repository

    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).replace(tzinfo=None)

    def probe(comp: ComponentHealth) -> None:
        with Session(engine) as session:
            bulletin = repository.latest_bulletin(session)
            if bulletin is None:
                comp.status = HealthStatus.DEGRADED
                comp.message = "No bulletin stored yet"
                return
            comp.details = {
                "bulletin_id": bulletin.external_id,
                "language": bulletin.language,
                "valid_until": bulletin.valid_until.isoformat(),
                "fetched_at": bulletin.fetched_at.isoformat(),
            }
            if bulletin.valid_until < now:
                comp.status = HealthStatus.DEGRADED
                comp.message = "Latest bulletin has expired"

    return _timed("bulletin_data", probe, on_error=HealthStatus.DEGRADED)


def check_push_provider() -> ComponentHealth:
    comp = ComponentHealth(name="push_provider", details={"api_url": settings.PUSH_API_URL})
    if not settings.PUSH_SERVER_KEY:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Push server key missing, notifications are skipped"
    return comp


def build_health_report(engine: Optional[Engine] = None, now: Optional[datetime] = None) -> HealthReport:
    if engine is None:
        from avalanche_watch.app.core.database import engine
    return HealthReport(components=[
        check_database(engine),
        check_run_guard(),
        check_bulletin_data(engine, now),
        check_push_provider(),
    ])


async def run_health_check() -> HealthReport:
    """Blocking checks run off the event loop."""
    return await run_in_threadpool(build_health_report)
