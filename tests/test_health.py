"""
test_health.py — Deep health probe aggregation.

Run with:
    pytest tests/test_health.py -v
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import create_engine

from avalanche_watch.app.core.health import (
    ComponentHealth,
    HealthReport,
    HealthStatus,
    build_health_report,
    check_bulletin_data,
    check_database,
)
from avalanche_watch.app.storage.models import Bulletin

NOW = datetime(2025, 1, 15, 12, tzinfo=timezone.utc)


def _store_bulletin(db, valid_until: datetime) -> None:
    db.add(Bulletin(
        external_id="b-1", language="de",
        valid_from=datetime(2025, 1, 14, 16), valid_until=valid_until,
        payload={}, fetched_at=datetime(2025, 1, 14, 16, 5),
    ))
    db.commit()


class TestReportStatus:
    def test_worst_component_wins(self):
        report = HealthReport(components=[
            ComponentHealth("a"),
            ComponentHealth("b", status=HealthStatus.DEGRADED),
        ])
        assert report.status == HealthStatus.DEGRADED

        report.components.append(ComponentHealth("c", status=HealthStatus.UNHEALTHY))
        assert report.to_dict()["status"] == "unhealthy"

    def test_empty_is_healthy(self):
        assert HealthReport().status == HealthStatus.HEALTHY


class TestDatabase:
    def test_reachable(self, engine):
        comp = check_database(engine)
        assert comp.status == HealthStatus.HEALTHY
        assert comp.details["url"] == "sqlite://"

    def test_unreachable_is_unhealthy(self):
        broken = create_engine("sqlite:////nonexistent-dir/avalanche_watch.db")
        assert check_database(broken).status == HealthStatus.UNHEALTHY


class TestBulletinData:
    def test_empty_store_is_degraded(self, engine):
        comp = check_bulletin_data(engine, NOW)
        assert comp.status == HealthStatus.DEGRADED
        assert comp.message == "No bulletin stored yet"

    def test_valid_bulletin(self, engine, db):
        _store_bulletin(db, valid_until=datetime(2025, 1, 15, 16))
        comp = check_bulletin_data(engine, NOW)
        assert comp.status == HealthStatus.HEALTHY
        assert comp.details["bulletin_id"] == "b-1"

    def test_expired_bulletin(self, engine, db):
        _store_bulletin(db, valid_until=datetime(2025, 1, 15, 8))
        comp = check_bulletin_data(engine, NOW)
        assert comp.status == HealthStatus.DEGRADED
        assert comp.message == "Latest bulletin has expired"


class TestBuildReport:
    def test_components(self, engine):
        report = build_health_report(engine, NOW)
        names = [c["name"] for c in report.to_dict()["components"]]
        assert names == ["database", "run_guard", "bulletin_data", "push_provider"]
        assert report.status != HealthStatus.UNHEALTHY
