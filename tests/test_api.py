"""
test_api.py — HTTP surface and command-line entry point.

Services are swapped through FastAPI dependency overrides (API) and
monkeypatched factories (CLI); no network or database is touched.

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from avalanche_watch.app import cli, services
from avalanche_watch.app.api.v1.sync import get_job_runner
from avalanche_watch.app.core.errors import ValidationError
from avalanche_watch.app.main import app
from avalanche_watch.app.services import get_alert_service, get_sync_service
from avalanche_watch.app.sync.orchestrator import (
    HistoricalSyncResult,
    HistoryImportReport,
    SyncResult,
    SyncStage,
)
from avalanche_watch.app.sync.scheduler import ScheduledJobRunner


# ═══════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════

class _FakeSyncService:
    def __init__(self, result=None, historical=None, report=None, error=None):
        self.result = result or SyncResult(success=True, stage=SyncStage.DONE, language="de")
        self.historical = historical
        self.report = report
        self.error = error
        self.calls = []

    def run_sync(self, language=None):
        self.calls.append(("sync", language))
        return self.result

    def run_historical_sync(self, point_in_time, language=None):
        self.calls.append(("history", point_in_time, language))
        return self.historical

    def import_history(self, days, language=None):
        self.calls.append(("import", days, language))
        if self.error:
            raise self.error
        return self.report


class _FakeAlertService:
    def __init__(self):
        self.calls = []

    def dispatch_due_reminders(self, now=None):
        self.calls.append(now)
        return 2


@pytest.fixture
def client():
    yield TestClient(app)
    app.dependency_overrides.clear()


def _override_sync(service: _FakeSyncService) -> _FakeSyncService:
    app.dependency_overrides[get_sync_service] = lambda: service
    return service


# ═══════════════════════════════════════════════════════════════════════════
# Root & health
# ═══════════════════════════════════════════════════════════════════════════

class TestRoot:
    def test_root(self, client):
        body = client.get("/").json()
        assert "bulletin-sync" in body["modules"]

    def test_liveness(self, client):
        response = client.get("/health/live")
        assert response.json() == {"status": "alive"}
        assert "X-Request-ID" in response.headers

    def test_request_id_propagated(self, client):
        response = client.get("/", headers={"X-Request-ID": "abc123"})
        assert response.headers["X-Request-ID"] == "abc123"


# ═══════════════════════════════════════════════════════════════════════════
# Sync endpoints
# ═══════════════════════════════════════════════════════════════════════════

class TestSyncEndpoint:
    def test_success(self, client):
        service = _override_sync(_FakeSyncService())
        response = client.post("/api/v1/sync", json={"language": "FR"})
        assert response.status_code == 200
        assert response.json()["stage"] == "done"
        assert service.calls == [("sync", "fr")]

    def test_no_body_uses_default(self, client):
        service = _override_sync(_FakeSyncService())
        assert client.post("/api/v1/sync").status_code == 200
        assert service.calls == [("sync", None)]

    def test_unsupported_language(self, client):
        _override_sync(_FakeSyncService())
        assert client.post("/api/v1/sync", json={"language": "xx"}).status_code == 422

    def test_skipped_is_conflict(self, client):
        _override_sync(_FakeSyncService(SyncResult(skipped=True, errors=["Sync already in progress"])))
        assert client.post("/api/v1/sync").status_code == 409

    def test_fetch_failure_is_bad_gateway(self, client):
        _override_sync(_FakeSyncService(SyncResult(stage=SyncStage.FETCHING, errors=["boom"])))
        assert client.post("/api/v1/sync").status_code == 502

    def test_later_failure_is_server_error(self, client):
        _override_sync(_FakeSyncService(SyncResult(stage=SyncStage.COMPUTING_STATUSES)))
        assert client.post("/api/v1/sync").status_code == 500


class TestHistoryEndpoints:
    def test_no_bulletin_is_not_found(self, client):
        point = datetime(2025, 1, 15, 12, tzinfo=timezone.utc)
        historical = HistoricalSyncResult(
            stage=SyncStage.FETCHING, point_in_time=point,
            errors=["No bulletin found for 2025-01-15T12:00:00+00:00"],
        )
        _override_sync(_FakeSyncService(historical=historical))
        response = client.post("/api/v1/sync/history", json={"point_in_time": point.isoformat()})
        assert response.status_code == 404

    def test_historical_success(self, client):
        point = datetime(2025, 1, 15, 12, tzinfo=timezone.utc)
        historical = HistoricalSyncResult(success=True, stage=SyncStage.DONE, point_in_time=point)
        service = _override_sync(_FakeSyncService(historical=historical))
        response = client.post("/api/v1/sync/history",
                               json={"point_in_time": point.isoformat(), "language": "it"})
        assert response.status_code == 200
        assert service.calls[0][2] == "it"

    def test_import(self, client):
        report = HistoryImportReport(days=5, language="de", imported=4, skipped_days=1)
        _override_sync(_FakeSyncService(report=report))
        response = client.post("/api/v1/sync/history/import", json={"days": 5})
        assert response.status_code == 200
        assert response.json()["imported"] == 4

    def test_import_days_bounds(self, client):
        _override_sync(_FakeSyncService())
        assert client.post("/api/v1/sync/history/import", json={"days": 0}).status_code == 422

    def test_import_skipped(self, client):
        _override_sync(_FakeSyncService(report=HistoryImportReport(days=3, language="de", skipped=True)))
        assert client.post("/api/v1/sync/history/import", json={"days": 3}).status_code == 409

    def test_domain_error_handler(self, client):
        _override_sync(_FakeSyncService(error=ValidationError("days must be at least 1", field="days")))
        response = client.post("/api/v1/sync/history/import", json={"days": 3})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_database_error_is_service_unavailable(self, client):
        error = OperationalError("SELECT 1", {}, Exception("database is locked"))
        _override_sync(_FakeSyncService(error=error))
        response = client.post("/api/v1/sync/history/import", json={"days": 3})
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "STORAGE_ERROR"


class TestRemindersAndJobs:
    def test_dispatch_reminders(self, client):
        alerts = _FakeAlertService()
        app.dependency_overrides[get_alert_service] = lambda: alerts
        response = client.post("/api/v1/alerts/reminders/dispatch")
        assert response.json() == {"queued": 2}
        assert alerts.calls == [None]

    def test_job_history(self, client):
        runner = ScheduledJobRunner()
        runner.add_job("bulletin-sync", 1800, lambda: None)
        app.dependency_overrides[get_job_runner] = lambda: runner
        body = client.get("/api/v1/sync/jobs").json()
        assert body["scheduler_running"] is False
        assert body["jobs"] == ["bulletin-sync"]
        assert body["runs"] == []


# ═══════════════════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════════════════

class TestCli:
    @pytest.fixture(autouse=True)
    def _no_real_services(self, monkeypatch):
        monkeypatch.setattr(services, "get_dispatch_worker", lambda inline=False: None)
        monkeypatch.setattr(services, "shutdown_services", lambda: None)

    def test_parser(self):
        args = cli.build_parser().parse_args(["import-history", "--days", "7", "--lang", "fr"])
        assert (args.command, args.days, args.lang) == ("import-history", 7, "fr")

    def test_sync_exit_codes(self, monkeypatch, capsys):
        monkeypatch.setattr(services, "get_sync_service", lambda: _FakeSyncService())
        assert cli.main(["sync", "--lang", "de"]) == 0
        assert '"success": true' in capsys.readouterr().out

        failed = _FakeSyncService(SyncResult(stage=SyncStage.FETCHING))
        monkeypatch.setattr(services, "get_sync_service", lambda: failed)
        assert cli.main(["sync"]) == 1

    def test_domain_error_exit_code(self, monkeypatch):
        service = _FakeSyncService(error=ValidationError("days must be at least 1"))
        monkeypatch.setattr(services, "get_sync_service", lambda: service)
        assert cli.main(["import-history", "--days", "1"]) == 1

    def test_send_reminders(self, monkeypatch, capsys):
        monkeypatch.setattr(services, "get_alert_service", lambda: _FakeAlertService())
        assert cli.main(["send-reminders"]) == 0
        assert '"queued": 2' in capsys.readouterr().out

    def test_test_connection(self, monkeypatch):
        client = SimpleNamespace(test_connection=lambda: False)
        monkeypatch.setattr(services, "get_bulletin_client", lambda: client)
        assert cli.main(["test-connection"]) == 1
