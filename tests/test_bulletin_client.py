"""
test_bulletin_client.py — Bulletin fetch, retry and classification.

The provider is replaced by ``httpx.MockTransport``; backoff waits are
recorded instead of slept.

Run with:
    pytest tests/test_bulletin_client.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from avalanche_watch.app.core.errors import ValidationError
from avalanche_watch.app.ingestion.bulletin_client import (
    BackoffPolicy,
    BulletinClient,
    FetchStatus,
)

BASE_URL = "https://bulletins.test/api"
COLLECTION = {"type": "FeatureCollection", "features": [{"type": "Feature"}]}


# ═══════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════

class _Provider:
    """Replays queued responses and records every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        # Fresh copy so a repeated reply is never a consumed response
        return httpx.Response(item.status_code, content=item.content, headers=item.headers)


def _make_client(provider: _Provider, sleeps: list, max_attempts: int = 3) -> BulletinClient:
    return BulletinClient(
        base_url=BASE_URL,
        policy=BackoffPolicy(max_attempts=max_attempts, base_delay=1.0, multiplier=2.0),
        sleep=sleeps.append,
        transport=httpx.MockTransport(provider),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Backoff
# ═══════════════════════════════════════════════════════════════════════════

class TestBackoffPolicy:
    def test_exponential_delays(self):
        policy = BackoffPolicy(base_delay=1.0, multiplier=2.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


# ═══════════════════════════════════════════════════════════════════════════
# Fetch
# ═══════════════════════════════════════════════════════════════════════════

class TestFetch:
    def test_success(self):
        provider = _Provider(httpx.Response(200, json=COLLECTION))
        sleeps: list = []
        with _make_client(provider, sleeps) as client:
            outcome = client.fetch("de")

        assert outcome.status == FetchStatus.SUCCESS
        assert outcome.available is True
        assert outcome.payload == COLLECTION
        assert outcome.attempts == 1
        assert sleeps == []
        assert provider.requests[0].url.path == "/api/bulletin/caaml/v4/de/geojson"

    def test_language_in_path(self):
        provider = _Provider(httpx.Response(200, json=COLLECTION))
        with _make_client(provider, []) as client:
            client.fetch("FR")
        assert "/fr/" in provider.requests[0].url.path

    def test_unsupported_language(self):
        provider = _Provider(httpx.Response(200, json=COLLECTION))
        with _make_client(provider, []) as client:
            with pytest.raises(ValidationError):
                client.fetch("xx")
        assert provider.requests == []

    def test_not_a_feature_collection_is_no_data(self):
        provider = _Provider(httpx.Response(200, json={"type": "Feature"}))
        with _make_client(provider, []) as client:
            outcome = client.fetch("de")
        assert outcome.status == FetchStatus.NO_DATA
        assert outcome.payload is None

    def test_invalid_json_is_client_error(self):
        provider = _Provider(httpx.Response(200, text="<html>maintenance</html>"))
        with _make_client(provider, []) as client:
            outcome = client.fetch("de")
        assert outcome.status == FetchStatus.CLIENT_ERROR
        assert outcome.attempts == 1

    def test_404_not_retried(self):
        provider = _Provider(httpx.Response(404, text="not found"))
        sleeps: list = []
        with _make_client(provider, sleeps) as client:
            outcome = client.fetch("de")
        assert outcome.status == FetchStatus.CLIENT_ERROR
        assert outcome.status_code == 404
        assert len(provider.requests) == 1
        assert sleeps == []


class TestRetry:
    def test_5xx_then_success(self):
        provider = _Provider(
            httpx.Response(503),
            httpx.Response(200, json=COLLECTION),
        )
        sleeps: list = []
        with _make_client(provider, sleeps) as client:
            outcome = client.fetch("de")
        assert outcome.available
        assert outcome.attempts == 2
        assert sleeps == [1.0]

    def test_429_retried(self):
        provider = _Provider(
            httpx.Response(429),
            httpx.Response(429),
            httpx.Response(200, json=COLLECTION),
        )
        sleeps: list = []
        with _make_client(provider, sleeps) as client:
            outcome = client.fetch("de")
        assert outcome.available
        assert sleeps == [1.0, 2.0]

    def test_transport_errors_exhaust(self):
        provider = _Provider(httpx.ConnectError("connection refused"))
        sleeps: list = []
        with _make_client(provider, sleeps) as client:
            outcome = client.fetch("de")
        assert outcome.status == FetchStatus.TRANSPORT_ERROR
        assert outcome.attempts == 3
        assert len(provider.requests) == 3
        assert sleeps == [1.0, 2.0]
        assert "ConnectError" in outcome.error_message

    def test_persistent_5xx_exhausts(self):
        provider = _Provider(httpx.Response(500))
        with _make_client(provider, [], max_attempts=2) as client:
            outcome = client.fetch("de")
        assert outcome.status == FetchStatus.TRANSPORT_ERROR
        assert outcome.status_code == 500
        assert outcome.attempts == 2


class TestFetchForDate:
    def test_active_at_param_in_utc(self):
        provider = _Provider(httpx.Response(200, json=COLLECTION))
        point = datetime(2025, 1, 15, 12, 0, tzinfo=timezone(timedelta(hours=1)))
        with _make_client(provider, []) as client:
            outcome = client.fetch_for_date(point, "de")
        assert outcome.available
        assert provider.requests[0].url.params["activeAt"] == "2025-01-15T11:00:00+00:00"

    def test_naive_treated_as_utc(self):
        provider = _Provider(httpx.Response(200, json=COLLECTION))
        with _make_client(provider, []) as client:
            client.fetch_for_date(datetime(2025, 1, 15, 12, 0), "de")
        assert provider.requests[0].url.params["activeAt"] == "2025-01-15T12:00:00+00:00"

    def test_to_dict(self):
        provider = _Provider(httpx.Response(200, json=COLLECTION))
        with _make_client(provider, []) as client:
            summary = client.fetch_for_date(datetime(2025, 1, 15), "de").to_dict()
        assert summary["status"] == "success"
        assert summary["feature_count"] == 1
