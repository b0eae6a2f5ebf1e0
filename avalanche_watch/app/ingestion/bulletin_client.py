"""
bulletin_client.py — Avalanche bulletin retrieval from the provider API.

Fetches the current (or a historical) avalanche bulletin as a GeoJSON
FeatureCollection. Each feature carries the danger ratings and avalanche
problems for one or more provider micro-regions.

Endpoint:
    GET {BULLETIN_API_BASE_URL}/bulletin/caaml/v4/{lang}/geojson
    GET ...same...?activeAt=<ISO-8601>        (historical variant)

Error Handling Strategy
========================
    Level 1 — Transport errors (timeout, DNS, connection refused)
        → Retry up to ``max_attempts`` with exponential backoff (1s, 2s, 4s)
        → After exhaustion, return FetchOutcome(status=transport_error)

    Level 2 — HTTP errors
        → 429 Too Many Requests: retry
        → 5xx: retry (server-side transient error)
        → other 4xx: fail immediately with client_error

    Level 3 — Payload issues
        → Body is not JSON: fail immediately with client_error
        → JSON without the FeatureCollection marker: no_data (not an error,
          the provider has nothing published for that moment)

Callers never get partial results: ``payload`` is set only when
``outcome.available`` is true.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx

from avalanche_watch.app.core.config import settings
from avalanche_watch.app.core.errors import ValidationError

logger = logging.getLogger(__name__)


FEATURE_COLLECTION = "FeatureCollection"


class FetchStatus(str, Enum):
    """Outcome of a bulletin fetch."""
    SUCCESS = "success"
    NO_DATA = "no_data"                  # valid response, nothing published
    CLIENT_ERROR = "client_error"        # non-retryable 4xx / bad body
    TRANSPORT_ERROR = "transport_error"  # retries exhausted


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BackoffPolicy:
    """
    Retry budget for a single fetch.

    Delay before retry n (1-based) = base_delay × multiplier^(n-1):

        Attempt 1: immediate
        Attempt 2: wait 1 second
        Attempt 3: wait 2 seconds
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0

    def delay_for(self, retry_number: int) -> float:
        return self.base_delay * (self.multiplier ** (retry_number - 1))

    @classmethod
    def from_settings(cls) -> BackoffPolicy:
        return cls(
            max_attempts=settings.BULLETIN_MAX_ATTEMPTS,
            base_delay=settings.BULLETIN_BACKOFF_BASE,
            multiplier=settings.BULLETIN_BACKOFF_MULTIPLIER,
        )


@dataclass
class FetchOutcome:
    """
    Result of a bulletin fetch. Callers check ``available`` before using
    ``payload``.
    """
    status: FetchStatus
    language: str
    payload: Optional[Dict[str, Any]] = None
    attempts: int = 0
    latency_ms: int = 0
    status_code: Optional[int] = None
    error_message: str = ""

    @property
    def available(self) -> bool:
        return self.status == FetchStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "language": self.language,
            "attempts": self.attempts,
            "latency_ms": self.latency_ms,
            "status_code": self.status_code,
            "error_message": self.error_message,
            "feature_count": len(self.payload.get("features", [])) if self.payload else 0,
        }


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class BulletinClient:
    """
    Blocking HTTP client for the bulletin provider.

    ``sleep`` is injectable so tests (or a non-blocking runtime) can swap
    the backoff wait; ``transport`` lets tests plug in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        history_timeout: Optional[float] = None,
        policy: Optional[BackoffPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.BULLETIN_API_BASE_URL).rstrip("/")
        self.endpoint = endpoint or settings.BULLETIN_ENDPOINT
        self.timeout = timeout or settings.BULLETIN_TIMEOUT
        self.history_timeout = history_timeout or settings.BULLETIN_HISTORY_TIMEOUT
        self.policy = policy or BackoffPolicy.from_settings()
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=self.base_url + "/",
            headers={
                "Accept": "application/json",
                "User-Agent": settings.BULLETIN_USER_AGENT,
            },
            timeout=self.timeout,
            follow_redirects=True,
            transport=transport,
        )

    # ── Public API ──

    def fetch(self, language: Optional[str] = None) -> FetchOutcome:
        """Fetch the currently valid bulletin."""
        lang = self._validate_language(language)
        return self._fetch(lang, params=None, timeout=self.timeout)

    def fetch_for_date(
        self, point_in_time: datetime, language: Optional[str] = None
    ) -> FetchOutcome:
        """Fetch the bulletin that was valid at ``point_in_time``."""
        lang = self._validate_language(language)
        if point_in_time.tzinfo is None:
            point_in_time = point_in_time.replace(tzinfo=timezone.utc)
        active_at = point_in_time.astimezone(timezone.utc).isoformat()
        return self._fetch(
            lang, params={"activeAt": active_at}, timeout=self.history_timeout
        )

    def test_connection(self) -> bool:
        """True when the live bulletin for the default language is available."""
        return self.fetch(settings.DEFAULT_LANGUAGE).available

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> BulletinClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ── Internals ──

    def _validate_language(self, language: Optional[str]) -> str:
        lang = (language or settings.DEFAULT_LANGUAGE).lower()
        if lang not in settings.SUPPORTED_LANGUAGES:
            raise ValidationError(
                f"Unsupported bulletin language '{lang}'",
                field="language",
                supported=settings.SUPPORTED_LANGUAGES,
            )
        return lang

    def _fetch(
        self,
        language: str,
        *,
        params: Optional[Dict[str, str]],
        timeout: float,
    ) -> FetchOutcome:
        path = self.endpoint.format(lang=language)
        start = time.perf_counter()
        last_error = ""
        last_status: Optional[int] = None
        attempt = 0

        for attempt in range(1, self.policy.max_attempts + 1):
            if attempt > 1:
                wait = self.policy.delay_for(attempt - 1)
                logger.warning(
                    "Bulletin retry %d/%d after %.1fs — %s",
                    attempt, self.policy.max_attempts, wait, last_error,
                    extra={"language": language, "attempt": attempt},
                )
                self._sleep(wait)

            try:
                response = self._client.get(path, params=params, timeout=timeout)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                last_status = None
                continue

            last_status = response.status_code
            if response.status_code == 429 or response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                continue
            if response.status_code >= 400:
                return self._finish(FetchOutcome(
                    status=FetchStatus.CLIENT_ERROR,
                    language=language,
                    attempts=attempt,
                    status_code=response.status_code,
                    error_message=f"API returned {response.status_code}: {response.text[:200]}",
                ), start)

            try:
                body = response.json()
            except ValueError as e:
                return self._finish(FetchOutcome(
                    status=FetchStatus.CLIENT_ERROR,
                    language=language,
                    attempts=attempt,
                    status_code=response.status_code,
                    error_message=f"Invalid JSON body: {e}",
                ), start)

            if not isinstance(body, dict) or body.get("type") != FEATURE_COLLECTION:
                return self._finish(FetchOutcome(
                    status=FetchStatus.NO_DATA,
                    language=language,
                    attempts=attempt,
                    status_code=response.status_code,
                    error_message="Response is not a FeatureCollection",
                ), start)

            return self._finish(FetchOutcome(
                status=FetchStatus.SUCCESS,
                language=language,
                payload=body,
                attempts=attempt,
                status_code=response.status_code,
            ), start)

        return self._finish(FetchOutcome(
            status=FetchStatus.TRANSPORT_ERROR,
            language=language,
            attempts=attempt,
            status_code=last_status,
            error_message=f"Failed after {attempt} attempts. Last error: {last_error}",
        ), start)

    def _finish(self, outcome: FetchOutcome, start: float) -> FetchOutcome:
        outcome.latency_ms = int((time.perf_counter() - start) * 1000)
        level = logging.INFO if outcome.status in (FetchStatus.SUCCESS, FetchStatus.NO_DATA) else logging.ERROR
        logger.log(
            level,
            "Bulletin fetch %s (lang=%s, attempts=%d, %dms)%s",
            outcome.status.value, outcome.language, outcome.attempts,
            outcome.latency_ms,
            f" — {outcome.error_message}" if outcome.error_message else "",
            extra={
                "language": outcome.language,
                "attempts": outcome.attempts,
                "latency_ms": outcome.latency_ms,
                "outcome": outcome.status.value,
            },
        )
        return outcome
