"""
Request middleware: correlation ids, timing and one log line per request.

Pipeline logs emitted while serving POST /api/v1/sync carry the request id
because the whole downstream call runs inside ``bind_log_context``.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from avalanche_watch.app.core.logging_config import bind_log_context

logger = logging.getLogger(__name__)

# Probes and docs are polled constantly
QUIET_PREFIXES = ("/health/live", "/docs", "/redoc", "/openapi", "/favicon")
MAX_REQUEST_ID_LENGTH = 64


def _request_id(request: Request) -> str:
    incoming = request.headers.get("X-Request-ID", "").strip()
    if incoming and len(incoming) <= MAX_REQUEST_ID_LENGTH:
        return incoming
    return uuid.uuid4().hex[:16]


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Time every request and tag its logs with a correlation id."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _request_id(request)
        path = request.url.path

        with bind_log_context(request_id=request_id, method=request.method):
            start = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "%s %s failed", request.method, path,
                    extra={"status_code": 500, "endpoint": path,
                           "duration_ms": round((time.perf_counter() - start) * 1000, 1)},
                )
                raise

            duration_ms = round((time.perf_counter() - start) * 1000, 1)
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{duration_ms}ms"

            if not path.startswith(QUIET_PREFIXES):
                logger.log(
                    logging.WARNING if response.status_code >= 400 else logging.INFO,
                    "%s %s -> %d", request.method, path, response.status_code,
                    extra={"duration_ms": duration_ms, "status_code": response.status_code,
                           "endpoint": path},
                )
        return response
