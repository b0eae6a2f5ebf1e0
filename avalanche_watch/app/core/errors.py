"""
Error hierarchy and the FastAPI handlers that render it.

Pipeline entry points (sync, history, reminders) do NOT raise for expected
failures; they return results carrying ``success`` and ``errors``. The
classes here cover caller mistakes (bad language, bad day count), storage
outages surfacing through the API, and notification failures that must
reach the dispatch worker's retry policy.

Every handler renders the same envelope:

    {"error": {"code": "VALIDATION_ERROR", "message": "...", "status": 422,
               "details": {...}}}
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from avalanche_watch.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class AvalancheWatchError(Exception):
    """Base for all application errors."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str = "An unexpected error occurred", **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "code": self.error_code,
            "message": self.message,
            "status": self.status_code,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AvalancheWatchError):
    """Unsupported language, non-positive day count and similar (422)."""

    status_code = 422
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        super().__init__(message, field=field, **details)


class StorageError(AvalancheWatchError):
    """The database could not be read or written (503)."""

    status_code = 503
    error_code = "STORAGE_ERROR"

    def __init__(self, operation: str, message: str = ""):
        super().__init__(f"Storage operation '{operation}' failed: {message}", operation=operation)


class NotificationDeliveryError(AvalancheWatchError):
    """Push notification could not be delivered (502)."""

    status_code = 502
    error_code = "NOTIFICATION_DELIVERY_ERROR"

    def __init__(self, subscriber_id: int, message: str = ""):
        super().__init__(
            f"Notification to subscriber {subscriber_id} failed: {message}",
            subscriber_id=subscriber_id,
        )


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def _render(exc: AvalancheWatchError, request: Request) -> JSONResponse:
    body = exc.to_dict()
    if not settings.is_production:
        body["path"] = request.url.path
        body["method"] = request.method
    return JSONResponse(status_code=exc.status_code, content={"error": body})


def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(AvalancheWatchError)
    async def handle_app_error(request: Request, exc: AvalancheWatchError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log("%s: %s", exc.error_code, exc.message, extra={"endpoint": request.url.path})
        return _render(exc, request)

    @app.exception_handler(SQLAlchemyError)
    async def handle_storage_error(request: Request, exc: SQLAlchemyError):
        logger.error("Database error on %s", request.url.path, exc_info=exc)
        detail = str(exc.__cause__ or exc) if settings.DEBUG else ""
        return _render(StorageError(request.url.path, detail), request)

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _render(ValidationError(str(exc)), request)

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical("Unhandled exception", exc_info=exc)
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _render(AvalancheWatchError(message), request)
