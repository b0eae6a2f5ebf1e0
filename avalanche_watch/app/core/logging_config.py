"""
Structured logging configuration.

Provides:
    • JSON lines for production, coloured console lines for development
      (``LOG_FORMAT`` = auto | json | pretty)
    • Context binding: fields bound with ``bind_log_context`` are attached
      to every record emitted inside the block, on the current thread or
      asyncio task. The middleware binds request_id; the scheduler binds
      run_id and job; the dispatch worker binds the job it is running.
    • Whitelisted pipeline fields passed through ``extra=``

Usage:
    from avalanche_watch.app.core.logging_config import bind_log_context

    logger = logging.getLogger(__name__)
    with bind_log_context(run_id="3f9a1c2e", job="bulletin-sync"):
        logger.info("Bulletin stored", extra={"bulletin_id": "b-42", "language": "de"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

from avalanche_watch.app.core.config import settings

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

# Extra fields copied from a LogRecord into the output
STRUCTURED_FIELDS = (
    "language", "bulletin_id", "region_id", "location_id", "rule_id",
    "subscriber_id", "attempt", "attempts", "latency_ms", "duration_ms",
    "status_code", "endpoint", "stage", "outcome",
)

# Short tag shown by the pretty formatter, first present wins
_TAG_KEYS = ("request_id", "run_id", "job")


# ═══════════════════════════════════════════════════════════════════════════
# Context
# ═══════════════════════════════════════════════════════════════════════════

def get_log_context() -> Dict[str, Any]:
    return _log_context.get()


@contextmanager
def bind_log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """Merge ``fields`` into the log context for the duration of the block."""
    token = _log_context.set({**_log_context.get(), **fields})
    try:
        yield _log_context.get()
    finally:
        _log_context.reset(token)


def _structured(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in STRUCTURED_FIELDS if hasattr(record, key)}


# ═══════════════════════════════════════════════════════════════════════════
# Formatters
# ═══════════════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """One JSON object per line for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        ctx = get_log_context()
        if ctx:
            entry["context"] = ctx
        entry.update(_structured(record))

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Coloured single-line output for local runs and the CLI."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        ts = self.formatTime(record, "%H:%M:%S")

        ctx = get_log_context()
        tag = next((str(ctx[k]) for k in _TAG_KEYS if ctx.get(k)), "")
        tag_str = f" [{tag[:16]}]" if tag else ""

        fields = _structured(record)
        fields_str = (
            " (" + ", ".join(f"{k}={v}" for k, v in fields.items()) + ")" if fields else ""
        )

        line = (
            f"{color}{ts} {record.levelname:8s}{self.RESET}"
            f"{tag_str} {record.name}: {record.getMessage()}{fields_str}"
        )
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


# ═══════════════════════════════════════════════════════════════════════════
# Setup
# ═══════════════════════════════════════════════════════════════════════════

def _use_json() -> bool:
    fmt = settings.LOG_FORMAT.lower()
    if fmt == "auto":
        return settings.is_production
    return fmt == "json"


def setup_logging() -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if _use_json() else PrettyFormatter())
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DATABASE_ECHO else logging.WARNING
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
