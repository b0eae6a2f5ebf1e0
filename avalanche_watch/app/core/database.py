"""
Database layer — SQLAlchemy 2.0 engine, sessions and ORM base.

The ingestion pipeline runs synchronously (scheduled job, CLI, worker
threads), so the engine is a plain blocking engine. SQLite is the default
store; PostgreSQL works through the ``postgres`` extra (psycopg).

Provides:
    • Engine and session factory built from ``DATABASE_URL``
    • ``session_scope()`` transactional context manager
    • Dependency injection for FastAPI routes
    • Base model for ORM entities

Usage:
    from avalanche_watch.app.core.database import session_scope

    with session_scope() as session:
        session.add(MonitoredLocation(name="Davos", ...))
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from avalanche_watch.app.core.config import settings

logger = logging.getLogger(__name__)


def build_engine(url: str, **overrides: Any) -> Engine:
    """Create an engine with options suited to the backend."""
    kwargs: Dict[str, Any] = {"echo": settings.DATABASE_ECHO, "future": True}
    if url.startswith("sqlite"):
        # Worker threads share the engine
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
        kwargs["pool_pre_ping"] = True
    kwargs.update(overrides)
    return create_engine(url, **kwargs)


# ── Engine ──
engine = build_engine(settings.DATABASE_URL)

# ── Session Factory ──
SessionLocal = sessionmaker(
    bind=engine,
    class_=Session,
    expire_on_commit=False,
)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


@contextmanager
def session_scope(factory: sessionmaker = None) -> Iterator[Session]:
    """Commit on success, roll back and re-raise on error, always close."""
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ── Dependency ──
def get_db() -> Iterator[Session]:
    """FastAPI dependency: yields a database session."""
    with session_scope() as session:
        yield session


# ── Lifecycle ──
def init_db(bind: Engine = None) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Register models on the metadata before create_all
    from avalanche_watch.app.storage import models  # noqa: F401

    Base.metadata.create_all(bind or engine)
    logger.info("Database tables initialised")


def close_db() -> None:
    """Dispose engine connections."""
    engine.dispose()
    logger.info("Database connections closed")
