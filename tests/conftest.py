"""
Shared fixtures: an in-memory SQLite store per test.

All sessions share one connection (StaticPool) so rows committed by one
``session_scope`` are visible to the next, exactly like a file database.
"""

from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from avalanche_watch.app.core.database import Base
from avalanche_watch.app.core.run_guard import LocalRunGuard
from avalanche_watch.app.storage import models  # noqa: F401


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def run_guard():
    return LocalRunGuard()
