"""Shared pytest fixtures: in-memory DB, timeline store, populated commute trace."""

import sys
import os

# Add server root to path so imports work
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, init_db
from storage import SqlTimelineStore


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite database for each test.

    StaticPool keeps a single connection so worker threads see the same database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    """Provide a DB session, closed after each test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seeded_engine(engine, session_factory):
    """Database with the default thresholds seeded into the config table."""
    init_db(bind=engine, session_factory=session_factory)
    return engine


@pytest.fixture
def store(session_factory):
    return SqlTimelineStore(session_factory)


@pytest.fixture
def commute_store(store):
    """Store populated with the full commute trace for the demo user."""
    from tests.gps_test_fixtures import DEMO_USER_ID, commute_points

    store.save_points(DEMO_USER_ID, commute_points())
    return store
