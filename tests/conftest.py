"""Pytest configuration and shared fixtures.

This module provides fixtures for testing the circulation engine,
including in-memory databases, a controllable clock and a recording
notifier.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest

from circulation.config import reset_config
from circulation.coordinator import CirculationCoordinator, ItemLockRegistry
from circulation.db.sqlite import Database, reset_db
from circulation.notifications import RecordingNotifier


START = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def db() -> Database:
    """Create an in-memory database for testing."""
    database = Database(":memory:")
    database.create_tables()
    return database


@pytest.fixture(scope="function")
def temp_db_path() -> Generator[Path, None, None]:
    """Create a temporary database file path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)
    yield db_path
    # Cleanup
    if db_path.exists():
        db_path.unlink()


@pytest.fixture(autouse=True)
def isolate_globals() -> Generator[None, None, None]:
    """Keep global config and database out of each test's way."""
    reset_db()
    reset_config()
    yield
    reset_db()
    reset_config()
    os.environ.pop("CIRCULATION_DB_PATH", None)


# ============================================================================
# Engine Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Create a clock frozen at a known instant."""
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Create a notifier that records offers."""
    return RecordingNotifier()


@pytest.fixture
def coordinator(db, clock, notifier) -> CirculationCoordinator:
    """Create a coordinator with test database, clock and notifier."""
    return CirculationCoordinator(
        db=db,
        notifier=notifier,
        clock=clock,
        loan_period=timedelta(days=14),
        hold_window=timedelta(days=7),
        locks=ItemLockRegistry(max_attempts=3, initial_backoff=0.01),
    )
