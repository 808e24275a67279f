"""
Pytest fixtures for the fortune batch test suite.

Provides:
- In-memory SQLite engine and session factory with every table created
- Deterministic clock (naive datetimes; SQLite strips tzinfo)
- Instrumented fakes for the fortune service and the user directory
- Structured-log capture

Async job bodies are driven with ``asyncio.run`` inside plain tests.
"""

import asyncio
import json
import logging
from datetime import date, datetime
from io import StringIO

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import fortune_batch.models  # noqa: F401  (registers every table on Base.metadata)
from fortune_kernel.db.base import Base
from fortune_kernel.domain.clock import DeterministicClock
from fortune_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)

from fortune_batch.collaborators import SexagenaryPillarCalculator
from fortune_batch.models.users import UserAccountModel
from fortune_batch.services.calendar_store import CalendarStore
from fortune_batch.services.run_store import FortuneUpdateRunStore, JobRunStore


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture fortune_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, generator):
            asyncio.run(generator.generate(3))
            logs = captured_logs()
            assert any(r["message"] == "calendar_generation_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("fortune_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def clock():
    # Use naive datetimes for SQLite compatibility (SQLite strips tzinfo)
    return DeterministicClock(fixed_time=datetime(2026, 2, 1, 12, 0, 0))


@pytest.fixture
def today(clock) -> date:
    return clock.now().date()


@pytest.fixture
def job_runs(session_factory, clock):
    return JobRunStore(session_factory, clock)


@pytest.fixture
def fortune_runs(session_factory, clock):
    return FortuneUpdateRunStore(session_factory, clock)


@pytest.fixture
def calendar_store(session_factory):
    return CalendarStore(session_factory)


@pytest.fixture
def calculator():
    return SexagenaryPillarCalculator()


@pytest.fixture
def add_users(session_factory):
    """Insert user_accounts rows: ``add_users(["u1", "u2"], active=False)``."""

    def _add(ids, active=True):
        with session_factory.begin() as session:
            for user_id in ids:
                session.add(UserAccountModel(id=user_id, display_name=user_id, is_active=active))

    return _add


# =============================================================================
# Collaborator fakes
# =============================================================================


class StaticUserDirectory:
    """Active users from a fixed list; records every page request."""

    def __init__(self, user_ids, fail_on_count: Exception | None = None):
        self._ids = sorted(user_ids)
        self._fail_on_count = fail_on_count
        self.page_calls: list[tuple[int, int]] = []

    def count_active(self) -> int:
        if self._fail_on_count is not None:
            raise self._fail_on_count
        return len(self._ids)

    def page_active(self, offset: int, limit: int) -> list[str]:
        self.page_calls.append((offset, limit))
        return self._ids[offset:offset + limit]


class RecordingFortuneService:
    """Fortune service fake that counts concurrent calls.

    ``failing`` user ids raise; ``delay`` keeps each call in flight long
    enough for others to overlap.
    """

    def __init__(self, failing=(), delay: float = 0.001):
        self.failing = set(failing)
        self.delay = delay
        self.calls: list[tuple[str, date, bool]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate_fortune(self, user_id: str, day: date, force_update: bool) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.calls.append((user_id, day, force_update))
            await asyncio.sleep(self.delay)
            if user_id in self.failing:
                raise RuntimeError(f"fortune generation failed for {user_id}")
        finally:
            self.in_flight -= 1


@pytest.fixture
def fortune_service():
    return RecordingFortuneService()


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def make_service():
    """Factory for RecordingFortuneService instances."""
    return RecordingFortuneService


@pytest.fixture
def make_directory():
    """Factory for StaticUserDirectory instances."""
    return StaticUserDirectory


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
