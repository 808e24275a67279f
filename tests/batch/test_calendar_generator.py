"""
Tests for fortune_batch.services.calendar_generator and calendar_store.

Validates idempotent forward generation, per-day failure isolation,
the duplicate-date race, the fatal abort path and the run record each
generation leaves behind.
"""

import asyncio
from datetime import date, timedelta

import pytest

from fortune_kernel.exceptions import InvalidRunParametersError

from fortune_batch.collaborators import SexagenaryPillarCalculator
from fortune_batch.domain.types import CalendarEntry, JobRunStatus, JobType
from fortune_batch.services.calendar_generator import CalendarGenerator
from fortune_batch.services.calendar_store import CalendarStore


# =============================================================================
# Test collaborators
# =============================================================================


class FlakyCalculator(SexagenaryPillarCalculator):
    """Raises for selected dates, delegates otherwise."""

    def __init__(self, failing_dates):
        self.failing_dates = set(failing_dates)

    def compute_pillar(self, day):
        if day in self.failing_dates:
            raise ArithmeticError(f"cannot compute pillar for {day}")
        return super().compute_pillar(day)


class BlindCalendarStore(CalendarStore):
    """Never sees existing rows, so every insert races the UNIQUE constraint."""

    def exists(self, day):
        return False


class BrokenAnchorClock:
    def now(self):
        raise RuntimeError("clock unavailable")

    def now_utc(self):
        raise RuntimeError("clock unavailable")


@pytest.fixture
def generator(calendar_store, job_runs, calculator, clock):
    return CalendarGenerator(calendar_store, job_runs, calculator, clock=clock)


# =============================================================================
# Generation
# =============================================================================


class TestGenerate:
    def test_creates_consecutive_days_from_today(self, generator, calendar_store, today):
        result = asyncio.run(generator.generate(3))

        assert result.success
        assert (result.total, result.created, result.skipped, result.errors) == (3, 3, 0, 0)
        for offset in range(3):
            assert calendar_store.exists(today + timedelta(days=offset))
        assert not calendar_store.exists(today + timedelta(days=3))

    def test_entry_content(self, generator, calendar_store, today):
        asyncio.run(generator.generate(1))
        entry = calendar_store.get(today)
        expected = SexagenaryPillarCalculator().compute_pillar(today)
        assert entry.heavenly_stem == expected.heavenly_stem
        assert entry.earthly_branch == expected.earthly_branch
        assert entry.hidden_stems == expected.hidden_stems
        assert entry.energy_description == expected.energy_description
        assert entry.entry_id is not None

    def test_idempotent_extension(self, generator, calendar_store):
        asyncio.run(generator.generate(3))
        result = asyncio.run(generator.generate(5))

        assert result.created == 2
        assert result.skipped == 3
        assert result.errors == 0
        assert calendar_store.count() == 5

    def test_rerun_creates_nothing(self, generator, calendar_store):
        asyncio.run(generator.generate(4))
        result = asyncio.run(generator.generate(4))
        assert (result.created, result.skipped) == (0, 4)
        assert calendar_store.count() == 4

    def test_zero_days(self, generator, calendar_store, job_runs):
        result = asyncio.run(generator.generate(0))
        assert result.success
        assert result.total == 0
        assert calendar_store.count() == 0
        assert job_runs.get_run(result.run_id).status == JobRunStatus.COMPLETED

    def test_negative_days_rejected(self, generator, job_runs):
        with pytest.raises(InvalidRunParametersError):
            asyncio.run(generator.generate(-1))
        assert job_runs.list_runs().total == 0

    def test_run_record(self, generator, job_runs):
        result = asyncio.run(generator.generate(3, requested_by="admin-7"))
        run = job_runs.get_run(result.run_id)

        assert run.job_type == JobType.CALENDAR_GENERATOR
        assert run.status == JobRunStatus.COMPLETED
        assert run.params == {"days": 3}
        assert run.scheduled_by == "admin-7"
        assert (run.total_items, run.processed_items, run.error_items) == (3, 3, 0)
        assert run.end_time is not None
        assert run.result["created"] == 3

    def test_completion_logged_with_counts(self, generator, calendar_store, captured_logs):
        calendar_store.insert(CalendarEntry(date=date(2026, 2, 2), heavenly_stem="甲", earthly_branch="子"))

        result = asyncio.run(generator.generate(3))

        assert result.success
        completed = [r for r in captured_logs() if r["message"] == "calendar_generation_completed"]
        assert len(completed) == 1
        assert completed[0]["created_count"] == 2
        assert completed[0]["skipped_count"] == 1
        assert completed[0]["error_count"] == 0
        assert completed[0]["run_id"] == str(result.run_id)


# =============================================================================
# Failure isolation
# =============================================================================


class TestFailureIsolation:
    def test_one_failing_day_does_not_stop_the_rest(
        self, calendar_store, job_runs, clock, today,
    ):
        bad_day = today + timedelta(days=1)
        generator = CalendarGenerator(
            calendar_store, job_runs, FlakyCalculator({bad_day}), clock=clock,
        )
        result = asyncio.run(generator.generate(4))

        assert not result.success
        assert not result.aborted
        assert (result.created, result.skipped, result.errors) == (3, 0, 1)
        assert result.error_details[0]["date"] == bad_day.isoformat()
        assert "cannot compute pillar" in result.error_details[0]["message"]
        assert not calendar_store.exists(bad_day)
        assert calendar_store.exists(today + timedelta(days=3))

        run = job_runs.get_run(result.run_id)
        assert run.status == JobRunStatus.COMPLETED_WITH_ERRORS
        assert (run.processed_items, run.error_items) == (4, 1)
        assert run.error_list[0].item_id == bad_day.isoformat()
        assert "ArithmeticError" in run.error_list[0].stack

    def test_failed_day_filled_on_next_run(self, calendar_store, job_runs, clock, today):
        flaky = FlakyCalculator({today})
        asyncio.run(CalendarGenerator(calendar_store, job_runs, flaky, clock=clock).generate(2))
        flaky.failing_dates.clear()
        result = asyncio.run(
            CalendarGenerator(calendar_store, job_runs, flaky, clock=clock).generate(2)
        )
        assert (result.created, result.skipped) == (1, 1)

    def test_duplicate_insert_counts_as_skip(self, session_factory, job_runs, calculator, clock, today):
        store = BlindCalendarStore(session_factory)
        store.insert(CalendarEntry(date=today, heavenly_stem="甲", earthly_branch="子"))

        result = asyncio.run(CalendarGenerator(store, job_runs, calculator, clock=clock).generate(2))

        assert (result.created, result.skipped, result.errors) == (1, 1, 0)
        assert store.count() == 2
        # The original row is untouched
        assert store.get(today).heavenly_stem == "甲"

    def test_fatal_error_finalizes_failed(self, calendar_store, job_runs, calculator):
        generator = CalendarGenerator(calendar_store, job_runs, calculator, clock=BrokenAnchorClock())
        # Run creation reads the store's own clock, so only the anchor lookup fails
        result = asyncio.run(generator.generate(5))

        assert not result.success
        assert result.aborted
        assert result.errors == 1
        assert result.error_details[0]["date"] == "system"
        run = job_runs.get_run(result.run_id)
        assert run.status == JobRunStatus.FAILED
        assert run.error_list[0].item_id == "system"
        assert run.result["success"] is False
        assert run.result["aborted"] is True


# =============================================================================
# CalendarStore
# =============================================================================


class TestCalendarStore:
    def test_insert_duplicate_returns_false(self, calendar_store):
        entry = CalendarEntry(date=date(2026, 3, 1), heavenly_stem="甲", earthly_branch="子")
        assert calendar_store.insert(entry)
        assert not calendar_store.insert(entry)
        assert calendar_store.count() == 1

    def test_duplicate_rejection_logged(self, calendar_store, captured_logs):
        entry = CalendarEntry(date=date(2026, 3, 1), heavenly_stem="甲", earthly_branch="子")
        calendar_store.insert(entry)
        calendar_store.insert(entry)
        messages = [r["message"] for r in captured_logs()]
        assert "calendar_entry_duplicate_rejected" in messages

    def test_get_missing(self, calendar_store):
        assert calendar_store.get(date(2030, 1, 1)) is None

    def test_list_entries_newest_first(self, generator, calendar_store, today):
        asyncio.run(generator.generate(5))
        page = calendar_store.list_entries(
            start_date=today + timedelta(days=1), end_date=today + timedelta(days=3), limit=2,
        )
        assert page.total == 3
        assert page.pages == 2
        assert [e.date for e in page.items] == [
            today + timedelta(days=3), today + timedelta(days=2),
        ]
