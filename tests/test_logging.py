"""
Tests for fortune_kernel.logging_config.

Validates run-field propagation through asyncio fan-out, the JSON record
shape, and that the batch jobs themselves produce well-formed records
carrying their run fields.
"""

import asyncio
import json
import logging
from datetime import date
from io import StringIO
from uuid import uuid4

import pytest

from fortune_kernel.exceptions import InvalidCronExpressionError
from fortune_kernel.logging_config import (
    RESERVED_EXTRA_KEYS,
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)

from fortune_batch.domain.types import FortuneUpdateStatus, JobRunStatus
from fortune_batch.services.calendar_generator import CalendarGenerator
from fortune_batch.services.fortune_refresh import FortuneRefreshJob


@pytest.fixture(autouse=True)
def _clean_logging():
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


@pytest.fixture
def log_stream():
    """Install the JSON handler on a StringIO and return a record reader."""
    stream = StringIO()
    configure_logging(stream=stream, level="DEBUG")

    def _records() -> list[dict]:
        return [json.loads(line) for line in stream.getvalue().splitlines() if line]

    return _records


# =============================================================================
# Run context
# =============================================================================


class TestLogContext:
    def test_bind_restores_previous_fields(self):
        LogContext.set(correlation_id="req-1")
        with LogContext.bind(run_id="run-1", job_type="calendar-generator") as bound:
            assert bound == {
                "correlation_id": "req-1",
                "run_id": "run-1",
                "job_type": "calendar-generator",
            }
            with LogContext.bind(run_id="run-2"):
                assert LogContext.get_all()["run_id"] == "run-2"
            assert LogContext.get_all()["run_id"] == "run-1"
        assert LogContext.get_all() == {"correlation_id": "req-1"}

    def test_none_values_ignored(self):
        with LogContext.bind(run_id="run-1", actor_id=None):
            assert LogContext.get_all() == {"run_id": "run-1"}

    def test_values_stringified(self):
        run_id = uuid4()
        with LogContext.bind(run_id=run_id):
            assert LogContext.get_all()["run_id"] == str(run_id)

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError) as exc_info:
            with LogContext.bind(user_id="u1"):
                pass
        assert "user_id" in str(exc_info.value)
        assert LogContext.get_all() == {}

    def test_get_all_returns_a_copy(self):
        LogContext.set(run_id="run-1")
        LogContext.get_all()["run_id"] = "tampered"
        assert LogContext.get_all()["run_id"] == "run-1"

    def test_fan_out_tasks_inherit_run(self):
        seen = []

        async def per_user(user_id):
            await asyncio.sleep(0)
            seen.append((user_id, LogContext.get_all().get("run_id")))

        async def run():
            with LogContext.bind(run_id="run-7"):
                await asyncio.gather(*(per_user(u) for u in ("u1", "u2", "u3")))
            await per_user("after")

        asyncio.run(run())
        assert sorted(seen) == [("after", None), ("u1", "run-7"), ("u2", "run-7"), ("u3", "run-7")]

    def test_child_bind_does_not_leak_to_parent(self):
        async def child():
            LogContext.set(job_name="child-only")

        async def parent():
            with LogContext.bind(run_id="run-1"):
                await asyncio.create_task(child())
                return LogContext.get_all()

        assert asyncio.run(parent()) == {"run_id": "run-1"}

    def test_concurrent_runs_stay_separate(self):
        async def job(run_id):
            with LogContext.bind(run_id=run_id):
                await asyncio.sleep(0)
                return LogContext.get_all()["run_id"]

        async def both():
            return await asyncio.gather(job("run-a"), job("run-b"))

        assert asyncio.run(both()) == ["run-a", "run-b"]


# =============================================================================
# Record shape
# =============================================================================


class TestStructuredFormatter:
    def test_header_and_extras(self, log_stream):
        get_logger("test").info("page_done", extra={"page": 3})

        (record,) = log_stream()
        assert record["level"] == "INFO"
        assert record["logger"] == "fortune_kernel.test"
        assert record["message"] == "page_done"
        assert record["page"] == 3
        assert record["ts"].endswith("+00:00")

    def test_run_fields_win_over_extra(self, log_stream):
        with LogContext.bind(run_id="run-1"):
            get_logger("test").info("event", extra={"run_id": "other"})
        assert log_stream()[0]["run_id"] == "run-1"

    def test_domain_values_serialized(self, log_stream):
        run_id = uuid4()
        get_logger("test").info(
            "values",
            extra={
                "update_run_id": run_id,
                "target_date": date(2026, 2, 1),
                "status": FortuneUpdateStatus.FAILED,
                "user_ids": frozenset({"u2", "u1"}),
            },
        )
        record = log_stream()[0]
        assert record["update_run_id"] == str(run_id)
        assert record["target_date"] == "2026-02-01"
        assert record["status"] == FortuneUpdateStatus.FAILED.value
        assert record["user_ids"] == ["u1", "u2"]

    def test_stems_written_readable(self):
        stream = StringIO()
        configure_logging(stream=stream)
        get_logger("test").info("pillar", extra={"heavenly_stem": "甲", "earthly_branch": "子"})
        assert "甲" in stream.getvalue()
        assert json.loads(stream.getvalue())["earthly_branch"] == "子"

    def test_kernel_exception_fields(self, log_stream):
        try:
            raise InvalidCronExpressionError("61 * * * *", "minute out of range")
        except InvalidCronExpressionError:
            get_logger("test").error("cron_rejected", exc_info=True)

        record = log_stream()[0]
        assert record["exc_type"] == "InvalidCronExpressionError"
        assert record["exc_code"] == "INVALID_CRON_EXPRESSION"
        assert record["exc_expression"] == "61 * * * *"
        assert record["exc_reason"] == "minute out of range"
        assert "Traceback" in record["traceback"]

    def test_plain_exception_has_no_code(self, log_stream):
        try:
            raise ConnectionError("directory lost")
        except ConnectionError:
            get_logger("test").warning("lost", exc_info=True)
        record = log_stream()[0]
        assert record["exc_message"] == "directory lost"
        assert "exc_code" not in record

    def test_reserved_keys_listed(self):
        assert {"created", "name", "message", "msg", "args"} <= RESERVED_EXTRA_KEYS
        assert "created_count" not in RESERVED_EXTRA_KEYS


# =============================================================================
# Setup
# =============================================================================


class TestConfigureLogging:
    def test_first_handler_wins(self):
        first = logging.StreamHandler(StringIO())
        second = logging.StreamHandler(StringIO())

        assert configure_logging(handler=first) is first
        assert configure_logging(handler=second) is first

        namespace = logging.getLogger("fortune_kernel")
        ours = [h for h in namespace.handlers if isinstance(h.formatter, StructuredFormatter)]
        assert ours == [first]
        assert second not in namespace.handlers

    @pytest.mark.parametrize("level,expected", [
        ("debug", logging.DEBUG),
        ("WARNING", logging.WARNING),
        (logging.ERROR, logging.ERROR),
    ])
    def test_level_by_name_or_number(self, level, expected):
        configure_logging(stream=StringIO(), level=level)
        assert logging.getLogger("fortune_kernel").level == expected

    def test_unknown_level_name(self):
        with pytest.raises(ValueError):
            configure_logging(stream=StringIO(), level="LOUD")

    def test_reset_leaves_foreign_handlers(self):
        foreign = logging.NullHandler()
        namespace = logging.getLogger("fortune_kernel")
        namespace.addHandler(foreign)
        try:
            configure_logging(stream=StringIO())
            reset_logging()
            assert namespace.handlers.count(foreign) == 1
            assert not any(isinstance(h.formatter, StructuredFormatter) for h in namespace.handlers)
        finally:
            namespace.removeHandler(foreign)

    def test_info_level_drops_debug(self):
        stream = StringIO()
        configure_logging(stream=stream, level="INFO")
        logger = get_logger("batch.scheduler")
        logger.debug("job_next_fire")
        logger.info("job_scheduled")
        lines = stream.getvalue().splitlines()
        assert [json.loads(line)["message"] for line in lines] == ["job_scheduled"]
        assert json.loads(lines[0])["logger"] == "fortune_kernel.batch.scheduler"


# =============================================================================
# Records emitted by the batch jobs
# =============================================================================


class TestJobRecords:
    def test_calendar_run_at_info_level(self, calendar_store, job_runs, calculator, clock):
        stream = StringIO()
        configure_logging(stream=stream, level="INFO")
        generator = CalendarGenerator(calendar_store, job_runs, calculator, clock=clock)

        result = asyncio.run(generator.generate(2, requested_by="admin-1"))

        assert result.success
        assert job_runs.get_run(result.run_id).status == JobRunStatus.COMPLETED
        records = [json.loads(line) for line in stream.getvalue().splitlines()]
        run_records = [r for r in records if r["message"].startswith("calendar_generation_")]
        assert [r["message"] for r in run_records] == [
            "calendar_generation_started", "calendar_generation_completed",
        ]
        for record in run_records:
            assert record["run_id"] == str(result.run_id)
            assert record["job_type"] == "calendar-generator"
            assert record["actor_id"] == "admin-1"

    def test_failed_user_record_carries_run(
        self, log_stream, job_runs, fortune_runs, make_directory, make_service, clock,
    ):
        service = make_service(failing={"u2"})
        job = FortuneRefreshJob(
            job_runs, fortune_runs, make_directory(["u1", "u2", "u3"]), service, clock=clock,
        )

        result = asyncio.run(job.refresh())

        failures = [r for r in log_stream() if r["message"] == "fortune_user_failed"]
        assert len(failures) == 1
        assert failures[0]["user_id"] == "u2"
        assert failures[0]["run_id"] == str(result.run_id)
        assert failures[0]["job_type"] == "fortune-update"
        assert failures[0]["exc_type"] == "RuntimeError"
