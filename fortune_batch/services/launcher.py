"""
JobLauncher -- administrative "run now" triggers.

Contract:
    Each ``launch_*`` call validates its parameters, writes a JobRun with
    status ``started`` synchronously, starts the job as an asyncio task and
    returns a ``LaunchedRun`` immediately.  The task moves the launch record
    to ``running`` and finalizes it from the job's result.  Callers either
    poll the run record or await ``LaunchedRun.task``.

Architecture: fortune_batch/services.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any
from uuid import UUID

from fortune_kernel.exceptions import InvalidRunParametersError
from fortune_kernel.logging_config import LogContext, get_logger

from fortune_batch.domain.outcomes import error_from_exception
from fortune_batch.domain.types import (
    SYSTEM_ACTOR,
    JobRunStatus,
    JobType,
)
from fortune_batch.services.calendar_generator import CalendarGenerator
from fortune_batch.services.fortune_refresh import (
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_PAGE_SIZE,
    FortuneRefreshJob,
)
from fortune_batch.services.run_store import JobRunStore

logger = get_logger("batch.launcher")

MIN_CALENDAR_DAYS = 1
MAX_CALENDAR_DAYS = 365


@dataclass(frozen=True)
class LaunchedRun:
    """Handle for a job started in the background."""

    run_id: UUID
    status: JobRunStatus
    start_time: datetime
    task: asyncio.Task = field(repr=False, compare=False)


class JobLauncher:

    def __init__(
        self,
        run_store: JobRunStore,
        calendar_generator: CalendarGenerator,
        fortune_job: FortuneRefreshJob | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    ):
        self._runs = run_store
        self._calendar = calendar_generator
        self._fortune = fortune_job
        self._page_size = page_size
        self._max_concurrent = max_concurrent
        self._tasks: set[asyncio.Task] = set()

    def launch_calendar(
        self,
        days: int = 30,
        requested_by: str = SYSTEM_ACTOR,
    ) -> LaunchedRun:
        """Start calendar generation for ``days`` days (1..365).

        Raises:
            InvalidRunParametersError: ``days`` out of range.
            RuntimeError: No running event loop.
        """
        if isinstance(days, bool) or not isinstance(days, int) or not (
            MIN_CALENDAR_DAYS <= days <= MAX_CALENDAR_DAYS
        ):
            raise InvalidRunParametersError(
                "days", days, f"must be an integer between {MIN_CALENDAR_DAYS} and {MAX_CALENDAR_DAYS}",
            )
        return self._launch(
            JobType.CALENDAR_GENERATOR,
            {"days": days},
            requested_by,
            lambda: self._calendar.generate(days, requested_by=requested_by),
        )

    def launch_fortune_refresh(
        self,
        target_date: date | datetime | None = None,
        force_update: bool = False,
        requested_by: str = SYSTEM_ACTOR,
        user_ids: Sequence[str] | None = None,
    ) -> LaunchedRun:
        """Start a fortune refresh, optionally for specific users only.

        Raises:
            InvalidRunParametersError: No fortune job is configured, or
                ``user_ids`` is not a list of ids.
            RuntimeError: No running event loop.
        """
        if self._fortune is None:
            raise InvalidRunParametersError(
                "fortune_service", None, "no fortune service is configured",
            )
        if user_ids is not None and (
            isinstance(user_ids, str)
            or not isinstance(user_ids, Sequence)
            or not all(isinstance(u, str) and u for u in user_ids)
        ):
            raise InvalidRunParametersError(
                "user_ids", user_ids, "must be a list of user ids",
            )

        fortune = self._fortune
        day = fortune.normalize_target(target_date)
        params: dict[str, Any] = {
            "target_date": day.isoformat(),
            "force_update": force_update,
        }
        if user_ids is not None:
            params["user_ids"] = list(user_ids)

        return self._launch(
            JobType.FORTUNE_UPDATE,
            params,
            requested_by,
            lambda: fortune.refresh(
                force_update=force_update,
                target_date=day,
                page_size=self._page_size,
                requested_by=requested_by,
                max_concurrent=self._max_concurrent,
                user_ids=user_ids,
            ),
        )

    async def wait_all(self) -> None:
        """Wait for every launched task (graceful shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _launch(
        self,
        job_type: JobType,
        params: dict[str, Any],
        requested_by: str,
        job: Callable[[], Awaitable[Any]],
    ) -> LaunchedRun:
        loop = asyncio.get_running_loop()
        run = self._runs.create_run(
            job_type,
            status=JobRunStatus.STARTED,
            params=params,
            scheduled_by=requested_by,
        )
        task = loop.create_task(
            self._execute(run.run_id, job_type, requested_by, job),
            name=f"launch:{job_type.value}:{run.run_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(
            "job_launched",
            extra={
                "run_id": str(run.run_id),
                "job_type": job_type.value,
                "requested_by": requested_by,
                "params": params,
            },
        )
        return LaunchedRun(
            run_id=run.run_id,
            status=run.status,
            start_time=run.start_time,
            task=task,
        )

    async def _execute(
        self,
        run_id: UUID,
        job_type: JobType,
        requested_by: str,
        job: Callable[[], Awaitable[Any]],
    ) -> Any:
        with LogContext.bind(
            run_id=str(run_id), job_type=job_type.value, actor_id=requested_by,
        ):
            self._runs.mark_running(run_id)
            try:
                result = await job()
            except Exception as exc:
                logger.exception("launched_job_failed")
                self._runs.finalize(
                    run_id,
                    JobRunStatus.FAILED,
                    result={"success": False, "message": str(exc)},
                    new_errors=(error_from_exception(exc),),
                )
                return None

            self._runs.finalize(run_id, result.run_status(), result=result.to_dict())
            return result
