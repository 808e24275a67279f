"""
Run stores -- persistent audit trail for batch executions.

Contract:
    ``JobRunStore`` owns ``batch_job_runs``; ``FortuneUpdateRunStore`` owns
    ``fortune_update_runs``.  Every mutating call opens its own short
    transaction and commits before returning, so a dashboard polling the
    table sees progress while a long job is still running.

Architecture: fortune_batch/services.  Imports from fortune_batch.domain,
    fortune_batch.models, and kernel modules.

Invariants enforced:
    - Status moves forward only; a terminal run is never reopened
      (RunAlreadyFinalizedError).
    - Counters never decrease; processed <= total once total is known;
      errors <= processed (RunCounterError).
    - Fortune runs: success_count + failed_count <= total_users.
    - All timestamps come from the injected Clock.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from fortune_kernel.domain.clock import Clock, SystemClock
from fortune_kernel.exceptions import (
    InvalidRunParametersError,
    JobRunNotFoundError,
    RunAlreadyFinalizedError,
    RunCounterError,
)
from fortune_kernel.logging_config import get_logger

from fortune_batch.domain.types import (
    ErrorEntry,
    FortuneUpdateRun,
    FortuneUpdateStatus,
    JobRun,
    JobRunStatus,
    JobType,
    RunPage,
)
from fortune_batch.models.runs import FortuneUpdateRunModel, JobRunModel

logger = get_logger("batch.run_store")


def validate_page(page: int, limit: int) -> None:
    if page < 1:
        raise InvalidRunParametersError("page", page, "must be >= 1")
    if limit < 1:
        raise InvalidRunParametersError("limit", limit, "must be >= 1")


def _advance_counter(run_id: UUID, name: str, current: int, requested: int | None) -> int:
    if requested is None:
        return current
    if requested < current:
        raise RunCounterError(str(run_id), name, current, requested)
    return requested


def _append_errors(existing: list[dict[str, Any]] | None, new: Iterable[ErrorEntry]) -> list[dict[str, Any]]:
    # JSON columns are reassigned, never mutated in place, so the ORM sees the change.
    return list(existing or []) + [e.to_dict() for e in new]


class JobRunStore:
    """Create, advance, finalize and query generic run records."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create_run(
        self,
        job_type: JobType,
        *,
        status: JobRunStatus = JobRunStatus.RUNNING,
        params: dict[str, Any] | None = None,
        scheduled_by: str | None = None,
        total_items: int = 0,
    ) -> JobRun:
        if status.is_terminal:
            raise InvalidRunParametersError(
                "status", status.value, "a run cannot be created in a terminal state",
            )
        if total_items < 0:
            raise InvalidRunParametersError("total_items", total_items, "must be >= 0")

        with self._session_factory.begin() as session:
            model = JobRunModel(
                job_type=job_type.value,
                status=status.value,
                start_time=self._clock.now(),
                total_items=total_items,
                processed_items=0,
                error_items=0,
                error_list=[],
                params=dict(params or {}),
                scheduled_by=scheduled_by,
                created_by=scheduled_by,
            )
            session.add(model)
            session.flush()
            dto = model.to_dto()

        logger.info(
            "job_run_created",
            extra={
                "run_id": str(dto.run_id),
                "job_type": job_type.value,
                "status": status.value,
                "scheduled_by": scheduled_by,
            },
        )
        return dto

    # -------------------------------------------------------------------------
    # Advance
    # -------------------------------------------------------------------------

    def mark_running(self, run_id: UUID) -> JobRun:
        return self.record_progress(run_id, status=JobRunStatus.RUNNING)

    def record_progress(
        self,
        run_id: UUID,
        *,
        status: JobRunStatus | None = None,
        total_items: int | None = None,
        processed_items: int | None = None,
        error_items: int | None = None,
        new_errors: Sequence[ErrorEntry] = (),
    ) -> JobRun:
        """Checkpoint a non-terminal run.

        Raises:
            JobRunNotFoundError: Unknown run id.
            RunAlreadyFinalizedError: The run is terminal, or ``status``
                is terminal (use ``finalize``).
            RunCounterError: A counter would decrease or break ordering.
        """
        if status is not None and status.is_terminal:
            raise RunAlreadyFinalizedError(str(run_id), "running", status.value)

        with self._session_factory.begin() as session:
            model = self._load(session, run_id)
            self._apply(
                model,
                status=status,
                total_items=total_items,
                processed_items=processed_items,
                error_items=error_items,
                new_errors=new_errors,
            )
            session.flush()
            return model.to_dto()

    def finalize(
        self,
        run_id: UUID,
        status: JobRunStatus,
        *,
        result: dict[str, Any] | None = None,
        total_items: int | None = None,
        processed_items: int | None = None,
        error_items: int | None = None,
        new_errors: Sequence[ErrorEntry] = (),
    ) -> JobRun:
        """Move a run into a terminal state exactly once.

        Raises:
            JobRunNotFoundError: Unknown run id.
            RunAlreadyFinalizedError: Already terminal, or ``status`` is
                not terminal.
            RunCounterError: A counter would decrease or break ordering.
        """
        if not status.is_terminal:
            raise InvalidRunParametersError(
                "status", status.value, "finalize requires a terminal status",
            )

        with self._session_factory.begin() as session:
            model = self._load(session, run_id)
            self._apply(
                model,
                status=status,
                total_items=total_items,
                processed_items=processed_items,
                error_items=error_items,
                new_errors=new_errors,
            )
            model.end_time = self._clock.now()
            model.result = result
            session.flush()
            dto = model.to_dto()

        log = logger.warning if status == JobRunStatus.FAILED else logger.info
        log(
            "job_run_finalized",
            extra={
                "run_id": str(run_id),
                "job_type": dto.job_type.value,
                "status": status.value,
                "processed_items": dto.processed_items,
                "error_items": dto.error_items,
            },
        )
        return dto

    def _apply(
        self,
        model: JobRunModel,
        *,
        status: JobRunStatus | None,
        total_items: int | None,
        processed_items: int | None,
        error_items: int | None,
        new_errors: Sequence[ErrorEntry],
    ) -> None:
        current = JobRunStatus(model.status)
        if current.is_terminal:
            raise RunAlreadyFinalizedError(
                str(model.id), current.value, status.value if status else None,
            )
        if status is not None and not current.can_transition(status):
            raise RunAlreadyFinalizedError(str(model.id), current.value, status.value)

        total = _advance_counter(model.id, "total_items", model.total_items, total_items)
        processed = _advance_counter(
            model.id, "processed_items", model.processed_items, processed_items,
        )
        errors = _advance_counter(model.id, "error_items", model.error_items, error_items)
        if total > 0 and processed > total:
            raise RunCounterError(str(model.id), "processed_items", total, processed)
        if errors > processed:
            raise RunCounterError(str(model.id), "error_items", processed, errors)

        model.total_items = total
        model.processed_items = processed
        model.error_items = errors
        if new_errors:
            model.error_list = _append_errors(model.error_list, new_errors)
        if status is not None:
            model.status = status.value

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    def get_run(self, run_id: UUID) -> JobRun:
        with self._session_factory() as session:
            return self._load(session, run_id).to_dto()

    def list_runs(
        self,
        job_type: JobType | None = None,
        status: JobRunStatus | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> RunPage[JobRun]:
        """Newest first (``start_time`` desc), filtered by type and status."""
        validate_page(page, limit)
        stmt = select(JobRunModel)
        if job_type is not None:
            stmt = stmt.where(JobRunModel.job_type == job_type.value)
        if status is not None:
            stmt = stmt.where(JobRunModel.status == status.value)

        with self._session_factory() as session:
            total = session.scalar(
                select(func.count()).select_from(stmt.subquery())
            ) or 0
            rows = session.scalars(
                stmt.order_by(JobRunModel.start_time.desc(), JobRunModel.id)
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            items = tuple(r.to_dto() for r in rows)

        return RunPage(items=items, total=total, page=page, limit=limit)

    @staticmethod
    def _load(session: Session, run_id: UUID) -> JobRunModel:
        model = session.get(JobRunModel, run_id)
        if model is None:
            raise JobRunNotFoundError(str(run_id))
        return model


class FortuneUpdateRunStore:
    """Create, advance, finalize and query fortune-update run records."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def create_run(
        self,
        target_date: date,
        total_users: int,
        created_by: str,
        *,
        job_run_id: UUID | None = None,
        is_automatic_retry: bool = False,
        retry_count: int = 0,
    ) -> FortuneUpdateRun:
        if total_users < 0:
            raise InvalidRunParametersError("total_users", total_users, "must be >= 0")

        now = self._clock.now()
        with self._session_factory.begin() as session:
            model = FortuneUpdateRunModel(
                date=target_date,
                status=FortuneUpdateStatus.RUNNING.value,
                start_time=now,
                total_users=total_users,
                success_count=0,
                failed_count=0,
                is_automatic_retry=is_automatic_retry,
                retry_count=retry_count,
                last_retry_at=now if is_automatic_retry else None,
                update_errors=[],
                job_run_id=job_run_id,
                created_by=created_by,
            )
            session.add(model)
            session.flush()
            dto = model.to_dto()

        logger.info(
            "fortune_update_run_created",
            extra={
                "update_run_id": str(dto.run_id),
                "target_date": target_date.isoformat(),
                "total_users": total_users,
                "created_by": created_by,
            },
        )
        return dto

    def record_progress(
        self,
        run_id: UUID,
        *,
        success_count: int | None = None,
        failed_count: int | None = None,
        new_errors: Sequence[ErrorEntry] = (),
    ) -> FortuneUpdateRun:
        with self._session_factory.begin() as session:
            model = self._load(session, run_id)
            self._apply(model, None, success_count, failed_count, new_errors)
            session.flush()
            return model.to_dto()

    def finalize(
        self,
        run_id: UUID,
        status: FortuneUpdateStatus,
        *,
        success_count: int | None = None,
        failed_count: int | None = None,
        new_errors: Sequence[ErrorEntry] = (),
    ) -> FortuneUpdateRun:
        if not status.is_terminal:
            raise InvalidRunParametersError(
                "status", status.value, "finalize requires a terminal status",
            )
        with self._session_factory.begin() as session:
            model = self._load(session, run_id)
            self._apply(model, status, success_count, failed_count, new_errors)
            model.end_time = self._clock.now()
            session.flush()
            dto = model.to_dto()

        log = logger.warning if status == FortuneUpdateStatus.FAILED else logger.info
        log(
            "fortune_update_run_finalized",
            extra={
                "update_run_id": str(run_id),
                "status": status.value,
                "success_count": dto.success_count,
                "failed_count": dto.failed_count,
                "total_users": dto.total_users,
            },
        )
        return dto

    @staticmethod
    def _apply(
        model: FortuneUpdateRunModel,
        status: FortuneUpdateStatus | None,
        success_count: int | None,
        failed_count: int | None,
        new_errors: Sequence[ErrorEntry],
    ) -> None:
        current = FortuneUpdateStatus(model.status)
        if current.is_terminal:
            raise RunAlreadyFinalizedError(
                str(model.id), current.value, status.value if status else None,
            )
        success = _advance_counter(model.id, "success_count", model.success_count, success_count)
        failed = _advance_counter(model.id, "failed_count", model.failed_count, failed_count)
        if success + failed > model.total_users:
            raise RunCounterError(
                str(model.id), "success_count+failed_count", model.total_users, success + failed,
            )
        model.success_count = success
        model.failed_count = failed
        if new_errors:
            model.update_errors = _append_errors(model.update_errors, new_errors)
        if status is not None:
            model.status = status.value

    def get_run(self, run_id: UUID) -> FortuneUpdateRun:
        with self._session_factory() as session:
            return self._load(session, run_id).to_dto()

    def list_runs(
        self,
        status: FortuneUpdateStatus | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> RunPage[FortuneUpdateRun]:
        """Newest target date first, then newest start time."""
        validate_page(page, limit)
        stmt = select(FortuneUpdateRunModel)
        if status is not None:
            stmt = stmt.where(FortuneUpdateRunModel.status == status.value)
        if start_date is not None:
            stmt = stmt.where(FortuneUpdateRunModel.date >= start_date)
        if end_date is not None:
            stmt = stmt.where(FortuneUpdateRunModel.date <= end_date)

        with self._session_factory() as session:
            total = session.scalar(
                select(func.count()).select_from(stmt.subquery())
            ) or 0
            rows = session.scalars(
                stmt.order_by(
                    FortuneUpdateRunModel.date.desc(),
                    FortuneUpdateRunModel.start_time.desc(),
                    FortuneUpdateRunModel.id,
                )
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            items = tuple(r.to_dto() for r in rows)

        return RunPage(items=items, total=total, page=page, limit=limit)

    @staticmethod
    def _load(session: Session, run_id: UUID) -> FortuneUpdateRunModel:
        model = session.get(FortuneUpdateRunModel, run_id)
        if model is None:
            raise JobRunNotFoundError(str(run_id))
        return model
