"""
ORM models for batch run audit records.

Contract:
    JobRunModel persists every batch execution regardless of job type;
    FortuneUpdateRunModel persists the fortune-refresh specific view of a
    run (per-user counters and errors).  Both convert to frozen DTOs via
    ``to_dto()``.  Status and counter rules are enforced by the run stores,
    not here.

Architecture: fortune_batch/models. Imports from fortune_kernel.db.base only.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from fortune_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from fortune_batch.domain.types import FortuneUpdateRun, JobRun


class JobRunModel(TrackedBase):
    """Generic run record shared by every job type."""

    __tablename__ = "batch_job_runs"

    __table_args__ = (
        Index("ix_batch_job_runs_job_type", "job_type"),
        Index("ix_batch_job_runs_status", "status"),
        Index("ix_batch_job_runs_start_time", "start_time"),
    )

    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    end_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_list: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False,
    )
    params: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    scheduled_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def to_dto(self) -> JobRun:
        from fortune_batch.domain.types import (
            ErrorEntry,
            JobRun,
            JobRunStatus,
            JobType,
        )

        return JobRun(
            run_id=self.id,
            job_type=JobType(self.job_type),
            status=JobRunStatus(self.status),
            start_time=self.start_time,
            end_time=self.end_time,
            total_items=self.total_items,
            processed_items=self.processed_items,
            error_items=self.error_items,
            error_list=tuple(ErrorEntry.from_dict(e) for e in self.error_list or ()),
            params=dict(self.params or {}),
            scheduled_by=self.scheduled_by,
            result=self.result,
        )


class FortuneUpdateRunModel(TrackedBase):
    """Fortune-refresh run record (one per refresh invocation)."""

    __tablename__ = "fortune_update_runs"

    __table_args__ = (
        Index("ix_fortune_update_runs_date", "date"),
        Index("ix_fortune_update_runs_status", "status"),
    )

    date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    end_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    total_users: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_automatic_retry: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    update_errors: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False,
    )
    job_run_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("batch_job_runs.id", ondelete="SET NULL"),
        nullable=True,
    )

    def to_dto(self) -> FortuneUpdateRun:
        from fortune_batch.domain.types import (
            ErrorEntry,
            FortuneUpdateRun,
            FortuneUpdateStatus,
        )

        return FortuneUpdateRun(
            run_id=self.id,
            date=self.date,
            status=FortuneUpdateStatus(self.status),
            start_time=self.start_time,
            end_time=self.end_time,
            created_by=self.created_by or "",
            total_users=self.total_users,
            success_count=self.success_count,
            failed_count=self.failed_count,
            is_automatic_retry=self.is_automatic_retry,
            retry_count=self.retry_count,
            last_retry_at=self.last_retry_at,
            update_errors=tuple(
                ErrorEntry.from_dict(e) for e in self.update_errors or ()
            ),
            job_run_id=self.job_run_id,
        )
