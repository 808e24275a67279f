"""
fortune_batch.domain.types -- Pure frozen dataclasses for the batch system.

ZERO I/O.

Frozen dataclasses with enum status fields and tuples for immutable
collections.  ORM models convert to and from these DTOs; services and tests
only ever see DTOs.

Invariants enforced:
    - Run status moves forward only; terminal states are absorbing
      (``JobRunStatus.can_transition``).
    - Error entries share one shape across both run records
      (``ErrorEntry``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from math import ceil
from typing import Any, Generic, TypeVar
from uuid import UUID

# Actor recorded on runs the cron scheduler creates.
SCHEDULER_ACTOR = "scheduler"
# Actor recorded when no human requested the run.
SYSTEM_ACTOR = "system"


# =============================================================================
# Status enums
# =============================================================================


class JobType(str, Enum):
    """Which batch job produced a run record."""

    CALENDAR_GENERATOR = "calendar-generator"
    FORTUNE_UPDATE = "fortune-update"
    SUBSCRIPTION_CHECK = "subscription-check"
    BACKUP = "backup"


class JobRunStatus(str, Enum):
    """Lifecycle status of a generic run record."""

    SCHEDULED = "scheduled"  # Created by the scheduler, no attempt yet
    STARTED = "started"  # Created by an admin launch, job not yet running
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"  # Some items failed
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_RUN_STATUSES

    def can_transition(self, target: JobRunStatus) -> bool:
        """Forward-only: pending -> running -> terminal, never out of terminal."""
        if self.is_terminal:
            return False
        return _RUN_STATUS_RANK[target] >= _RUN_STATUS_RANK[self]


_TERMINAL_RUN_STATUSES = frozenset({
    JobRunStatus.COMPLETED,
    JobRunStatus.COMPLETED_WITH_ERRORS,
    JobRunStatus.FAILED,
})

_RUN_STATUS_RANK = {
    JobRunStatus.SCHEDULED: 0,
    JobRunStatus.STARTED: 0,
    JobRunStatus.RUNNING: 1,
    JobRunStatus.COMPLETED: 2,
    JobRunStatus.COMPLETED_WITH_ERRORS: 2,
    JobRunStatus.FAILED: 2,
}


class FortuneUpdateStatus(str, Enum):
    """Lifecycle status of a fortune-update run record."""

    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (FortuneUpdateStatus.COMPLETED, FortuneUpdateStatus.FAILED)


class ItemStatus(str, Enum):
    """Outcome of one unit of work (one calendar day, one user)."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"  # Already present (calendar idempotency)
    FAILED = "failed"


# =============================================================================
# Error entries and per-item outcomes
# =============================================================================


@dataclass(frozen=True)
class ErrorEntry:
    """One recorded failure: which item, what went wrong, where."""

    message: str
    item_id: str | None = None
    stack: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"message": self.message}
        if self.item_id is not None:
            data["item_id"] = self.item_id
        if self.stack is not None:
            data["stack"] = self.stack
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorEntry:
        return cls(
            message=data["message"],
            item_id=data.get("item_id"),
            stack=data.get("stack"),
        )


@dataclass(frozen=True)
class ItemOutcome:
    """Result of one unit of work.

    Job bodies never let an item's exception escape; they return an outcome
    and the caller reduces a sequence of outcomes into counts.
    """

    item_key: str
    status: ItemStatus
    error: ErrorEntry | None = None
    detail: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.status != ItemStatus.FAILED


@dataclass(frozen=True)
class OutcomeTally:
    """Reduction of a sequence of ItemOutcome values."""

    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    errors: tuple[ErrorEntry, ...] = ()

    @property
    def processed(self) -> int:
        return self.succeeded + self.skipped + self.failed

    def __add__(self, other: OutcomeTally) -> OutcomeTally:
        return OutcomeTally(
            succeeded=self.succeeded + other.succeeded,
            skipped=self.skipped + other.skipped,
            failed=self.failed + other.failed,
            errors=self.errors + other.errors,
        )


# =============================================================================
# Run records
# =============================================================================


@dataclass(frozen=True)
class JobRun:
    """Immutable snapshot of a generic batch run record."""

    run_id: UUID
    job_type: JobType
    status: JobRunStatus
    start_time: datetime
    end_time: datetime | None = None
    total_items: int = 0
    processed_items: int = 0
    error_items: int = 0
    error_list: tuple[ErrorEntry, ...] = ()
    params: dict[str, Any] = field(default_factory=dict)
    scheduled_by: str | None = None
    result: dict[str, Any] | None = None


@dataclass(frozen=True)
class FortuneUpdateRun:
    """Immutable snapshot of a fortune-update run record."""

    run_id: UUID
    date: date
    status: FortuneUpdateStatus
    start_time: datetime
    created_by: str
    end_time: datetime | None = None
    total_users: int = 0
    success_count: int = 0
    failed_count: int = 0
    is_automatic_retry: bool = False
    retry_count: int = 0
    last_retry_at: datetime | None = None
    update_errors: tuple[ErrorEntry, ...] = ()
    job_run_id: UUID | None = None

    @property
    def processing_time_ms(self) -> int | None:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    @property
    def success_rate(self) -> float:
        """Percentage of targeted users whose fortune was generated."""
        if self.total_users == 0:
            return 0.0
        return self.success_count / self.total_users * 100

    def is_running(self) -> bool:
        return self.status in (FortuneUpdateStatus.SCHEDULED, FortuneUpdateStatus.RUNNING)

    def has_failed(self) -> bool:
        return self.status == FortuneUpdateStatus.FAILED or (
            self.status == FortuneUpdateStatus.COMPLETED and self.failed_count > 0
        )


# =============================================================================
# Calendar
# =============================================================================


@dataclass(frozen=True)
class PillarReading:
    """Day pillar computed by the calculation engine for one date."""

    heavenly_stem: str
    earthly_branch: str
    hidden_stems: tuple[str, ...] = ()
    energy_description: str = ""


@dataclass(frozen=True)
class CalendarEntry:
    """A persisted day pillar.  At most one per calendar date."""

    date: date
    heavenly_stem: str
    earthly_branch: str
    hidden_stems: tuple[str, ...] = ()
    energy_description: str = ""
    entry_id: UUID | None = None


# =============================================================================
# Job results
# =============================================================================


@dataclass(frozen=True)
class CalendarGenerationResult:
    """Summary returned by CalendarGenerator.generate()."""

    success: bool
    message: str
    total: int
    created: int
    skipped: int
    errors: int
    error_details: tuple[dict[str, str], ...] = ()
    run_id: UUID | None = None
    aborted: bool = False  # A fatal error stopped the run before all days were visited

    def run_status(self) -> JobRunStatus:
        """Terminal status a run record should take for this result."""
        if self.aborted:
            return JobRunStatus.FAILED
        if self.errors:
            return JobRunStatus.COMPLETED_WITH_ERRORS
        return JobRunStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "aborted": self.aborted,
            "message": self.message,
            "total": self.total,
            "created": self.created,
            "skipped": self.skipped,
            "errors": self.errors,
            "error_details": [dict(d) for d in self.error_details],
            "run_id": str(self.run_id) if self.run_id else None,
        }


@dataclass(frozen=True)
class FortuneRefreshResult:
    """Summary returned by FortuneRefreshJob.refresh()."""

    success: bool
    message: str
    date: date
    total_users: int
    success_count: int
    failed_count: int
    update_errors: tuple[ErrorEntry, ...] = ()
    run_id: UUID | None = None
    update_run_id: UUID | None = None
    aborted: bool = False  # A fatal error stopped the run before all users were visited

    def run_status(self) -> JobRunStatus:
        """Terminal status a run record should take for this result."""
        if self.aborted:
            return JobRunStatus.FAILED
        if self.failed_count:
            return JobRunStatus.COMPLETED_WITH_ERRORS
        return JobRunStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "aborted": self.aborted,
            "message": self.message,
            "date": self.date.isoformat(),
            "total_users": self.total_users,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "update_errors": [e.to_dict() for e in self.update_errors],
            "run_id": str(self.run_id) if self.run_id else None,
            "update_run_id": str(self.update_run_id) if self.update_run_id else None,
        }


# =============================================================================
# Query pages
# =============================================================================

T = TypeVar("T")


@dataclass(frozen=True)
class RunPage(Generic[T]):
    """One page of a paginated listing (admin dashboard queries)."""

    items: tuple[T, ...]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return ceil(self.total / self.limit)
