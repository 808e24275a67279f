"""
fortune_batch.domain -- Pure types and value objects for batch jobs.

ZERO I/O.  All types are frozen dataclasses.
"""

from fortune_batch.domain.types import (
    CalendarEntry,
    CalendarGenerationResult,
    ErrorEntry,
    FortuneRefreshResult,
    FortuneUpdateRun,
    FortuneUpdateStatus,
    ItemOutcome,
    ItemStatus,
    JobRun,
    JobRunStatus,
    JobType,
    OutcomeTally,
    PillarReading,
    RunPage,
)

__all__ = [
    "CalendarEntry",
    "CalendarGenerationResult",
    "ErrorEntry",
    "FortuneRefreshResult",
    "FortuneUpdateRun",
    "FortuneUpdateStatus",
    "ItemOutcome",
    "ItemStatus",
    "JobRun",
    "JobRunStatus",
    "JobType",
    "OutcomeTally",
    "PillarReading",
    "RunPage",
]
