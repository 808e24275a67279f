"""
Pure reduction of per-item outcomes into run counters.

ZERO I/O.  Job bodies produce one ``ItemOutcome`` per unit of work; these
helpers fold them into the counts written to run records.
"""

from __future__ import annotations

import traceback
from collections.abc import Iterable

from fortune_batch.domain.types import (
    ErrorEntry,
    ItemOutcome,
    ItemStatus,
    OutcomeTally,
)


def tally_outcomes(outcomes: Iterable[ItemOutcome]) -> OutcomeTally:
    """Count outcomes by status, keeping error entries in input order."""
    succeeded = skipped = failed = 0
    errors: list[ErrorEntry] = []
    for outcome in outcomes:
        if outcome.status == ItemStatus.SUCCEEDED:
            succeeded += 1
        elif outcome.status == ItemStatus.SKIPPED:
            skipped += 1
        else:
            failed += 1
            if outcome.error is not None:
                errors.append(outcome.error)
    return OutcomeTally(
        succeeded=succeeded,
        skipped=skipped,
        failed=failed,
        errors=tuple(errors),
    )


def error_from_exception(exc: BaseException, item_id: str | None = None) -> ErrorEntry:
    """Build an ErrorEntry carrying the exception's message and traceback."""
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return ErrorEntry(message=str(exc) or type(exc).__name__, item_id=item_id, stack=stack)


def failed_outcome(item_key: str, exc: BaseException) -> ItemOutcome:
    return ItemOutcome(
        item_key=item_key,
        status=ItemStatus.FAILED,
        error=error_from_exception(exc, item_id=item_key),
    )
