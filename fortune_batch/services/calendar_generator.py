"""
CalendarGenerator -- idempotent forward generation of day pillars.

Contract:
    ``generate(days)`` makes sure a CalendarEntry exists for each of the
    ``days`` dates starting today (configured zone, midnight anchor).
    Dates already present are skipped; a failure on one date is recorded
    and the loop moves on.  Safe to run concurrently with itself: the
    existence check plus the UNIQUE date column make the race benign.

Architecture: fortune_batch/services.

Invariants enforced:
    - At most one CalendarEntry per date (duplicate insert counts as skip).
    - Days are resolved strictly in order, one at a time.
    - created + skipped + errors == days unless the run aborts fatally.
"""

from __future__ import annotations

import asyncio
from datetime import date, timedelta, tzinfo

from fortune_kernel.domain.clock import Clock, SystemClock, local_today
from fortune_kernel.exceptions import InvalidRunParametersError
from fortune_kernel.logging_config import LogContext, get_logger

from fortune_batch.collaborators import PillarCalculator
from fortune_batch.domain.outcomes import error_from_exception, failed_outcome, tally_outcomes
from fortune_batch.domain.types import (
    SYSTEM_ACTOR,
    CalendarEntry,
    CalendarGenerationResult,
    ItemOutcome,
    ItemStatus,
    JobRunStatus,
    JobType,
)
from fortune_batch.services.calendar_store import CalendarStore
from fortune_batch.services.run_store import JobRunStore

logger = get_logger("batch.calendar_generator")

DEFAULT_CALENDAR_DAYS = 30


class CalendarGenerator:
    """Creates missing day pillars for the next N days."""

    def __init__(
        self,
        calendar_store: CalendarStore,
        run_store: JobRunStore,
        calculator: PillarCalculator,
        clock: Clock | None = None,
        tz: tzinfo | None = None,
    ):
        self._calendar = calendar_store
        self._runs = run_store
        self._calculator = calculator
        self._clock = clock or SystemClock()
        self._tz = tz

    async def generate(
        self,
        days: int = DEFAULT_CALENDAR_DAYS,
        requested_by: str = SYSTEM_ACTOR,
    ) -> CalendarGenerationResult:
        """Generate entries for ``[today, today + days)``.

        Raises:
            InvalidRunParametersError: ``days`` is negative.
        """
        if days < 0:
            raise InvalidRunParametersError("days", days, "must be >= 0")

        run = self._runs.create_run(
            JobType.CALENDAR_GENERATOR,
            status=JobRunStatus.RUNNING,
            params={"days": days},
            scheduled_by=requested_by,
            total_items=days,
        )

        with LogContext.bind(
            run_id=str(run.run_id),
            job_type=JobType.CALENDAR_GENERATOR.value,
            actor_id=requested_by,
        ):
            logger.info("calendar_generation_started", extra={"days": days})
            try:
                anchor = local_today(self._clock, self._tz)
                outcomes: list[ItemOutcome] = []
                for offset in range(days):
                    outcomes.append(
                        self._generate_day(anchor + timedelta(days=offset), requested_by)
                    )
                    await asyncio.sleep(0)
            except Exception as exc:
                return self._abort(run.run_id, days, exc)

            tally = tally_outcomes(outcomes)
            error_details = tuple(
                {"date": o.item_key, "message": o.error.message}
                for o in outcomes
                if o.error is not None
            )
            result = CalendarGenerationResult(
                success=tally.failed == 0,
                message=(
                    f"Generated day pillars for {days} days: {tally.succeeded} created, "
                    f"{tally.skipped} skipped, {tally.failed} errors"
                ),
                total=days,
                created=tally.succeeded,
                skipped=tally.skipped,
                errors=tally.failed,
                error_details=error_details,
                run_id=run.run_id,
            )
            self._runs.finalize(
                run.run_id,
                result.run_status(),
                result=result.to_dict(),
                processed_items=tally.processed,
                error_items=tally.failed,
                new_errors=tally.errors,
            )
            logger.info(
                "calendar_generation_completed",
                extra={
                    "created_count": tally.succeeded,
                    "skipped_count": tally.skipped,
                    "error_count": tally.failed,
                },
            )
            return result

    def _generate_day(self, day: date, requested_by: str) -> ItemOutcome:
        key = day.isoformat()
        try:
            if self._calendar.exists(day):
                return ItemOutcome(item_key=key, status=ItemStatus.SKIPPED)

            reading = self._calculator.compute_pillar(day)
            entry = CalendarEntry(
                date=day,
                heavenly_stem=reading.heavenly_stem,
                earthly_branch=reading.earthly_branch,
                hidden_stems=tuple(reading.hidden_stems),
                energy_description=reading.energy_description,
            )
            if not self._calendar.insert(entry, created_by=requested_by):
                return ItemOutcome(item_key=key, status=ItemStatus.SKIPPED)

            logger.debug(
                "calendar_day_created",
                extra={
                    "date": key,
                    "heavenly_stem": reading.heavenly_stem,
                    "earthly_branch": reading.earthly_branch,
                },
            )
            return ItemOutcome(item_key=key, status=ItemStatus.SUCCEEDED)
        except Exception as exc:
            logger.warning("calendar_day_failed", exc_info=True, extra={"date": key})
            return failed_outcome(key, exc)

    def _abort(self, run_id, days: int, exc: Exception) -> CalendarGenerationResult:
        logger.error("calendar_generation_aborted", exc_info=True)
        entry = error_from_exception(exc, item_id="system")
        result = CalendarGenerationResult(
            success=False,
            message=f"Calendar generation failed: {entry.message}",
            total=days,
            created=0,
            skipped=0,
            errors=1,
            error_details=({"date": "system", "message": entry.message},),
            run_id=run_id,
            aborted=True,
        )
        try:
            self._runs.finalize(
                run_id, JobRunStatus.FAILED, result=result.to_dict(), new_errors=(entry,),
            )
        except Exception:
            logger.exception("calendar_run_finalize_failed")
        return result
