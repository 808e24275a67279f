"""
FortuneRefreshJob -- regenerate every active user's daily fortune.

Contract:
    ``refresh()`` pages active users by ascending id, fans each page out to
    the fortune service with at most ``max_concurrent`` calls in flight,
    and checkpoints both run records after every page.  A failure for one
    user is recorded and never aborts the page or the run.  A failure
    outside the per-user boundary (e.g. the directory is unreachable)
    finalizes both records ``failed`` and is reported through the result,
    not raised.

Architecture: fortune_batch/services.

Invariants enforced:
    - Pages are processed strictly in order; users within a page run
      concurrently under an ``asyncio.Semaphore(max_concurrent)``.
    - success_count + failed_count <= total_users at every checkpoint
      (a page is truncated to the users still owed).
    - Fortune run: completed if no user failed, else failed.
      Job run: completed if no user failed, else completed_with_errors.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import date, datetime, tzinfo
from uuid import UUID

from fortune_kernel.domain.clock import Clock, SystemClock, local_today
from fortune_kernel.exceptions import InvalidRunParametersError
from fortune_kernel.logging_config import LogContext, get_logger

from fortune_batch.collaborators import ActiveUserDirectory, FortuneService
from fortune_batch.domain.outcomes import error_from_exception, failed_outcome, tally_outcomes
from fortune_batch.domain.types import (
    SYSTEM_ACTOR,
    ErrorEntry,
    FortuneRefreshResult,
    FortuneUpdateStatus,
    ItemOutcome,
    ItemStatus,
    JobRunStatus,
    JobType,
)
from fortune_batch.services.run_store import FortuneUpdateRunStore, JobRunStore

logger = get_logger("batch.fortune_refresh")

DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_CONCURRENT = 5


class FortuneRefreshJob:
    """Paged, concurrency-bounded fortune regeneration for active users."""

    def __init__(
        self,
        run_store: JobRunStore,
        update_store: FortuneUpdateRunStore,
        users: ActiveUserDirectory,
        fortune_service: FortuneService,
        clock: Clock | None = None,
        tz: tzinfo | None = None,
    ):
        self._runs = run_store
        self._updates = update_store
        self._users = users
        self._fortunes = fortune_service
        self._clock = clock or SystemClock()
        self._tz = tz

    def normalize_target(self, target: date | datetime | None) -> date:
        """Target day at midnight: today in the configured zone by default."""
        if target is None:
            return local_today(self._clock, self._tz)
        if isinstance(target, datetime):
            if self._tz is not None and target.tzinfo is not None:
                target = target.astimezone(self._tz)
            return target.date()
        return target

    async def refresh(
        self,
        force_update: bool = False,
        target_date: date | datetime | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        requested_by: str = SYSTEM_ACTOR,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        user_ids: Sequence[str] | None = None,
    ) -> FortuneRefreshResult:
        """Refresh fortunes for ``target_date``.

        ``user_ids`` narrows the run to an explicit set of users (admin
        re-run for specific accounts); otherwise every active user is
        visited.

        Raises:
            InvalidRunParametersError: ``page_size`` or ``max_concurrent``
                is below 1.
        """
        if page_size < 1:
            raise InvalidRunParametersError("page_size", page_size, "must be >= 1")
        if max_concurrent < 1:
            raise InvalidRunParametersError("max_concurrent", max_concurrent, "must be >= 1")

        day = self.normalize_target(target_date)
        targets = sorted(set(user_ids)) if user_ids is not None else None
        params: dict[str, object] = {
            "target_date": day.isoformat(),
            "force_update": force_update,
            "page_size": page_size,
            "max_concurrent": max_concurrent,
        }
        if targets is not None:
            params["user_ids"] = targets

        run = self._runs.create_run(
            JobType.FORTUNE_UPDATE,
            status=JobRunStatus.RUNNING,
            params=params,
            scheduled_by=requested_by,
        )

        with LogContext.bind(
            run_id=str(run.run_id),
            job_type=JobType.FORTUNE_UPDATE.value,
            actor_id=requested_by,
        ):
            update_run_id: UUID | None = None
            total = success = failed = 0
            try:
                total = len(targets) if targets is not None else self._users.count_active()
                update_run = self._updates.create_run(
                    day, total, requested_by, job_run_id=run.run_id,
                )
                update_run_id = update_run.run_id
                self._runs.record_progress(run.run_id, total_items=total)
                logger.info(
                    "fortune_refresh_started",
                    extra={
                        "target_date": day.isoformat(),
                        "total_users": total,
                        "force_update": force_update,
                        "update_run_id": str(update_run_id),
                    },
                )

                semaphore = asyncio.Semaphore(max_concurrent)
                errors: list[ErrorEntry] = []
                offset = 0
                page_no = 0
                while offset < total:
                    ids = self._page(targets, offset, min(page_size, total - offset))
                    if not ids:
                        break
                    page_no += 1
                    outcomes = await asyncio.gather(*(
                        self._refresh_user(uid, day, force_update, semaphore)
                        for uid in ids
                    ))
                    tally = tally_outcomes(outcomes)
                    success += tally.succeeded
                    failed += tally.failed
                    errors.extend(tally.errors)
                    offset += len(ids)

                    self._updates.record_progress(
                        update_run_id,
                        success_count=success,
                        failed_count=failed,
                        new_errors=tally.errors,
                    )
                    self._runs.record_progress(
                        run.run_id,
                        processed_items=success + failed,
                        error_items=failed,
                        new_errors=tally.errors,
                    )
                    logger.info(
                        "fortune_refresh_page_completed",
                        extra={
                            "page": page_no,
                            "processed": success + failed,
                            "total_users": total,
                            "success_count": success,
                            "failed_count": failed,
                        },
                    )
            except Exception as exc:
                return self._abort(
                    run.run_id, update_run_id, day, total, success, failed, exc,
                )

            result = FortuneRefreshResult(
                success=failed == 0,
                message=(
                    f"Fortune refresh for {day.isoformat()} finished: "
                    f"{success} updated, {failed} failed"
                ),
                date=day,
                total_users=total,
                success_count=success,
                failed_count=failed,
                update_errors=tuple(errors),
                run_id=run.run_id,
                update_run_id=update_run_id,
            )
            self._updates.finalize(
                update_run_id,
                FortuneUpdateStatus.COMPLETED if failed == 0 else FortuneUpdateStatus.FAILED,
            )
            self._runs.finalize(
                run.run_id,
                result.run_status(),
                result=result.to_dict(),
            )
            logger.info(
                "fortune_refresh_completed",
                extra={"success_count": success, "failed_count": failed, "total_users": total},
            )
            return result

    def _page(self, targets: list[str] | None, offset: int, limit: int) -> list[str]:
        if targets is not None:
            return targets[offset:offset + limit]
        return list(self._users.page_active(offset, limit))

    async def _refresh_user(
        self,
        user_id: str,
        day: date,
        force_update: bool,
        semaphore: asyncio.Semaphore,
    ) -> ItemOutcome:
        async with semaphore:
            try:
                await self._fortunes.generate_fortune(user_id, day, force_update)
            except Exception as exc:
                logger.warning(
                    "fortune_user_failed", exc_info=True, extra={"user_id": user_id},
                )
                return failed_outcome(user_id, exc)
        return ItemOutcome(item_key=user_id, status=ItemStatus.SUCCEEDED)

    def _abort(
        self,
        run_id: UUID,
        update_run_id: UUID | None,
        day: date,
        total: int,
        success: int,
        failed: int,
        exc: Exception,
    ) -> FortuneRefreshResult:
        logger.error("fortune_refresh_aborted", exc_info=True)
        entry = error_from_exception(exc, item_id="system")
        result = FortuneRefreshResult(
            success=False,
            message=f"Fortune refresh failed: {entry.message}",
            date=day,
            total_users=total,
            success_count=success,
            failed_count=failed,
            update_errors=(entry,),
            run_id=run_id,
            update_run_id=update_run_id,
            aborted=True,
        )
        if update_run_id is not None:
            try:
                self._updates.finalize(
                    update_run_id, FortuneUpdateStatus.FAILED, new_errors=(entry,),
                )
            except Exception:
                logger.exception(
                    "fortune_update_run_finalize_failed",
                    extra={"update_run_id": str(update_run_id)},
                )
        try:
            self._runs.finalize(
                run_id, JobRunStatus.FAILED, result=result.to_dict(), new_errors=(entry,),
            )
        except Exception:
            logger.exception("fortune_run_finalize_failed")
        return result
