"""
JobScheduler -- asyncio cron scheduler with a retry wrapper.

Contract:
    Owns a fixed list of ``JobDefinition`` values.  ``start()`` installs one
    trigger task per enabled definition on the running event loop; each
    trigger sleeps until the next cron match (pure evaluation, configured
    zone) and then spawns ``fire(name)``.  ``fire`` records a JobRun,
    attempts the job ``retry_count + 1`` times with a fixed delay between
    attempts, and finalizes the run ``completed`` or ``failed``.

Architecture: fortune_batch/services.  Uses fortune_batch.domain.schedule
    for cron evaluation and the run store for the audit record.

Invariants enforced:
    - All timestamps from injected Clock; all waits through injected sleep.
    - A job exception never reaches the trigger loop; each tick is isolated.
    - ``stop()`` only cancels triggers; in-flight runs finish on their own.
"""

from __future__ import annotations

import asyncio
import traceback
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import tzinfo
from typing import Any

from fortune_kernel.domain.clock import Clock, SystemClock, local_now
from fortune_kernel.exceptions import (
    FortuneKernelError,
    InvalidRunParametersError,
    JobNotRegisteredError,
)
from fortune_kernel.logging_config import LogContext, get_logger

from fortune_batch.domain.schedule import parse_cron, seconds_until_next
from fortune_batch.domain.types import (
    SCHEDULER_ACTOR,
    JobRun,
    JobRunStatus,
    JobType,
)
from fortune_batch.services.run_store import JobRunStore

logger = get_logger("batch.scheduler")

JobFunction = Callable[[], Awaitable[Any]]
SleepFunction = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class JobDefinition:
    """One recurring job.

    ``cron_expression`` is used as-is unless ``resolve_cron`` is given, in
    which case it is called once at ``start()`` and ``cron_expression``
    becomes the fallback when resolution fails.
    """

    name: str
    job_type: JobType
    cron_expression: str
    fn: JobFunction
    enabled: bool = True
    retry_count: int = 3
    retry_delay: float = 300.0
    resolve_cron: Callable[[], str] | None = None


def result_payload(result: Any) -> dict[str, Any]:
    """JSON-safe summary of whatever a job function returned."""
    if result is None:
        return {}
    if hasattr(result, "to_dict"):
        return result.to_dict()
    if isinstance(result, dict):
        return dict(result)
    return {"value": repr(result)}


class JobScheduler:
    """Cron triggers plus a uniform retry/logging wrapper.

    Contract:
        - ``start()`` must be called from inside a running event loop.
        - ``fire(name)`` runs one invocation immediately (also used by
          the trigger loops).
        - ``stop()`` is idempotent.

    Non-goals:
        - NOT distributed; one scheduler instance per process.
        - No per-attempt timeout and no cancellation of in-flight runs.
    """

    def __init__(
        self,
        definitions: Iterable[JobDefinition],
        run_store: JobRunStore,
        clock: Clock | None = None,
        tz: tzinfo | None = None,
        sleep: SleepFunction = asyncio.sleep,
    ):
        self._definitions: dict[str, JobDefinition] = {}
        for definition in definitions:
            if definition.name in self._definitions:
                raise InvalidRunParametersError(
                    "definitions", definition.name, "duplicate job name",
                )
            if definition.retry_count < 0:
                raise InvalidRunParametersError(
                    "retry_count", definition.retry_count, "must be >= 0",
                )
            self._definitions[definition.name] = definition
        self._runs = run_store
        self._clock = clock or SystemClock()
        self._tz = tz
        self._sleep = sleep
        self._triggers: dict[str, asyncio.Task] = {}
        self._installed: dict[str, str] = {}
        self._in_flight: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def job_names(self) -> tuple[str, ...]:
        return tuple(self._definitions)

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._triggers.values())

    @property
    def installed_crons(self) -> dict[str, str]:
        """Cron expression each live trigger was installed with."""
        return dict(self._installed)

    def start(self) -> dict[str, str]:
        """Install a trigger per enabled job.  Returns name -> cron.

        Raises:
            RuntimeError: No running event loop.
            InvalidCronExpressionError: A job without a resolver has a bad
                cron expression.  Nothing is installed.
        """
        loop = asyncio.get_running_loop()
        if self.is_running:
            return self.installed_crons

        # Resolve every cron first so a bad definition leaves no live triggers.
        crons: dict[str, str] = {}
        for definition in self._definitions.values():
            if not definition.enabled:
                logger.info("job_disabled", extra={"job_name": definition.name})
                continue
            crons[definition.name] = self._resolve_cron(definition)

        for name, cron in crons.items():
            definition = self._definitions[name]
            self._installed[definition.name] = cron
            self._triggers[definition.name] = loop.create_task(
                self._trigger_loop(definition, cron),
                name=f"trigger:{definition.name}",
            )
            logger.info(
                "job_scheduled",
                extra={
                    "job_name": definition.name,
                    "cron": cron,
                    "retry_count": definition.retry_count,
                    "retry_delay": definition.retry_delay,
                },
            )

        logger.info("scheduler_started", extra={"jobs": list(self._installed)})
        return self.installed_crons

    def stop(self) -> None:
        """Cancel every trigger.  In-flight runs are left to finish."""
        for task in self._triggers.values():
            task.cancel()
        stopped = list(self._triggers)
        self._triggers.clear()
        self._installed.clear()
        if stopped:
            logger.info("scheduler_stopped", extra={"jobs": stopped})

    async def wait_idle(self) -> None:
        """Wait for every spawned invocation to finish."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def fire(self, name: str) -> JobRun:
        """Run one invocation of ``name`` under the retry wrapper.

        Job exceptions are recorded, never raised.

        Raises:
            JobNotRegisteredError: Unknown job name.
        """
        definition = self._definitions.get(name)
        if definition is None:
            raise JobNotRegisteredError(name, self.job_names)

        run = self._runs.create_run(
            definition.job_type,
            status=JobRunStatus.SCHEDULED,
            params={"job_name": name, "retry_count": definition.retry_count},
            scheduled_by=SCHEDULER_ACTOR,
        )
        with LogContext.bind(
            run_id=str(run.run_id),
            job_type=definition.job_type.value,
            job_name=name,
            actor_id=SCHEDULER_ACTOR,
        ):
            self._runs.mark_running(run.run_id)
            max_attempts = definition.retry_count + 1
            last_exc: Exception | None = None

            for attempt in range(1, max_attempts + 1):
                logger.info("job_attempt_started", extra={"attempt": attempt})
                try:
                    result = await definition.fn()
                except Exception as exc:
                    last_exc = exc
                    logger.warning(
                        "job_attempt_failed",
                        exc_info=True,
                        extra={"attempt": attempt, "max_attempts": max_attempts},
                    )
                    if attempt < max_attempts:
                        await self._sleep(definition.retry_delay)
                    continue

                logger.info("job_completed", extra={"attempt": attempt})
                return self._runs.finalize(
                    run.run_id,
                    JobRunStatus.COMPLETED,
                    result={**result_payload(result), "attempts": attempt},
                )

            logger.error(
                "job_failed",
                extra={"attempts": max_attempts, "error": str(last_exc)},
            )
            return self._runs.finalize(
                run.run_id,
                JobRunStatus.FAILED,
                result={
                    "error": str(last_exc),
                    "stack": "".join(traceback.format_exception(last_exc)),
                    "attempts": max_attempts,
                },
            )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _resolve_cron(self, definition: JobDefinition) -> str:
        if definition.resolve_cron is None:
            parse_cron(definition.cron_expression)
            return definition.cron_expression
        try:
            cron = definition.resolve_cron()
            parse_cron(cron)
        except (FortuneKernelError, ValueError):
            logger.warning(
                "job_cron_fallback",
                exc_info=True,
                extra={"job_name": definition.name, "fallback": definition.cron_expression},
            )
            return definition.cron_expression
        return cron

    async def _trigger_loop(self, definition: JobDefinition, cron: str) -> None:
        last_fire = None
        while True:
            now = local_now(self._clock, self._tz)
            # A timer may wake a little early; never fire the same minute twice.
            if last_fire is not None and now < last_fire:
                now = last_fire
            fire_at, delay = seconds_until_next(cron, now)
            logger.debug(
                "job_next_fire",
                extra={"job_name": definition.name, "fire_at": fire_at, "delay_seconds": delay},
            )
            await self._sleep(delay)
            self._spawn(definition.name)
            last_fire = fire_at

    def _spawn(self, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self._fire_isolated(name), name=f"run:{name}",
        )
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _fire_isolated(self, name: str) -> None:
        try:
            await self.fire(name)
        except Exception:
            logger.exception("scheduled_fire_failed", extra={"job_name": name})
