"""
FortuneBatchOrchestrator -- DI container for the batch jobs.

Contract:
    Wires stores, collaborators, jobs, the scheduler and the launcher from
    one session factory, one Clock and one ``BatchSettings``.  Single place
    where all batch dependencies are composed.

Architecture: fortune_batch (top-level).  Canonical entry point for the
    CLI and for embedding the scheduler in another process.

Invariants enforced:
    - Clock injection (all services receive the same Clock).
    - Every job receives the same configured time zone.
"""

from __future__ import annotations

import asyncio
from datetime import tzinfo

from sqlalchemy.orm import Session, sessionmaker

from fortune_kernel.db.engine import get_session_factory, init_engine_from_url
from fortune_kernel.domain.clock import Clock, SystemClock
from fortune_kernel.exceptions import InvalidRunParametersError
from fortune_kernel.logging_config import get_logger

from fortune_batch.collaborators import (
    ActiveUserDirectory,
    FortuneService,
    PillarCalculator,
    SexagenaryPillarCalculator,
    SqlActiveUserDirectory,
    load_fortune_service,
)
from fortune_batch.config import BatchSettings
from fortune_batch.domain.schedule import DEFAULT_FORTUNE_UPDATE_TIME, time_to_cron
from fortune_batch.domain.types import (
    SCHEDULER_ACTOR,
    CalendarGenerationResult,
    FortuneRefreshResult,
    JobType,
)
from fortune_batch.services.calendar_generator import CalendarGenerator
from fortune_batch.services.calendar_store import CalendarStore
from fortune_batch.services.fortune_refresh import FortuneRefreshJob
from fortune_batch.services.launcher import JobLauncher
from fortune_batch.services.run_store import FortuneUpdateRunStore, JobRunStore
from fortune_batch.services.scheduler import JobDefinition, JobScheduler, SleepFunction
from fortune_batch.services.settings import SettingsStore

logger = get_logger("batch.orchestrator")

CALENDAR_JOB_NAME = JobType.CALENDAR_GENERATOR.value
FORTUNE_JOB_NAME = JobType.FORTUNE_UPDATE.value


class FortuneBatchOrchestrator:
    """DI container for the fortune batch layer.

    Contract:
        - ``from_settings()`` builds the engine and every collaborator.
        - ``create_scheduler()`` returns a JobScheduler with both jobs.
        - ``create_launcher()`` returns a JobLauncher for run-now calls.

    Non-goals:
        - Does NOT start the scheduler -- caller decides.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: BatchSettings | None = None,
        clock: Clock | None = None,
        calculator: PillarCalculator | None = None,
        users: ActiveUserDirectory | None = None,
        fortune_service: FortuneService | None = None,
    ) -> None:
        self._settings = settings or BatchSettings()
        self._clock = clock or SystemClock()
        self._tz: tzinfo = self._settings.tzinfo

        self.job_runs = JobRunStore(session_factory, self._clock)
        self.fortune_runs = FortuneUpdateRunStore(session_factory, self._clock)
        self.calendar_store = CalendarStore(session_factory)
        self.settings_store = SettingsStore(session_factory)

        self.calendar_generator = CalendarGenerator(
            calendar_store=self.calendar_store,
            run_store=self.job_runs,
            calculator=calculator or SexagenaryPillarCalculator(),
            clock=self._clock,
            tz=self._tz,
        )
        self.fortune_job: FortuneRefreshJob | None = None
        if fortune_service is not None:
            self.fortune_job = FortuneRefreshJob(
                run_store=self.job_runs,
                update_store=self.fortune_runs,
                users=users or SqlActiveUserDirectory(session_factory),
                fortune_service=fortune_service,
                clock=self._clock,
                tz=self._tz,
            )

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_settings(
        cls,
        settings: BatchSettings,
        clock: Clock | None = None,
    ) -> FortuneBatchOrchestrator:
        """Initialize the engine and load the configured fortune service."""
        init_engine_from_url(settings.database_url)
        fortune_service = None
        if settings.fortune_service:
            fortune_service = load_fortune_service(settings.fortune_service)
        else:
            logger.warning("fortune_service_not_configured")
        return cls(
            session_factory=get_session_factory(),
            settings=settings,
            clock=clock,
            fortune_service=fortune_service,
        )

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def run_calendar_job(self) -> CalendarGenerationResult:
        return await self.calendar_generator.generate(
            self._settings.calendar_days, requested_by=SCHEDULER_ACTOR,
        )

    async def run_fortune_job(self) -> FortuneRefreshResult:
        if self.fortune_job is None:
            raise InvalidRunParametersError(
                "fortune_service", None, "no fortune service is configured",
            )
        return await self.fortune_job.refresh(
            page_size=self._settings.fortune_page_size,
            max_concurrent=self._settings.fortune_max_concurrent,
            requested_by=SCHEDULER_ACTOR,
        )

    def resolve_fortune_cron(self) -> str:
        return time_to_cron(self.settings_store.resolve_fortune_update_time())

    def job_definitions(self) -> list[JobDefinition]:
        settings = self._settings
        return [
            JobDefinition(
                name=CALENDAR_JOB_NAME,
                job_type=JobType.CALENDAR_GENERATOR,
                cron_expression=settings.calendar_cron,
                fn=self.run_calendar_job,
                enabled=settings.calendar_enabled,
                retry_count=settings.calendar_retry_count,
                retry_delay=settings.calendar_retry_delay,
            ),
            JobDefinition(
                name=FORTUNE_JOB_NAME,
                job_type=JobType.FORTUNE_UPDATE,
                cron_expression=time_to_cron(DEFAULT_FORTUNE_UPDATE_TIME),
                fn=self.run_fortune_job,
                enabled=settings.fortune_enabled and self.fortune_job is not None,
                retry_count=settings.fortune_retry_count,
                retry_delay=settings.fortune_retry_delay,
                resolve_cron=self.resolve_fortune_cron,
            ),
        ]

    def create_scheduler(self, sleep: SleepFunction = asyncio.sleep) -> JobScheduler:
        return JobScheduler(
            self.job_definitions(),
            run_store=self.job_runs,
            clock=self._clock,
            tz=self._tz,
            sleep=sleep,
        )

    def create_launcher(self) -> JobLauncher:
        return JobLauncher(
            run_store=self.job_runs,
            calendar_generator=self.calendar_generator,
            fortune_job=self.fortune_job,
            page_size=self._settings.fortune_page_size,
            max_concurrent=self._settings.fortune_max_concurrent,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def settings(self) -> BatchSettings:
        return self._settings

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def tz(self) -> tzinfo:
        return self._tz
