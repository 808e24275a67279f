"""
CalendarStore -- persistence for day pillars.

Contract:
    ``exists()`` / ``insert()`` back the generator's check-then-insert;
    ``insert()`` reports a duplicate-date rejection as ``False`` instead of
    raising, so a race between a scheduled and a manual run reads as a skip.
    ``list_entries()`` serves the admin calendar view.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from fortune_kernel.logging_config import get_logger

from fortune_batch.domain.types import CalendarEntry, RunPage
from fortune_batch.models.calendar import CalendarEntryModel
from fortune_batch.services.run_store import validate_page

logger = get_logger("batch.calendar_store")


class CalendarStore:

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def exists(self, day: date) -> bool:
        with self._session_factory() as session:
            found = session.scalar(
                select(CalendarEntryModel.id).where(CalendarEntryModel.date == day)
            )
        return found is not None

    def insert(self, entry: CalendarEntry, created_by: str | None = None) -> bool:
        """Persist ``entry``; return False if that date already has a row."""
        try:
            with self._session_factory.begin() as session:
                session.add(CalendarEntryModel.from_dto(entry, created_by=created_by))
        except IntegrityError:
            logger.info(
                "calendar_entry_duplicate_rejected",
                extra={"date": entry.date.isoformat()},
            )
            return False
        return True

    def get(self, day: date) -> CalendarEntry | None:
        with self._session_factory() as session:
            model = session.scalar(
                select(CalendarEntryModel).where(CalendarEntryModel.date == day)
            )
            return model.to_dto() if model is not None else None

    def count(self) -> int:
        with self._session_factory() as session:
            return session.scalar(select(func.count(CalendarEntryModel.id))) or 0

    def list_entries(
        self,
        start_date: date | None = None,
        end_date: date | None = None,
        page: int = 1,
        limit: int = 30,
    ) -> RunPage[CalendarEntry]:
        """Entries in [start_date, end_date], newest date first."""
        validate_page(page, limit)
        stmt = select(CalendarEntryModel)
        if start_date is not None:
            stmt = stmt.where(CalendarEntryModel.date >= start_date)
        if end_date is not None:
            stmt = stmt.where(CalendarEntryModel.date <= end_date)

        with self._session_factory() as session:
            total = session.scalar(
                select(func.count()).select_from(stmt.subquery())
            ) or 0
            rows = session.scalars(
                stmt.order_by(CalendarEntryModel.date.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            items = tuple(r.to_dto() for r in rows)

        return RunPage(items=items, total=total, page=page, limit=limit)
