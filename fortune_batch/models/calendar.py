"""Day pillar rows produced by the calendar generator."""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Date, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fortune_kernel.db.base import TrackedBase

if TYPE_CHECKING:
    from fortune_batch.domain.types import CalendarEntry


class CalendarEntryModel(TrackedBase):
    """One row per calendar date; the UNIQUE date is the idempotency anchor."""

    __tablename__ = "calendar_entries"

    date: Mapped[date] = mapped_column(Date, nullable=False, unique=True)
    heavenly_stem: Mapped[str] = mapped_column(String(8), nullable=False)
    earthly_branch: Mapped[str] = mapped_column(String(8), nullable=False)
    hidden_stems: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    energy_description: Mapped[str] = mapped_column(Text, default="", nullable=False)

    def to_dto(self) -> CalendarEntry:
        from fortune_batch.domain.types import CalendarEntry

        return CalendarEntry(
            date=self.date,
            heavenly_stem=self.heavenly_stem,
            earthly_branch=self.earthly_branch,
            hidden_stems=tuple(self.hidden_stems or ()),
            energy_description=self.energy_description,
            entry_id=self.id,
        )

    @classmethod
    def from_dto(cls, dto: CalendarEntry, created_by: str | None = None) -> CalendarEntryModel:
        return cls(
            date=dto.date,
            heavenly_stem=dto.heavenly_stem,
            earthly_branch=dto.earthly_branch,
            hidden_stems=list(dto.hidden_stems),
            energy_description=dto.energy_description,
            created_by=created_by,
        )
