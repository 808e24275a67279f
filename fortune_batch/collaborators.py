"""
Collaborators consumed by the batch jobs, and their default implementations.

Contract:
    The jobs depend on three narrow interfaces:

    - ``PillarCalculator.compute_pillar(day) -> PillarReading`` -- pure.
    - ``FortuneService.generate_fortune(user_id, day, force_update)`` --
      async; idempotent per (user, day) unless ``force_update``.
    - ``ActiveUserDirectory.count_active()`` /
      ``page_active(offset, limit)`` -- ids sorted ascending.

    ``SexagenaryPillarCalculator`` and ``SqlActiveUserDirectory`` are the
    defaults wired by the orchestrator.  There is no default fortune
    service; one is loaded from a ``module:attribute`` path.
"""

from __future__ import annotations

import importlib
from collections.abc import Sequence
from datetime import date
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from fortune_kernel.exceptions import ConfigurationError

from fortune_batch.domain.types import PillarReading
from fortune_batch.models.users import UserAccountModel


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class PillarCalculator(Protocol):
    def compute_pillar(self, day: date) -> PillarReading: ...


@runtime_checkable
class FortuneService(Protocol):
    async def generate_fortune(
        self, user_id: str, day: date, force_update: bool,
    ) -> Any: ...


@runtime_checkable
class ActiveUserDirectory(Protocol):
    def count_active(self) -> int: ...

    def page_active(self, offset: int, limit: int) -> Sequence[str]: ...


# =============================================================================
# Sexagenary day-pillar calculator
# =============================================================================

HEAVENLY_STEMS = ("甲", "乙", "丙", "丁", "戊", "己", "庚", "辛", "壬", "癸")
EARTHLY_BRANCHES = ("子", "丑", "寅", "卯", "辰", "巳", "午", "未", "申", "酉", "戌", "亥")

# Main, middle and residual qi for each branch.
HIDDEN_STEMS: dict[str, tuple[str, ...]] = {
    "子": ("癸",),
    "丑": ("己", "癸", "辛"),
    "寅": ("甲", "丙", "戊"),
    "卯": ("乙",),
    "辰": ("戊", "乙", "癸"),
    "巳": ("丙", "庚", "戊"),
    "午": ("丁", "己"),
    "未": ("己", "丁", "乙"),
    "申": ("庚", "壬", "戊"),
    "酉": ("辛",),
    "戌": ("戊", "辛", "丁"),
    "亥": ("壬", "甲"),
}

_STEM_ELEMENTS = ("wood", "wood", "fire", "fire", "earth", "earth", "metal", "metal", "water", "water")
_BRANCH_ELEMENTS = (
    "water", "earth", "wood", "wood", "earth", "fire",
    "fire", "earth", "metal", "metal", "earth", "water",
)
_STEM_THEMES = (
    "initiative and new growth",
    "flexibility and cooperation",
    "passion and self-expression",
    "warmth and insight into people",
    "stability and practical foundations",
    "reflection and inner balance",
    "decisiveness and discipline",
    "refinement and careful analysis",
    "adaptability and broad thinking",
    "intuition and quiet healing",
)

# 1949-10-01 is a 甲子 day (cycle index 0).
_CYCLE_EPOCH = date(1949, 10, 1)


class SexagenaryPillarCalculator:
    """Day pillar from the 60-day stem/branch cycle.

    The day pillar does not depend on birth time, sex or place, so a
    date-only calculation is exact.
    """

    def cycle_index(self, day: date) -> int:
        return (day - _CYCLE_EPOCH).days % 60

    def compute_pillar(self, day: date) -> PillarReading:
        index = self.cycle_index(day)
        stem_idx, branch_idx = index % 10, index % 12
        stem = HEAVENLY_STEMS[stem_idx]
        branch = EARTHLY_BRANCHES[branch_idx]
        polarity = "yang" if stem_idx % 2 == 0 else "yin"
        description = (
            f"{stem}{branch} day: {polarity} {_STEM_ELEMENTS[stem_idx]} over "
            f"{_BRANCH_ELEMENTS[branch_idx]}. Favors {_STEM_THEMES[stem_idx]}."
        )
        return PillarReading(
            heavenly_stem=stem,
            earthly_branch=branch,
            hidden_stems=HIDDEN_STEMS[branch],
            energy_description=description,
        )


# =============================================================================
# SQL-backed active user directory
# =============================================================================


class SqlActiveUserDirectory:
    """Active users from ``user_accounts``, paged by ascending id."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def count_active(self) -> int:
        with self._session_factory() as session:
            return session.scalar(
                select(func.count(UserAccountModel.id))
                .where(UserAccountModel.is_active.is_(True))
            ) or 0

    def page_active(self, offset: int, limit: int) -> list[str]:
        with self._session_factory() as session:
            return list(session.scalars(
                select(UserAccountModel.id)
                .where(UserAccountModel.is_active.is_(True))
                .order_by(UserAccountModel.id)
                .offset(offset)
                .limit(limit)
            ))


# =============================================================================
# Fortune service loading
# =============================================================================


def load_fortune_service(path: str) -> FortuneService:
    """Import ``module:attribute`` and return a FortuneService instance.

    A class or zero-argument factory is called; anything else is used as-is.

    Raises:
        ConfigurationError: The path is malformed, cannot be imported, or
            does not provide ``generate_fortune``.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError("fortune_service", f"expected 'module:attribute', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError("fortune_service", f"cannot import {module_name}: {exc}") from exc
    try:
        target = getattr(module, attr)
    except AttributeError:
        raise ConfigurationError("fortune_service", f"{module_name} has no attribute {attr!r}") from None

    if isinstance(target, type) or (
        callable(target) and not isinstance(target, FortuneService)
    ):
        service = target()
    else:
        service = target
    if not isinstance(service, FortuneService):
        raise ConfigurationError("fortune_service", f"{path} does not provide generate_fortune()")
    return service
