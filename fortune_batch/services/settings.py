"""
SettingsStore -- the persisted ``fortune_update_time`` setting.

The scheduler reads the value once at start through
``resolve_fortune_update_time()``, which never raises: a missing,
malformed or unreadable value falls back to ``DEFAULT_FORTUNE_UPDATE_TIME``.
Admin writes go through ``set_fortune_update_time()``, which validates.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from fortune_kernel.logging_config import get_logger

from fortune_batch.domain.schedule import (
    DEFAULT_FORTUNE_UPDATE_TIME,
    is_valid_update_time,
    validate_update_time,
)
from fortune_batch.models.settings import SystemSettingModel

logger = get_logger("batch.settings")

FORTUNE_UPDATE_TIME_KEY = "fortune_update_time"
_FORTUNE_UPDATE_TIME_DESCRIPTION = "Daily fortune refresh time (HH:MM, 24h)"


class SettingsStore:

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def get(self, key: str) -> str | None:
        with self._session_factory() as session:
            return session.scalar(
                select(SystemSettingModel.value).where(SystemSettingModel.key == key)
            )

    def set(
        self,
        key: str,
        value: str,
        updated_by: str | None = None,
        description: str | None = None,
    ) -> None:
        with self._session_factory.begin() as session:
            model = session.scalar(
                select(SystemSettingModel).where(SystemSettingModel.key == key)
            )
            if model is None:
                session.add(SystemSettingModel(
                    key=key,
                    value=value,
                    description=description,
                    updated_by=updated_by,
                    created_by=updated_by,
                ))
            else:
                model.value = value
                model.updated_by = updated_by
                if description is not None:
                    model.description = description

        logger.info(
            "setting_updated",
            extra={"key": key, "value": value, "updated_by": updated_by},
        )

    def get_fortune_update_time(self) -> str:
        """Stored value, or the default when none is stored."""
        return self.get(FORTUNE_UPDATE_TIME_KEY) or DEFAULT_FORTUNE_UPDATE_TIME

    def set_fortune_update_time(
        self,
        value: str,
        updated_by: str | None = None,
        description: str | None = None,
    ) -> str:
        """Validate and store a new refresh time.

        Takes effect the next time the scheduler starts.

        Raises:
            InvalidScheduleTimeError: ``value`` is not HH:MM (24h).
        """
        validate_update_time(value)
        self.set(
            FORTUNE_UPDATE_TIME_KEY,
            value,
            updated_by=updated_by,
            description=description or _FORTUNE_UPDATE_TIME_DESCRIPTION,
        )
        return value

    def resolve_fortune_update_time(self) -> str:
        try:
            value = self.get(FORTUNE_UPDATE_TIME_KEY)
        except SQLAlchemyError:
            logger.warning(
                "fortune_update_time_unreadable",
                exc_info=True,
                extra={"fallback": DEFAULT_FORTUNE_UPDATE_TIME},
            )
            return DEFAULT_FORTUNE_UPDATE_TIME

        if value is None:
            logger.info(
                "fortune_update_time_missing",
                extra={"fallback": DEFAULT_FORTUNE_UPDATE_TIME},
            )
            return DEFAULT_FORTUNE_UPDATE_TIME
        if not is_valid_update_time(value):
            logger.warning(
                "fortune_update_time_invalid",
                extra={"value": value, "fallback": DEFAULT_FORTUNE_UPDATE_TIME},
            )
            return DEFAULT_FORTUNE_UPDATE_TIME
        return value
