"""
fortune_batch.models -- ORM models for batch run and calendar persistence.

Architecture: fortune_batch/models. Imports from fortune_kernel.db.base only.
"""

from fortune_batch.models.calendar import CalendarEntryModel
from fortune_batch.models.runs import FortuneUpdateRunModel, JobRunModel
from fortune_batch.models.settings import SystemSettingModel
from fortune_batch.models.users import UserAccountModel

__all__ = [
    "CalendarEntryModel",
    "FortuneUpdateRunModel",
    "JobRunModel",
    "SystemSettingModel",
    "UserAccountModel",
]
