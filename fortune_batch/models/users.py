"""
Read-only mirror of user accounts.

The batch layer never writes these rows; user management lives elsewhere.
``SqlActiveUserDirectory`` counts and pages the active ones by id.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from fortune_kernel.db.base import TrackedBase


class UserAccountModel(TrackedBase):
    __tablename__ = "user_accounts"

    __table_args__ = (
        Index("ix_user_accounts_is_active", "is_active"),
    )

    # User ids come from the external directory, not uuid4.
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
