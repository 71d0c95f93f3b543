"""
SQLAlchemy model for notification_dead_letters.

Every notification that exhausted its delivery retries is recorded here so
delivery gaps are visible and can be replayed by an operator.
"""

import uuid
from typing import Optional

from sqlalchemy import Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class NotificationDeadLetter(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "notification_dead_letters"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), nullable=False, index=True
    )
    request_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True, index=True
    )
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    action_ref: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<NotificationDeadLetter(user={self.user_id}, kind={self.kind}, "
            f"attempts={self.attempts})>"
        )
