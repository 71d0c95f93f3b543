"""
SQLAlchemy model for conversations.

A generic messaging channel between a client and a provider, scoped to a
context (the emergency request).  Message bodies live elsewhere; this table
only guarantees that at most one conversation exists per triple.
"""

import uuid

from sqlalchemy import String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Conversation(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint(
            "context_id", "party_a_id", "party_b_id", name="uq_conversation_triple"
        ),
    )

    context_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), nullable=False, index=True
    )
    party_a_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    party_b_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active"
    )

    def __repr__(self) -> str:
        return (
            f"<Conversation(id={self.id}, context={self.context_id}, "
            f"a={self.party_a_id}, b={self.party_b_id})>"
        )
