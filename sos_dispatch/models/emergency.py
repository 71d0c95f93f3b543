"""
SQLAlchemy models for emergency_requests and emergency_offers.

An emergency request is created by a client, broadcast to nearby eligible
providers, and collects competing offers until the client commits to exactly
one of them.  Status writes go through conditional updates keyed on
``status`` and ``version`` (see ``services.offerLedger``).
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class EmergencyStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OfferStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


# Statuses in which a provider is committed to the request
COMMITTED_STATUSES: frozenset[EmergencyStatus] = frozenset({
    EmergencyStatus.ACCEPTED,
    EmergencyStatus.IN_PROGRESS,
    EmergencyStatus.COMPLETED,
})

TERMINAL_STATUSES: frozenset[EmergencyStatus] = frozenset({
    EmergencyStatus.COMPLETED,
    EmergencyStatus.CANCELLED,
})


class EmergencyRequest(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "emergency_requests"

    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), nullable=False, index=True
    )

    # What is needed: a category slug, optionally narrowed to one service
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    service_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Location
    latitude: Mapped[Decimal] = mapped_column(Numeric(10, 7), nullable=False)
    longitude: Mapped[Decimal] = mapped_column(Numeric(10, 7), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Surge factor shown to providers when they quote
    price_multiplier: Mapped[Decimal] = mapped_column(
        Numeric(4, 2), nullable=False, default=Decimal("1.00")
    )

    status: Mapped[EmergencyStatus] = mapped_column(
        Enum(
            EmergencyStatus,
            name="emergency_status",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=EmergencyStatus.PENDING,
        index=True,
    )
    provider_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True, index=True
    )

    # Optimistic concurrency token, bumped on every status write
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Dispatch bookkeeping
    eligible_provider_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    payment_hold_ref: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    last_reminded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Lifecycle timestamps
    accepted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    offers: Mapped[list["EmergencyOffer"]] = relationship(
        "EmergencyOffer",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="EmergencyOffer.created_at",
    )

    def __repr__(self) -> str:
        return (
            f"<EmergencyRequest(id={self.id}, category={self.category}, "
            f"status={self.status}, provider={self.provider_id}, v={self.version})>"
        )


class EmergencyOffer(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A provider's priced, timed response to an emergency request."""

    __tablename__ = "emergency_offers"
    __table_args__ = (
        UniqueConstraint("request_id", "provider_id", name="uq_offer_request_provider"),
    )

    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("emergency_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), nullable=False, index=True
    )
    status: Mapped[OfferStatus] = mapped_column(
        Enum(
            OfferStatus,
            name="offer_status",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=OfferStatus.PENDING,
    )

    # Quote
    price_per_hour_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    min_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    eta_label: Mapped[str] = mapped_column(String(100), nullable=False)

    responded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    request: Mapped["EmergencyRequest"] = relationship(
        "EmergencyRequest", back_populates="offers"
    )

    @property
    def quoted_amount_cents(self) -> int:
        return self.price_per_hour_cents * self.min_hours

    def __repr__(self) -> str:
        return (
            f"<EmergencyOffer(id={self.id}, request={self.request_id}, "
            f"provider={self.provider_id}, status={self.status})>"
        )
