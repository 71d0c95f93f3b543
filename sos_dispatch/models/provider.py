"""
SQLAlchemy model for provider_presence.

One row per provider, overwritten by every heartbeat (last write wins).  No
history is kept; presence is best-effort and never used for billing.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Numeric, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType

EMERGENCY_CALLS_FLAG = "emergency_calls"


class ProviderPresence(Base):
    __tablename__ = "provider_presence"

    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True
    )
    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_latitude: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 7), nullable=True
    )
    last_longitude: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 7), nullable=True
    )
    last_active_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # NULL means the platform default radius applies
    service_radius_km: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(6, 2), nullable=True
    )
    # Plan features, e.g. {"emergency_calls": true}
    feature_flags: Mapped[Any] = mapped_column(JSONType, nullable=False, default=dict)

    @property
    def has_emergency_calls(self) -> bool:
        return bool((self.feature_flags or {}).get(EMERGENCY_CALLS_FLAG) is True)

    def __repr__(self) -> str:
        return (
            f"<ProviderPresence(provider={self.provider_id}, online={self.is_online}, "
            f"lat={self.last_latitude}, lng={self.last_longitude})>"
        )
