"""
SQLAlchemy models for service_categories, services, and provider_services.

Categories form a tree (``parent_id``) addressed by slug.  A request names a
category; eligibility resolves the category subtree to concrete services and
then to the providers who registered those services.
"""

import uuid
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class ServiceCategory(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "service_categories"

    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Self-referential parent (NULL = root category)
    parent_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("service_categories.id", ondelete="SET NULL"),
        nullable=True,
    )

    parent: Mapped[Optional["ServiceCategory"]] = relationship(
        "ServiceCategory",
        remote_side="ServiceCategory.id",
        back_populates="children",
    )
    children: Mapped[list["ServiceCategory"]] = relationship(
        "ServiceCategory", back_populates="parent"
    )
    services: Mapped[list["Service"]] = relationship(
        "Service", back_populates="category", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<ServiceCategory(id={self.id}, slug={self.slug})>"


class Service(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "services"

    category_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("service_categories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    slug: Mapped[str] = mapped_column(String(150), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    category: Mapped["ServiceCategory"] = relationship(
        "ServiceCategory", back_populates="services"
    )

    def __repr__(self) -> str:
        return f"<Service(id={self.id}, slug={self.slug})>"


class ProviderService(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A provider's registration for one concrete service."""

    __tablename__ = "provider_services"
    __table_args__ = (
        UniqueConstraint("provider_id", "service_id", name="uq_provider_service"),
    )

    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), nullable=False, index=True
    )
    service_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("services.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return (
            f"<ProviderService(provider={self.provider_id}, "
            f"service={self.service_id})>"
        )
