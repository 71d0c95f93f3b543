"""
SQL-backed provider directory.

Answers the three questions eligibility asks (which services sit under a
category, who offers them, where are those providers right now) from the
taxonomy and presence tables, and records presence heartbeats.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from sos_dispatch.models import ProviderPresence, ProviderService, Service, ServiceCategory
from sos_dispatch.services.ports import PresenceSnapshot

logger = logging.getLogger(__name__)


def _as_float(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _dialect_insert(db: AsyncSession):
    """``INSERT .. ON CONFLICT`` construct for the session's database."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Unsupported database dialect for presence upserts: {dialect}")


def to_snapshot(row: ProviderPresence) -> PresenceSnapshot:
    return PresenceSnapshot(
        provider_id=row.provider_id,
        is_online=bool(row.is_online),
        lat=_as_float(row.last_latitude),
        lng=_as_float(row.last_longitude),
        radius_km=_as_float(row.service_radius_km),
        feature_flags=dict(row.feature_flags or {}),
    )


class SqlProviderDirectory:
    """``ProviderDirectory`` port over the taxonomy and presence tables."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def resolve_category(self, slug: str) -> Optional[frozenset[uuid.UUID]]:
        """Active services anywhere in the category's subtree.

        Returns None when no active category has this slug.
        """
        root = await self.db.execute(
            select(ServiceCategory.id).where(
                ServiceCategory.slug == slug,
                ServiceCategory.is_active.is_(True),
            )
        )
        root_id = root.scalar_one_or_none()
        if root_id is None:
            return None

        # Breadth-first walk down the category tree
        category_ids: set[uuid.UUID] = {root_id}
        frontier: set[uuid.UUID] = {root_id}
        while frontier:
            children = await self.db.execute(
                select(ServiceCategory.id).where(
                    ServiceCategory.parent_id.in_(frontier),
                    ServiceCategory.is_active.is_(True),
                )
            )
            frontier = set(children.scalars().all()) - category_ids
            category_ids |= frontier

        services = await self.db.execute(
            select(Service.id).where(
                Service.category_id.in_(category_ids),
                Service.is_active.is_(True),
            )
        )
        service_ids = frozenset(services.scalars().all())
        logger.debug(
            "Category %r resolved to %d categories, %d services",
            slug, len(category_ids), len(service_ids),
        )
        return service_ids

    async def find_by_service(
        self, service_ids: frozenset[uuid.UUID]
    ) -> frozenset[uuid.UUID]:
        if not service_ids:
            return frozenset()
        result = await self.db.execute(
            select(ProviderService.provider_id)
            .where(ProviderService.service_id.in_(service_ids))
            .distinct()
        )
        return frozenset(result.scalars().all())

    async def presence(
        self, provider_ids: frozenset[uuid.UUID]
    ) -> list[PresenceSnapshot]:
        if not provider_ids:
            return []
        result = await self.db.execute(
            select(ProviderPresence).where(ProviderPresence.provider_id.in_(provider_ids))
        )
        return [to_snapshot(row) for row in result.scalars().all()]

    async def record_heartbeat(
        self,
        provider_id: uuid.UUID,
        *,
        is_online: bool,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        service_radius_km: Optional[float] = None,
        feature_flags: Optional[dict[str, Any]] = None,
    ) -> ProviderPresence:
        """Overwrite the provider's presence row (last write wins).

        Coordinates, radius and flags are only replaced when supplied, so an
        offline toggle keeps the last known position.
        """
        # Concurrent first heartbeats both land on the same row
        insert = _dialect_insert(self.db)
        await self.db.execute(
            insert(ProviderPresence)
            .values(provider_id=provider_id, is_online=is_online, feature_flags={})
            .on_conflict_do_nothing(index_elements=[ProviderPresence.provider_id])
        )
        row = await self.db.get(ProviderPresence, provider_id, populate_existing=True)

        row.is_online = is_online
        row.last_active_at = datetime.now(timezone.utc)
        if lat is not None and lng is not None:
            row.last_latitude = Decimal(str(lat))
            row.last_longitude = Decimal(str(lng))
        if service_radius_km is not None:
            row.service_radius_km = Decimal(str(service_radius_km))
        if feature_flags is not None:
            row.feature_flags = {**(row.feature_flags or {}), **feature_flags}

        await self.db.flush()
        logger.debug(
            "Heartbeat: provider=%s online=%s located=%s",
            provider_id, is_online, lat is not None and lng is not None,
        )
        return row
