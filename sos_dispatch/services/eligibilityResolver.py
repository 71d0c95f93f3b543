"""
Eligibility Resolver
====================

Turns "what is needed, and where" into the set of providers who should hear
about an emergency.  A provider is eligible when all of the following hold:

  1. They registered at least one service under the requested category
     subtree (or the explicit ``service_id``).
  2. Their presence row says ``is_online``.
  3. Their last known location has both coordinates.
  4. Their plan carries ``feature_flags.emergency_calls is True``.
  5. The haversine distance to the request is ``<=`` their service radius
     (the platform default when their radius is unset).

An empty result is a valid outcome, never an error.  Zero resolved services
yields zero providers, never "everyone".
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sos_dispatch.core.config import settings
from sos_dispatch.models.provider import EMERGENCY_CALLS_FLAG
from sos_dispatch.services.geoMath import Coordinates, distance_km
from sos_dispatch.services.ports import PresenceSnapshot, ProviderDirectory

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EligibilityResult:
    """Eligible provider ids plus per-stage counters for logging."""
    provider_ids: frozenset[uuid.UUID]
    service_count: int = 0
    registered_count: int = 0
    online_count: int = 0
    located_count: int = 0
    feature_count: int = 0

    @property
    def count(self) -> int:
        return len(self.provider_ids)


_EMPTY = EligibilityResult(provider_ids=frozenset())


# ---------------------------------------------------------------------------
# Filter helpers
# ---------------------------------------------------------------------------

def _has_emergency_feature(presence: PresenceSnapshot) -> bool:
    return (presence.feature_flags or {}).get(EMERGENCY_CALLS_FLAG) is True


def within_radius(
    origin: Coordinates,
    presence: PresenceSnapshot,
    default_radius_km: float,
) -> bool:
    """True when the provider's last location lies within their radius.

    The boundary is inclusive.
    """
    if presence.lat is None or presence.lng is None:
        return False
    radius = (
        float(presence.radius_km)
        if presence.radius_km is not None
        else default_radius_km
    )
    return distance_km(origin, (presence.lat, presence.lng)) <= radius


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class EligibilityResolver:
    """Resolves eligible providers through a ``ProviderDirectory``."""

    def __init__(
        self,
        directory: ProviderDirectory,
        default_radius_km: Optional[float] = None,
    ) -> None:
        self._directory = directory
        self._default_radius_km = (
            default_radius_km
            if default_radius_km is not None
            else settings.default_service_radius_km
        )

    async def resolve(
        self,
        location: Coordinates,
        *,
        category: Optional[str] = None,
        service_id: Optional[uuid.UUID] = None,
        exclude_user_id: Optional[uuid.UUID] = None,
    ) -> EligibilityResult:
        """Return the providers eligible for an emergency at ``location``.

        Args:
            location: ``(lat, lng)`` of the request.
            category: Category slug; ignored when ``service_id`` is given.
            service_id: Explicit service, skips category resolution.
            exclude_user_id: Never include this user (the requesting client).

        Returns:
            EligibilityResult, possibly empty.
        """
        # Step 1: services
        if service_id is not None:
            service_ids: frozenset[uuid.UUID] = frozenset({service_id})
        else:
            resolved = await self._directory.resolve_category(category or "")
            if resolved is None:
                logger.warning(
                    "Eligibility: unknown category slug %r, no providers", category
                )
                return _EMPTY
            service_ids = frozenset(resolved)

        if not service_ids:
            logger.info("Eligibility: category %r has no services", category)
            return _EMPTY

        # Step 2: providers registered for those services
        registered = frozenset(await self._directory.find_by_service(service_ids))
        if exclude_user_id is not None:
            registered = registered - {exclude_user_id}
        logger.info(
            "Eligibility: %d services -> %d registered providers",
            len(service_ids), len(registered),
        )
        if not registered:
            return EligibilityResult(
                provider_ids=frozenset(), service_count=len(service_ids)
            )

        # Step 3: presence filters
        presences = await self._directory.presence(registered)

        online = [
            p for p in presences if p.is_online and p.provider_id in registered
        ]
        located = [p for p in online if p.lat is not None and p.lng is not None]
        featured = [p for p in located if _has_emergency_feature(p)]
        in_range = [
            p for p in featured
            if within_radius(location, p, self._default_radius_km)
        ]

        logger.info(
            "Eligibility funnel: registered=%d online=%d located=%d "
            "emergency_calls=%d in_range=%d",
            len(registered), len(online), len(located), len(featured), len(in_range),
        )

        return EligibilityResult(
            provider_ids=frozenset(p.provider_id for p in in_range),
            service_count=len(service_ids),
            registered_count=len(registered),
            online_count=len(online),
            located_count=len(located),
            feature_count=len(featured),
        )
