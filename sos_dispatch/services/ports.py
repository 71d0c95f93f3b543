"""
Narrow interfaces to the collaborators dispatch depends on but does not own.

Production adapters live in ``sos_dispatch.integrations`` and in the SQL
service modules; tests substitute in-memory fakes or ``AsyncMock`` objects.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol


# ---------------------------------------------------------------------------
# Value objects crossing the port boundary
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Notice:
    """One notification addressed to one user."""
    user_id: uuid.UUID
    title: str
    message: str
    action_ref: Optional[str] = None
    kind: str = "generic"
    request_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class PresenceSnapshot:
    """Point-in-time view of a provider's availability."""
    provider_id: uuid.UUID
    is_online: bool
    lat: Optional[float]
    lng: Optional[float]
    radius_km: Optional[float] = None
    feature_flags: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------

class NotificationSink(Protocol):
    async def notify(
        self,
        user_id: uuid.UUID,
        title: str,
        message: str,
        action_ref: Optional[str] = None,
    ) -> None:
        """Deliver one notification.  May raise; the caller retries."""
        ...


class ConversationStore(Protocol):
    async def get_or_create(
        self, context_id: uuid.UUID, party_a: uuid.UUID, party_b: uuid.UUID
    ) -> uuid.UUID:
        """Return the conversation id for the triple, creating it at most once."""
        ...


class PaymentHold(Protocol):
    async def place(
        self,
        request_id: uuid.UUID,
        client_id: uuid.UUID,
        provider_id: uuid.UUID,
        amount_cents: int,
    ) -> str:
        """Authorise ``amount_cents`` on the client's card; return the hold ref."""
        ...

    async def release(self, hold_ref: str) -> None: ...


class ProviderDirectory(Protocol):
    async def resolve_category(self, slug: str) -> Optional[frozenset[uuid.UUID]]:
        """Service ids under the category subtree, or None for an unknown slug."""
        ...

    async def find_by_service(
        self, service_ids: frozenset[uuid.UUID]
    ) -> frozenset[uuid.UUID]: ...

    async def presence(
        self, provider_ids: frozenset[uuid.UUID]
    ) -> list[PresenceSnapshot]: ...


class DeadLetterLog(Protocol):
    async def record(self, notice: Notice, attempts: int, error: str) -> None: ...
