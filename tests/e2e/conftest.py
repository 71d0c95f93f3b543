"""
E2E test fixtures for SOS Dispatch.

Provides:
- The FastAPI app with all routes registered and its outer collaborators
  (FCM, Stripe, Redis, Socket.IO) replaced through ``dependency_overrides``
- httpx AsyncClient wired via ASGI transport (no network needed)
- Seed data: an "electrician" category, two providers in Lisbon and one in
  Porto, all online with emergency calls enabled
- Bearer token helpers for clients and providers
"""

from __future__ import annotations

import uuid
from typing import Any, AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from sos_dispatch.api import deps
from sos_dispatch.core.security import ROLE_CLIENT, ROLE_PROVIDER, create_access_token
from sos_dispatch.main import app
from tests.conftest import LISBON_NEARBY, PORTO, seed_category, seed_provider

# ---------------------------------------------------------------------------
# Test IDs (stable across tests so cross-references work)
# ---------------------------------------------------------------------------

CLIENT_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
OTHER_CLIENT_ID = uuid.UUID("abababab-abab-abab-abab-abababababab")
PROVIDER_A_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")
PROVIDER_B_ID = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")
PROVIDER_PORTO_ID = uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")

API = "/api/v1"


def auth(user_id: uuid.UUID, role: str = ROLE_CLIENT) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


def provider_auth(user_id: uuid.UUID) -> dict[str, str]:
    return auth(user_id, ROLE_PROVIDER)


# ---------------------------------------------------------------------------
# App + client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def seeded(session_factory) -> None:
    async with session_factory() as session:
        _, service = await seed_category(session, "electrician")
        await seed_provider(session, service.id, LISBON_NEARBY, provider_id=PROVIDER_A_ID)
        await seed_provider(session, service.id, LISBON_NEARBY, provider_id=PROVIDER_B_ID)
        await seed_provider(session, service.id, PORTO, provider_id=PROVIDER_PORTO_ID)
        await session.commit()


@pytest_asyncio.fixture
async def client(
    seeded, session_factory, broadcaster, tracking, payments
) -> AsyncGenerator[AsyncClient, None]:
    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[deps.get_db] = _get_db
    app.dependency_overrides[deps.get_session_factory] = lambda: session_factory
    app.dependency_overrides[deps.get_broadcaster] = lambda: broadcaster
    app.dependency_overrides[deps.get_tracking] = lambda: tracking
    app.dependency_overrides[deps.get_payment_hold] = lambda: payments

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await broadcaster.drain()
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Flow helpers
# ---------------------------------------------------------------------------

async def raise_emergency(
    client: AsyncClient,
    *,
    client_id: uuid.UUID = CLIENT_ID,
    lat: float = 38.7223,
    lng: float = -9.1393,
    category: str = "electrician",
) -> dict[str, Any]:
    resp = await client.post(
        f"{API}/emergencies",
        json={
            "category": category,
            "location": {"lat": lat, "lng": lng},
            "description": "Sparks from the fuse box",
            "address": "Rua Augusta 1, Lisboa",
        },
        headers=auth(client_id),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


async def make_offer(
    client: AsyncClient,
    request_id: str,
    provider_id: uuid.UUID,
    *,
    price_per_hour_cents: int = 5000,
    min_hours: int = 2,
    eta_label: str = "20 min",
):
    return await client.post(
        f"{API}/emergencies/{request_id}/offers",
        json={
            "price_per_hour_cents": price_per_hour_cents,
            "min_hours": min_hours,
            "eta_label": eta_label,
        },
        headers=provider_auth(provider_id),
    )
