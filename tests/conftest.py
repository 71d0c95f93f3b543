"""
Shared pytest fixtures for SOS Dispatch tests.

Provides an aiosqlite-backed database (one file per test, so several
sessions can see each other's commits), in-memory fakes for every port the
lifecycle talks to, and helpers that seed the taxonomy and provider
presence rows eligibility reads.
"""

from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from sos_dispatch.models import (
    Base,
    EmergencyRequest,
    EmergencyStatus,
    ProviderPresence,
    ProviderService,
    Service,
    ServiceCategory,
)
from sos_dispatch.realtime.trackingChannel import TrackingChannel
from sos_dispatch.services.conversationService import SqlConversationStore
from sos_dispatch.services.dispatchBroadcaster import DispatchBroadcaster
from sos_dispatch.services.eligibilityResolver import EligibilityResolver
from sos_dispatch.services.ports import Notice
from sos_dispatch.services.providerDirectory import SqlProviderDirectory
from sos_dispatch.services.requestLifecycle import RequestLifecycle

# ---------------------------------------------------------------------------
# Well-known locations
# ---------------------------------------------------------------------------

LISBON = (38.7223, -9.1393)
LISBON_NEARBY = (38.7, -9.15)
PORTO = (41.1579, -8.6291)


# ---------------------------------------------------------------------------
# Fakes for the ports
# ---------------------------------------------------------------------------

class FakeSink:
    """Records deliveries; ``failures[user_id]`` makes that many attempts fail."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.attempts: dict[uuid.UUID, int] = {}
        self.failures: dict[uuid.UUID, int] = {}
        self.always_fail: set[uuid.UUID] = set()

    async def notify(self, user_id, title, message, action_ref=None) -> None:
        self.attempts[user_id] = self.attempts.get(user_id, 0) + 1
        if user_id in self.always_fail:
            raise RuntimeError(f"push to {user_id} refused")
        remaining = self.failures.get(user_id, 0)
        if remaining:
            self.failures[user_id] = remaining - 1
            raise RuntimeError(f"transient failure for {user_id}")
        self.sent.append(
            {"user_id": user_id, "title": title, "message": message, "action_ref": action_ref}
        )

    def titles_for(self, user_id: uuid.UUID) -> list[str]:
        return [s["title"] for s in self.sent if s["user_id"] == user_id]


class FakeDeadLetters:
    def __init__(self) -> None:
        self.records: list[tuple[Notice, int, str]] = []

    async def record(self, notice: Notice, attempts: int, error: str) -> None:
        self.records.append((notice, attempts, error))


class FakePaymentHold:
    def __init__(self) -> None:
        self.placed: list[tuple[uuid.UUID, uuid.UUID, int]] = []
        self.payers: list[uuid.UUID] = []
        self.released: list[str] = []
        self.fail_with: Optional[Exception] = None

    async def place(self, request_id, client_id, provider_id, amount_cents) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.payers.append(client_id)
        self.placed.append((request_id, provider_id, amount_cents))
        return f"pi_test_{len(self.placed)}"

    async def release(self, hold_ref: str) -> None:
        self.released.append(hold_ref)


class FakeRedis:
    """The snapshot read and the merge script the tracking channel uses.

    ``register_script`` returns a callable that mirrors the Lua merge: it
    yields once (the round trip) and then compares and writes without
    interleaving, as Redis runs scripts atomically.
    """

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.ttls: dict[str, int] = {}

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    def register_script(self, script: str) -> "FakeMergeScript":
        return FakeMergeScript(self)


class FakeMergeScript:
    def __init__(self, redis: FakeRedis) -> None:
        self.redis = redis

    async def __call__(self, keys: list[str], args: list[Any]) -> int:
        await asyncio.sleep(0)
        [key] = keys
        seq_field, seq, slot, document, ttl = args
        stored = self.redis.hashes.setdefault(key, {})
        last = stored.get(seq_field)
        if last is not None and int(last) >= int(seq):
            return 0
        stored.update({slot: document, seq_field: str(seq)})
        self.redis.ttls[key] = int(ttl)
        return 1


class FakeEmitter:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def __call__(self, event: str, data: dict[str, Any], *, room: str, namespace: str) -> None:
        self.events.append({"event": event, "data": data, "room": room, "namespace": namespace})


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Port fakes and the assembled lifecycle
# ---------------------------------------------------------------------------

@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def dead_letters() -> FakeDeadLetters:
    return FakeDeadLetters()


@pytest.fixture
def payments() -> FakePaymentHold:
    return FakePaymentHold()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def emitter() -> FakeEmitter:
    return FakeEmitter()


@pytest.fixture
def tracking(fake_redis, emitter) -> TrackingChannel:
    async def _redis():
        return fake_redis

    return TrackingChannel(redis_getter=_redis, emit=emitter, ttl_seconds=600)


@pytest.fixture
def broadcaster(sink, dead_letters) -> DispatchBroadcaster:
    return DispatchBroadcaster(
        sink,
        dead_letters,
        max_concurrency=5,
        max_retries=3,
        retry_base_delay_seconds=0,
    )


def build_lifecycle(
    session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    broadcaster: DispatchBroadcaster,
    payments: FakePaymentHold,
    tracking: Optional[TrackingChannel] = None,
) -> RequestLifecycle:
    return RequestLifecycle(
        session,
        resolver=EligibilityResolver(SqlProviderDirectory(session), default_radius_km=20.0),
        broadcaster=broadcaster,
        conversations=SqlConversationStore(session_factory),
        payments=payments,
        tracking=tracking,
    )


@pytest.fixture
def lifecycle(db, session_factory, broadcaster, payments, tracking) -> RequestLifecycle:
    return build_lifecycle(db, session_factory, broadcaster, payments, tracking)


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

async def seed_category(
    session: AsyncSession,
    slug: str = "electrician",
    *,
    parent_id: Optional[uuid.UUID] = None,
    with_service: bool = True,
) -> tuple[ServiceCategory, Optional[Service]]:
    category = ServiceCategory(slug=slug, name=slug.title(), parent_id=parent_id)
    session.add(category)
    await session.flush()
    service = None
    if with_service:
        service = Service(
            category_id=category.id, slug=f"{slug}-urgent", name=f"Urgent {slug}"
        )
        session.add(service)
        await session.flush()
    return category, service


async def seed_provider(
    session: AsyncSession,
    service_id: uuid.UUID,
    location: Optional[tuple[float, float]] = LISBON_NEARBY,
    *,
    provider_id: Optional[uuid.UUID] = None,
    is_online: bool = True,
    emergency_calls: bool = True,
    radius_km: Optional[float] = 20.0,
) -> uuid.UUID:
    provider_id = provider_id or uuid.uuid4()
    session.add(ProviderService(provider_id=provider_id, service_id=service_id))
    session.add(
        ProviderPresence(
            provider_id=provider_id,
            is_online=is_online,
            last_latitude=Decimal(str(location[0])) if location else None,
            last_longitude=Decimal(str(location[1])) if location else None,
            service_radius_km=Decimal(str(radius_km)) if radius_km is not None else None,
            feature_flags={"emergency_calls": True} if emergency_calls else {},
        )
    )
    await session.flush()
    return provider_id


async def seed_request(
    session: AsyncSession,
    client_id: Optional[uuid.UUID] = None,
    *,
    status: EmergencyStatus = EmergencyStatus.PENDING,
    provider_id: Optional[uuid.UUID] = None,
    location: tuple[float, float] = LISBON,
    category: str = "electrician",
) -> EmergencyRequest:
    request = EmergencyRequest(
        client_id=client_id or uuid.uuid4(),
        category=category,
        latitude=Decimal(str(location[0])),
        longitude=Decimal(str(location[1])),
        status=status,
        provider_id=provider_id,
        version=1,
    )
    session.add(request)
    await session.flush()
    return request
