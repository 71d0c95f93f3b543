"""
Shared FastAPI dependencies for the SOS Dispatch API.

Provides the async database session, the caller's identity from the JWT
Bearer token, and the collaborators a ``RequestLifecycle`` is assembled
from.  Process-wide collaborators (broadcaster, tracking channel, payment
hold) are created lazily once; tests replace them through
``app.dependency_overrides``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from sos_dispatch.core.config import settings
from sos_dispatch.core.security import AuthenticatedUser, authenticate
from sos_dispatch.realtime.trackingChannel import TrackingChannel
from sos_dispatch.services.conversationService import SqlConversationStore
from sos_dispatch.services.deadLetterLog import SqlDeadLetterLog
from sos_dispatch.services.dispatchBroadcaster import DispatchBroadcaster
from sos_dispatch.services.eligibilityResolver import EligibilityResolver
from sos_dispatch.services.ports import PaymentHold
from sos_dispatch.services.providerDirectory import SqlProviderDirectory
from sos_dispatch.services.requestLifecycle import RequestLifecycle

# ---------------------------------------------------------------------------
# Async engine & session factory
# ---------------------------------------------------------------------------
# The engine is created once at module import time.  The session factory
# produces ``AsyncSession`` instances scoped to a single request via
# ``get_db`` below.
# ---------------------------------------------------------------------------

engine = create_async_engine(
    settings.database_url,
    echo=settings.sql_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session that is closed after the request.

    Usage in a route::

        @router.get("/items")
        async def list_items(db: DBSession):
            ...
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Factory for collaborators that need their own short sessions."""
    return async_session_factory


DBSession = Annotated[AsyncSession, Depends(get_db)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

_bearer_scheme = HTTPBearer(auto_error=True)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(_bearer_scheme)],
) -> AuthenticatedUser:
    """Validate the Bearer token and return the caller's identity.

    Raises 401 if the token is missing, expired or malformed.
    """
    try:
        return authenticate(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        )


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]


async def get_current_provider(user: CurrentUser) -> AuthenticatedUser:
    if not user.is_provider:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This action is only available to providers.",
        )
    return user


CurrentProvider = Annotated[AuthenticatedUser, Depends(get_current_provider)]


# ---------------------------------------------------------------------------
# Process-wide collaborators
# ---------------------------------------------------------------------------

_broadcaster: Optional[DispatchBroadcaster] = None
_tracking: Optional[TrackingChannel] = None


def get_broadcaster(factory: SessionFactory) -> DispatchBroadcaster:
    global _broadcaster
    if _broadcaster is None:
        from sos_dispatch.integrations.fcm import FcmNotificationSink

        _broadcaster = DispatchBroadcaster(
            FcmNotificationSink(), SqlDeadLetterLog(factory)
        )
    return _broadcaster


def get_tracking() -> TrackingChannel:
    global _tracking
    if _tracking is None:
        _tracking = TrackingChannel()
    return _tracking


def get_payment_hold() -> PaymentHold:
    from sos_dispatch.integrations.stripe import StripePaymentHold

    return StripePaymentHold()


async def shutdown_broadcaster() -> None:
    """Let in-flight notification fan-outs finish before exit."""
    if _broadcaster is not None:
        await _broadcaster.drain()


Tracking = Annotated[TrackingChannel, Depends(get_tracking)]


def get_directory(db: DBSession) -> SqlProviderDirectory:
    return SqlProviderDirectory(db)


Directory = Annotated[SqlProviderDirectory, Depends(get_directory)]


def get_lifecycle(
    db: DBSession,
    factory: SessionFactory,
    directory: Directory,
    broadcaster: Annotated[DispatchBroadcaster, Depends(get_broadcaster)],
    tracking: Tracking,
    payments: Annotated[PaymentHold, Depends(get_payment_hold)],
) -> RequestLifecycle:
    return RequestLifecycle(
        db,
        resolver=EligibilityResolver(directory),
        broadcaster=broadcaster,
        conversations=SqlConversationStore(factory),
        payments=payments,
        tracking=tracking,
    )


Lifecycle = Annotated[RequestLifecycle, Depends(get_lifecycle)]
