"""
WebSocket Server
================

Socket.IO server carrying live emergency tracking to clients and
providers.

Architecture:
  - python-socketio AsyncServer mounted as an ASGI app on FastAPI
  - Redis client manager for horizontal scaling across API instances
  - JWT authentication on connect, extracting user_id and role
  - One room per emergency: ``emergency_<request_id>`` on ``/tracking``

Connection lifecycle:
  1. Client connects to ``/tracking`` with ``auth: { token: "<jwt>" }``
  2. Server validates the JWT and remembers user_id and role
  3. Client joins an emergency room via ``join_request``; only the request's
     client and its committed provider are admitted
  4. ``get_snapshot`` returns the merged last-value view for late joiners
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import jwt
import socketio
from redis.asyncio import Redis

from sos_dispatch.core.config import settings
from sos_dispatch.realtime.trackingChannel import TRACKING_NAMESPACE, room_for

logger = logging.getLogger(__name__)


JWT_SECRET: str = settings.jwt_secret
JWT_ALGORITHM: str = settings.jwt_algorithm


# ---------------------------------------------------------------------------
# Socket.IO server instance
# ---------------------------------------------------------------------------

_redis_mgr_url: str = settings.redis_url

client_manager = socketio.AsyncRedisManager(
    _redis_mgr_url,
    write_only=False,
)

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=settings.ws_cors_allowed_origins,
    client_manager=client_manager,
    logger=False,
    engineio_logger=False,
    ping_timeout=settings.ws_ping_timeout,
    ping_interval=settings.ws_ping_interval,
    max_http_buffer_size=1_000_000,
    namespaces=[TRACKING_NAMESPACE],
)


# ---------------------------------------------------------------------------
# Connection registry: sid -> user metadata
# ---------------------------------------------------------------------------

_sid_meta: dict[str, dict[str, Any]] = {}


def get_sid_meta(sid: str) -> dict[str, Any] | None:
    """Return the metadata dict for a given session ID."""
    return _sid_meta.get(sid)


# ---------------------------------------------------------------------------
# JWT authentication helper
# ---------------------------------------------------------------------------

def _authenticate_token(token: str | None) -> dict[str, Any] | None:
    """Validate a JWT and return the decoded payload, or None on failure.

    Expected payload fields:
      - sub: str  (user_id as UUID string)
      - role: str (client | provider)
    """
    if not token:
        return None
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
        )
        if "sub" not in payload or "role" not in payload:
            logger.warning("JWT missing required claims (sub, role)")
            return None
        return payload
    except jwt.ExpiredSignatureError:
        logger.warning("JWT token expired")
        return None
    except jwt.InvalidTokenError as exc:
        logger.warning("Invalid JWT token: %s", exc)
        return None


async def _is_participant(request_id: str, user_id: str) -> bool:
    """True when the user is the request's client or committed provider."""
    from sos_dispatch.api.deps import async_session_factory
    from sos_dispatch.models import EmergencyRequest

    try:
        rid = uuid.UUID(request_id)
        uid = uuid.UUID(user_id)
    except ValueError:
        return False

    async with async_session_factory() as session:
        request = await session.get(EmergencyRequest, rid)
    if request is None:
        return False
    return uid in (request.client_id, request.provider_id)


# ---------------------------------------------------------------------------
# /tracking namespace
# ---------------------------------------------------------------------------

@sio.on("connect", namespace=TRACKING_NAMESPACE)
async def connect_tracking(sid: str, environ: dict[str, Any], auth: dict[str, Any] | None = None) -> bool:
    """Authenticate on /tracking."""
    payload = _authenticate_token((auth or {}).get("token"))
    if payload is None:
        logger.info("Rejected /tracking connect for sid=%s", sid)
        return False
    _sid_meta[sid] = {"user_id": payload["sub"], "role": payload["role"]}
    logger.info(
        "Connected /tracking: sid=%s user_id=%s role=%s",
        sid, payload["sub"], payload["role"],
    )
    return True


@sio.on("disconnect", namespace=TRACKING_NAMESPACE)
async def disconnect_tracking(sid: str, *args: Any) -> None:
    meta = _sid_meta.pop(sid, None)
    logger.info(
        "Disconnected /tracking: sid=%s user_id=%s",
        sid, meta["user_id"] if meta else None,
    )


@sio.on("join_request", namespace=TRACKING_NAMESPACE)
async def handle_join_request(sid: str, data: dict[str, Any]) -> dict[str, Any]:
    """Join the room of one emergency.

    Payload: { "request_id": "<uuid>" }
    """
    request_id = (data or {}).get("request_id")
    if not request_id:
        return {"ok": False, "error": "request_id is required"}
    meta = get_sid_meta(sid)
    if meta is None or not await _is_participant(str(request_id), meta["user_id"]):
        return {"ok": False, "error": "not a participant of this request"}
    room = room_for(request_id)
    await sio.enter_room(sid, room, namespace=TRACKING_NAMESPACE)
    logger.info("sid=%s joined room %s", sid, room)
    return {"ok": True, "room": room}


@sio.on("leave_request", namespace=TRACKING_NAMESPACE)
async def handle_leave_request(sid: str, data: dict[str, Any]) -> dict[str, Any]:
    request_id = (data or {}).get("request_id")
    if not request_id:
        return {"ok": False, "error": "request_id is required"}
    room = room_for(request_id)
    await sio.leave_room(sid, room, namespace=TRACKING_NAMESPACE)
    logger.info("sid=%s left room %s", sid, room)
    return {"ok": True, "room": room}


@sio.on("get_snapshot", namespace=TRACKING_NAMESPACE)
async def handle_get_snapshot(sid: str, data: dict[str, Any]) -> dict[str, Any]:
    """Return the merged last-value view of a request the caller takes part in."""
    from sos_dispatch.realtime.trackingChannel import TrackingChannel

    request_id = (data or {}).get("request_id")
    meta = get_sid_meta(sid)
    if not request_id or meta is None:
        return {"ok": False, "error": "request_id is required"}
    if not await _is_participant(str(request_id), meta["user_id"]):
        return {"ok": False, "error": "not a participant of this request"}
    snapshot = await TrackingChannel().snapshot(uuid.UUID(str(request_id)))
    return {"ok": True, "snapshot": snapshot.as_dict()}


# ---------------------------------------------------------------------------
# Redis helper for the tracking snapshot store
# ---------------------------------------------------------------------------

_redis_client: Redis | None = None


async def get_redis() -> Redis:
    """Return a shared async Redis client, creating it lazily."""
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(
            _redis_mgr_url,
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    """Close the shared Redis client.  Called on app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


# ---------------------------------------------------------------------------
# ASGI app for mounting onto FastAPI
# ---------------------------------------------------------------------------

socket_app = socketio.ASGIApp(
    socketio_server=sio,
    socketio_path="/ws/socket.io",
)
