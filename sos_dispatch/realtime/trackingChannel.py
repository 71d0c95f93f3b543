"""
Tracking Channel
================

Per-request live view of an emergency: its status and the committed
provider's position.

Architecture:
  - **Redis hash** (``sos:tracking:{request_id}``): the merged last-value
    snapshot.  Fields ``status`` and ``location`` hold JSON documents; one
    ``seq:{publisher}`` field per publisher holds the last sequence number
    accepted from it.  The hash expires ``tracking_snapshot_ttl_seconds``
    after the last write.
  - **Socket.IO room** (``emergency_{request_id}`` on ``/tracking``):
    every accepted update is emitted as ``tracking:update``.

Ordering: each publisher stamps its own monotonically increasing sequence
number (the request ``version`` for lifecycle updates, the heartbeat clock
for provider locations).  An update whose sequence is not greater than the
last one seen from the same publisher is dropped.  The compare and the
write run as one Lua script inside Redis, so the rule holds across API
workers.  Different publishers never overwrite each other's slot.

Delivery is at-least-once and best-effort: failures are logged and never
raised to the caller.  There is no replay; late subscribers fetch the
snapshot.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Final, Optional

from redis.asyncio import Redis

from sos_dispatch.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_REDIS_SNAPSHOT_PREFIX: Final[str] = "sos:tracking"
_SEQ_FIELD_PREFIX: Final[str] = "seq:"

TRACKING_NAMESPACE: Final[str] = "/tracking"
TRACKING_EVENT: Final[str] = "tracking:update"

SLOT_STATUS: Final[str] = "status"
SLOT_LOCATION: Final[str] = "location"

LIFECYCLE_PUBLISHER: Final[str] = "lifecycle"

# KEYS[1] snapshot hash
# ARGV: seq field, seq, slot, document, ttl seconds
_MERGE_SCRIPT: Final[str] = """
local last = redis.call('HGET', KEYS[1], ARGV[1])
if last and tonumber(last) >= tonumber(ARGV[2]) then
    return 0
end
redis.call('HSET', KEYS[1], ARGV[3], ARGV[4], ARGV[1], ARGV[2])
redis.call('EXPIRE', KEYS[1], ARGV[5])
return 1
"""


def provider_publisher(provider_id: uuid.UUID) -> str:
    return f"provider:{provider_id}"


def room_for(request_id: uuid.UUID | str) -> str:
    return f"emergency_{request_id}"


def _snapshot_key(request_id: uuid.UUID | str) -> str:
    return f"{_REDIS_SNAPSHOT_PREFIX}:{request_id}"


def heartbeat_seq() -> int:
    """Sequence for location heartbeats: wall clock in milliseconds."""
    return time.time_ns() // 1_000_000


# ---------------------------------------------------------------------------
# Data transfer objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TrackingSnapshot:
    """Merged last-value view of one request."""
    request_id: uuid.UUID
    status: Optional[dict[str, Any]] = None
    location: Optional[dict[str, Any]] = None
    sequences: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "request_id": str(self.request_id),
            "status": self.status,
            "location": self.location,
            "sequences": dict(self.sequences),
        }


Emitter = Callable[..., Awaitable[None]]


async def _default_emit(event: str, data: dict[str, Any], *, room: str, namespace: str) -> None:
    from sos_dispatch.realtime.socketServer import sio

    await sio.emit(event, data, room=room, namespace=namespace)


async def _default_redis() -> Redis:
    from sos_dispatch.realtime.socketServer import get_redis

    return await get_redis()


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------

class TrackingChannel:
    """Publishes and merges tracking updates for emergency requests."""

    def __init__(
        self,
        redis_getter: Callable[[], Awaitable[Redis]] = _default_redis,
        emit: Emitter = _default_emit,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        self._redis_getter = redis_getter
        self._emit = emit
        self._ttl = ttl_seconds or settings.tracking_snapshot_ttl_seconds

    async def publish(
        self,
        request_id: uuid.UUID,
        slot: str,
        publisher: str,
        seq: int,
        payload: dict[str, Any],
    ) -> bool:
        """Merge ``payload`` into ``slot`` and fan it out to subscribers.

        Returns:
            True if the update was accepted, False if it was stale or the
            publish failed.
        """
        try:
            redis = await self._redis_getter()
            seq_field = f"{_SEQ_FIELD_PREFIX}{publisher}"
            document = {**payload, "publisher": publisher, "seq": seq}

            merge = redis.register_script(_MERGE_SCRIPT)
            accepted = await merge(
                keys=[_snapshot_key(request_id)],
                args=[seq_field, seq, slot, json.dumps(document), self._ttl],
            )
            if not int(accepted):
                logger.debug(
                    "Stale tracking update dropped: request=%s publisher=%s seq=%d",
                    request_id, publisher, seq,
                )
                return False

            await self._emit(
                TRACKING_EVENT,
                {"request_id": str(request_id), "slot": slot, **document},
                room=room_for(request_id),
                namespace=TRACKING_NAMESPACE,
            )
            return True
        except Exception:
            logger.exception(
                "Tracking publish failed: request=%s slot=%s publisher=%s",
                request_id, slot, publisher,
            )
            return False

    async def publish_status(
        self,
        request_id: uuid.UUID,
        version: int,
        payload: dict[str, Any],
    ) -> bool:
        """Publish a lifecycle event; ``version`` orders the updates."""
        return await self.publish(
            request_id, SLOT_STATUS, LIFECYCLE_PUBLISHER, version, payload
        )

    async def publish_location(
        self,
        request_id: uuid.UUID,
        provider_id: uuid.UUID,
        lat: float,
        lng: float,
        seq: Optional[int] = None,
    ) -> bool:
        return await self.publish(
            request_id,
            SLOT_LOCATION,
            provider_publisher(provider_id),
            seq if seq is not None else heartbeat_seq(),
            {"provider_id": str(provider_id), "lat": lat, "lng": lng},
        )

    async def snapshot(self, request_id: uuid.UUID) -> TrackingSnapshot:
        """Current merged view; empty slots when nothing was published."""
        redis = await self._redis_getter()
        raw = await redis.hgetall(_snapshot_key(request_id))

        sequences: dict[str, int] = {}
        slots: dict[str, Optional[dict[str, Any]]] = {SLOT_STATUS: None, SLOT_LOCATION: None}
        for name, value in (raw or {}).items():
            if isinstance(name, bytes):
                name = name.decode()
            if isinstance(value, bytes):
                value = value.decode()
            if name.startswith(_SEQ_FIELD_PREFIX):
                sequences[name[len(_SEQ_FIELD_PREFIX):]] = int(value)
            elif name in slots:
                try:
                    slots[name] = json.loads(value)
                except ValueError:
                    logger.warning(
                        "Malformed tracking slot %s for request %s", name, request_id
                    )

        return TrackingSnapshot(
            request_id=request_id,
            status=slots[SLOT_STATUS],
            location=slots[SLOT_LOCATION],
            sequences=sequences,
        )
