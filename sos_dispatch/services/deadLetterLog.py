"""
SQL-backed dead-letter log for notifications that exhausted their retries.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sos_dispatch.models import NotificationDeadLetter
from sos_dispatch.services.ports import Notice

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000


class SqlDeadLetterLog:
    """``DeadLetterLog`` port; every record is committed in its own session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, notice: Notice, attempts: int, error: str) -> None:
        async with self._session_factory() as session:
            session.add(
                NotificationDeadLetter(
                    user_id=notice.user_id,
                    request_id=notice.request_id,
                    kind=notice.kind,
                    title=notice.title,
                    message=notice.message,
                    action_ref=notice.action_ref,
                    attempts=attempts,
                    last_error=(error or "")[:_MAX_ERROR_LENGTH],
                )
            )
            await session.commit()
        logger.warning(
            "Dead-lettered %s notification for user %s after %d attempts",
            notice.kind, notice.user_id, attempts,
        )

    async def list_recent(self, limit: int = 100) -> list[NotificationDeadLetter]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(NotificationDeadLetter)
                .order_by(NotificationDeadLetter.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
