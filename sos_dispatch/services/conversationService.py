"""
SQL-backed conversation store.

Opens (or finds) the single client/provider conversation attached to an
emergency request.  Runs in its own session so a duplicate-key retry can
never disturb the caller's transaction.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sos_dispatch.models import Conversation

logger = logging.getLogger(__name__)


async def _find(
    session: AsyncSession,
    context_id: uuid.UUID,
    party_a: uuid.UUID,
    party_b: uuid.UUID,
) -> Optional[uuid.UUID]:
    result = await session.execute(
        select(Conversation.id).where(
            Conversation.context_id == context_id,
            Conversation.party_a_id == party_a,
            Conversation.party_b_id == party_b,
        )
    )
    return result.scalar_one_or_none()


class SqlConversationStore:
    """``ConversationStore`` port over the ``conversations`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_or_create(
        self, context_id: uuid.UUID, party_a: uuid.UUID, party_b: uuid.UUID
    ) -> uuid.UUID:
        async with self._session_factory() as session:
            existing = await _find(session, context_id, party_a, party_b)
            if existing is not None:
                return existing

            conversation = Conversation(
                context_id=context_id, party_a_id=party_a, party_b_id=party_b
            )
            session.add(conversation)
            try:
                await session.commit()
            except IntegrityError:
                # Another caller created it first
                await session.rollback()
                existing = await _find(session, context_id, party_a, party_b)
                if existing is None:
                    raise
                return existing

            logger.info(
                "Conversation %s opened for request %s (%s <-> %s)",
                conversation.id, context_id, party_a, party_b,
            )
            return conversation.id
