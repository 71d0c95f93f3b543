"""
Pending Request Sweeper -- Scheduled Job.

Runs every minute or so and looks after emergencies still waiting for the
client to pick an offer:

1. Reminds the client that their search is still active, at most once every
   ``pending_reminder_minutes``.
2. When ``offer_expiry_minutes`` is configured, system-cancels pending
   requests older than that and tells the offering providers.  Expiry is
   off by default: offers are collected until the client acts.

Usage with a simple cron runner::

    python -m sos_dispatch.jobs.pendingRequestSweeper
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, or_, select

from sos_dispatch.core.config import settings
from sos_dispatch.models import EmergencyRequest, EmergencyStatus
from sos_dispatch.services.errors import DispatchError
from sos_dispatch.services.requestLifecycle import RequestLifecycle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    reminded: int = 0
    expired: int = 0
    skipped: int = 0


async def run_sweep(
    lifecycle: RequestLifecycle,
    *,
    now: Optional[datetime] = None,
    reminder_minutes: Optional[int] = None,
    expiry_minutes: Optional[int] = None,
) -> SweepResult:
    """Execute one sweep over pending requests.

    Args:
        lifecycle: Lifecycle bound to the sweep's session.
        now: Reference time override (for testing).
        reminder_minutes: Override of ``pending_reminder_minutes``.
        expiry_minutes: Override of ``offer_expiry_minutes``; None disables expiry.

    Returns:
        Counts of reminded, expired and skipped requests.
    """
    now = now or datetime.now(timezone.utc)
    reminder_minutes = reminder_minutes or settings.pending_reminder_minutes
    if expiry_minutes is None:
        expiry_minutes = settings.offer_expiry_minutes

    db = lifecycle.db
    expired = 0
    skipped = 0

    # Step 1: expiry (optional)
    if expiry_minutes:
        expiry_cutoff = now - timedelta(minutes=expiry_minutes)
        rows = await db.execute(
            select(EmergencyRequest.id).where(
                EmergencyRequest.status == EmergencyStatus.PENDING,
                EmergencyRequest.created_at <= expiry_cutoff,
            )
        )
        for request_id in rows.scalars().all():
            try:
                await lifecycle.expire(request_id)
                expired += 1
            except DispatchError as exc:
                skipped += 1
                logger.info("Expiry skipped for request %s: %s", request_id, exc)

    # Step 2: "still searching" reminders
    reminder_cutoff = now - timedelta(minutes=reminder_minutes)
    rows = await db.execute(
        select(EmergencyRequest.id).where(
            EmergencyRequest.status == EmergencyStatus.PENDING,
            or_(
                and_(
                    EmergencyRequest.last_reminded_at.is_(None),
                    EmergencyRequest.created_at <= reminder_cutoff,
                ),
                EmergencyRequest.last_reminded_at <= reminder_cutoff,
            ),
        )
    )
    reminded = 0
    for request_id in rows.scalars().all():
        try:
            if await lifecycle.remind_pending(request_id):
                reminded += 1
            else:
                skipped += 1
        except DispatchError as exc:
            skipped += 1
            logger.info("Reminder skipped for request %s: %s", request_id, exc)

    logger.info(
        "Pending sweep completed: reminded=%d expired=%d skipped=%d",
        reminded, expired, skipped,
    )
    return SweepResult(reminded=reminded, expired=expired, skipped=skipped)


# ---------------------------------------------------------------------------
# CLI entry point (for manual runs / simple cron)
# ---------------------------------------------------------------------------

async def _cli_main() -> None:
    """Run one sweep with the production collaborators."""
    from sos_dispatch.api.deps import (
        async_session_factory,
        get_broadcaster,
        get_payment_hold,
        get_tracking,
    )
    from sos_dispatch.services.conversationService import SqlConversationStore
    from sos_dispatch.services.eligibilityResolver import EligibilityResolver
    from sos_dispatch.services.providerDirectory import SqlProviderDirectory

    broadcaster = get_broadcaster(async_session_factory)
    async with async_session_factory() as session:
        lifecycle = RequestLifecycle(
            session,
            resolver=EligibilityResolver(SqlProviderDirectory(session)),
            broadcaster=broadcaster,
            conversations=SqlConversationStore(async_session_factory),
            payments=get_payment_hold(),
            tracking=get_tracking(),
        )
        try:
            result = await run_sweep(lifecycle)
        except Exception:
            await session.rollback()
            logger.exception("Pending sweep failed")
            raise
    await broadcaster.drain()
    logger.info("Sweep result: %s", result)


if __name__ == "__main__":
    from sos_dispatch.core.logging_config import setup_logging

    setup_logging(settings.log_level, settings.log_json)
    asyncio.run(_cli_main())
