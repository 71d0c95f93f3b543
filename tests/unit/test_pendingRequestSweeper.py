"""
Unit tests for the pending request sweeper job.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from sos_dispatch.jobs.pendingRequestSweeper import run_sweep
from sos_dispatch.models import EmergencyStatus
from tests.conftest import seed_request

pytestmark = pytest.mark.asyncio

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


async def _request_aged(db, minutes, **kwargs):
    request = await seed_request(db, **kwargs)
    request.created_at = NOW - timedelta(minutes=minutes)
    await db.flush()
    return request


class TestReminders:

    async def test_only_old_pending_requests_are_reminded(
        self, lifecycle, db, broadcaster, sink
    ):
        old = await _request_aged(db, 10)
        fresh = await _request_aged(db, 1)
        await _request_aged(
            db, 10, status=EmergencyStatus.ACCEPTED, provider_id=uuid.uuid4()
        )
        await db.commit()

        result = await run_sweep(lifecycle, now=NOW, reminder_minutes=5, expiry_minutes=None)
        await broadcaster.drain()

        assert result.reminded == 1
        assert result.expired == 0
        assert sink.titles_for(old.client_id) == ["Still searching"]
        assert sink.titles_for(fresh.client_id) == []

    async def test_recent_reminder_is_not_repeated(self, lifecycle, db):
        request = await _request_aged(db, 30)
        request.last_reminded_at = NOW - timedelta(minutes=2)
        await db.commit()

        result = await run_sweep(lifecycle, now=NOW, reminder_minutes=5, expiry_minutes=None)
        assert result.reminded == 0

    async def test_stale_reminder_is_repeated(self, lifecycle, db):
        request = await _request_aged(db, 30)
        request.last_reminded_at = NOW - timedelta(minutes=6)
        await db.commit()

        result = await run_sweep(lifecycle, now=NOW, reminder_minutes=5, expiry_minutes=None)
        assert result.reminded == 1


class TestExpiry:

    async def test_disabled_by_default(self, lifecycle, db):
        request = await _request_aged(db, 24 * 60)
        await db.commit()

        result = await run_sweep(lifecycle, now=NOW, reminder_minutes=5)

        assert result.expired == 0
        assert (await lifecycle.get(request.id)).status == EmergencyStatus.PENDING

    async def test_old_requests_expire_when_enabled(self, lifecycle, db, broadcaster, sink):
        expired = await _request_aged(db, 45)
        waiting = await _request_aged(db, 10)
        await db.commit()

        result = await run_sweep(lifecycle, now=NOW, reminder_minutes=5, expiry_minutes=30)
        await broadcaster.drain()

        assert result.expired == 1
        assert result.reminded == 1
        assert (await lifecycle.get(expired.id)).status == EmergencyStatus.CANCELLED
        assert (await lifecycle.get(waiting.id)).status == EmergencyStatus.PENDING
        assert sink.titles_for(expired.client_id) == ["Emergency request expired"]
