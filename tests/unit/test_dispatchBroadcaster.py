"""
Unit tests for the Dispatch Broadcaster.

Covers background scheduling, retry with exponential backoff, dead-letter
recording, per-recipient isolation and the concurrency bound.
"""

import asyncio
import uuid
from unittest.mock import AsyncMock, patch

import pytest

from sos_dispatch.core.config import settings
from sos_dispatch.services.dispatchBroadcaster import DispatchBroadcaster
from sos_dispatch.services.ports import Notice
from tests.conftest import FakeDeadLetters, FakeSink

pytestmark = pytest.mark.asyncio


def _notice(user_id=None, kind="emergency_call"):
    return Notice(
        user_id=user_id or uuid.uuid4(),
        title="EMERGENCY CALL",
        message="Immediate response needed.",
        action_ref="/emergency/x/respond",
        kind=kind,
    )


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _broadcaster(sink, dead_letters, **kwargs):
    kwargs.setdefault("max_retries", 3)
    kwargs.setdefault("retry_base_delay_seconds", 0.5)
    kwargs.setdefault("sleep", RecordingSleep())
    return DispatchBroadcaster(sink, dead_letters, **kwargs)


class TestBroadcast:

    async def test_returns_before_delivery(self):
        sink = FakeSink()
        broadcaster = _broadcaster(sink, FakeDeadLetters())

        ticket = broadcaster.broadcast([_notice(), _notice()])

        assert ticket.recipient_count == 2
        assert sink.sent == []
        assert broadcaster.in_flight == 1

        await broadcaster.drain()
        assert len(sink.sent) == 2
        assert broadcaster.in_flight == 0

    async def test_empty_batch_schedules_nothing(self):
        broadcaster = _broadcaster(FakeSink(), FakeDeadLetters())
        ticket = broadcaster.broadcast([])
        assert ticket.task is None
        assert broadcaster.in_flight == 0
        report = await ticket.wait()
        assert report.success_count == 0

    async def test_ticket_reports_outcome(self):
        sink = FakeSink()
        bad = uuid.uuid4()
        sink.always_fail.add(bad)
        broadcaster = _broadcaster(sink, FakeDeadLetters())

        good = _notice()
        report = await broadcaster.broadcast([good, _notice(bad)]).wait()

        assert report.delivered == [good.user_id]
        assert report.dead_lettered == [bad]


class TestRetries:

    async def test_transient_failure_is_retried_with_backoff(self):
        sink = FakeSink()
        user = uuid.uuid4()
        sink.failures[user] = 2
        sleep = RecordingSleep()
        dead = FakeDeadLetters()
        broadcaster = _broadcaster(sink, dead, sleep=sleep)

        assert await broadcaster.deliver(_notice(user)) is True

        assert sink.attempts[user] == 3
        assert sleep.delays == [0.5, 1.0]
        assert dead.records == []

    async def test_exhausted_retries_are_dead_lettered(self):
        sink = FakeSink()
        user = uuid.uuid4()
        sink.always_fail.add(user)
        dead = FakeDeadLetters()
        broadcaster = _broadcaster(sink, dead)

        assert await broadcaster.deliver(_notice(user)) is False

        assert sink.attempts[user] == 3
        [(notice, attempts, error)] = dead.records
        assert notice.user_id == user
        assert attempts == 3
        assert "refused" in error

    async def test_dead_letter_failure_is_swallowed(self):
        sink = FakeSink()
        user = uuid.uuid4()
        sink.always_fail.add(user)
        dead = AsyncMock()
        dead.record.side_effect = RuntimeError("database down")
        broadcaster = _broadcaster(sink, dead)

        assert await broadcaster.deliver(_notice(user)) is False
        dead.record.assert_awaited_once()

    async def test_single_attempt_when_retries_is_one(self):
        sink = FakeSink()
        user = uuid.uuid4()
        sink.always_fail.add(user)
        sleep = RecordingSleep()
        broadcaster = _broadcaster(sink, FakeDeadLetters(), max_retries=1, sleep=sleep)

        await broadcaster.deliver(_notice(user))
        assert sink.attempts[user] == 1
        assert sleep.delays == []

    async def test_explicit_zero_retries_still_tries_once(self):
        sink = FakeSink()
        user = uuid.uuid4()
        sink.always_fail.add(user)
        sleep = RecordingSleep()
        broadcaster = _broadcaster(sink, FakeDeadLetters(), max_retries=0, sleep=sleep)

        await broadcaster.deliver(_notice(user))
        assert sink.attempts[user] == 1
        assert sleep.delays == []

    async def test_settings_default_applies_only_when_unset(self):
        sink = FakeSink()
        user = uuid.uuid4()
        sink.always_fail.add(user)
        with patch.object(settings, "notification_max_retries", 2):
            broadcaster = DispatchBroadcaster(
                sink, FakeDeadLetters(), retry_base_delay_seconds=0, sleep=RecordingSleep()
            )

        await broadcaster.deliver(_notice(user))
        assert sink.attempts[user] == 2


class TestIsolation:

    async def test_one_failing_recipient_does_not_affect_others(self):
        sink = FakeSink()
        bad = uuid.uuid4()
        sink.always_fail.add(bad)
        dead = FakeDeadLetters()
        broadcaster = _broadcaster(sink, dead)
        others = [_notice() for _ in range(4)]

        broadcaster.broadcast(others[:2] + [_notice(bad)] + others[2:])
        await broadcaster.drain()

        assert {s["user_id"] for s in sink.sent} == {n.user_id for n in others}
        assert [r[0].user_id for r in dead.records] == [bad]

    async def test_concurrency_is_bounded(self):
        active = 0
        peak = 0

        class SlowSink:
            async def notify(self, user_id, title, message, action_ref=None):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        broadcaster = DispatchBroadcaster(
            SlowSink(), FakeDeadLetters(), max_concurrency=2, max_retries=1
        )
        broadcaster.broadcast([_notice() for _ in range(8)])
        await broadcaster.drain()

        assert peak == 2

    async def test_bound_is_shared_across_broadcasts(self):
        active = 0
        peak = 0

        class SlowSink:
            async def notify(self, user_id, title, message, action_ref=None):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        broadcaster = DispatchBroadcaster(
            SlowSink(), FakeDeadLetters(), max_concurrency=3, max_retries=1
        )
        for _ in range(3):
            broadcaster.broadcast([_notice() for _ in range(3)])
        await broadcaster.drain()

        assert peak == 3

    async def test_zero_concurrency_is_rejected(self):
        with pytest.raises(ValueError):
            DispatchBroadcaster(FakeSink(), FakeDeadLetters(), max_concurrency=0)
