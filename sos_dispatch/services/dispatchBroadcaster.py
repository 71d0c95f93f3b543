"""
Dispatch Broadcaster
====================

Fans notifications out to their recipients without ever blocking or
failing the caller.

Delivery model:
  - ``broadcast()`` schedules one background ``asyncio.Task`` per call and
    returns a ``DispatchTicket`` immediately.
  - Inside the task every recipient is delivered concurrently, bounded by a
    semaphore shared across all broadcasts (``dispatch_max_concurrency``).
  - Each delivery is retried with exponential backoff
    (``notification_retry_base_delay_seconds * 2 ** (attempt - 1)``) up to
    ``notification_max_retries`` attempts.
  - A recipient whose attempts are exhausted is written to the dead-letter
    log.  One recipient's failure never affects another.
  - ``drain()`` awaits every in-flight task; it is called on shutdown and
    by tests.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Optional

from sos_dispatch.core.config import settings
from sos_dispatch.services.errors import DownstreamNotificationFailure
from sos_dispatch.services.ports import DeadLetterLog, Notice, NotificationSink

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class DeliveryReport:
    """Aggregate outcome of one fan-out."""
    delivered: list[uuid.UUID] = field(default_factory=list)
    dead_lettered: list[uuid.UUID] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.delivered)

    @property
    def failure_count(self) -> int:
        return len(self.dead_lettered)


@dataclass
class DispatchTicket:
    """Handle for a fan-out running in the background."""
    dispatch_id: uuid.UUID
    recipient_count: int
    request_id: Optional[uuid.UUID] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)

    async def wait(self) -> DeliveryReport:
        if self.task is None:
            return DeliveryReport()
        return await self.task


# ---------------------------------------------------------------------------
# Broadcaster
# ---------------------------------------------------------------------------

class DispatchBroadcaster:
    """Bounded, retrying, dead-lettering notification fan-out."""

    def __init__(
        self,
        sink: NotificationSink,
        dead_letters: DeadLetterLog,
        *,
        max_concurrency: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_base_delay_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._sink = sink
        self._dead_letters = dead_letters
        if max_retries is None:
            max_retries = settings.notification_max_retries
        self._max_retries = max(1, max_retries)
        self._base_delay = (
            retry_base_delay_seconds
            if retry_base_delay_seconds is not None
            else settings.notification_retry_base_delay_seconds
        )
        if max_concurrency is None:
            max_concurrency = settings.dispatch_max_concurrency
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    # -- public -------------------------------------------------------------

    def broadcast(
        self,
        notices: Iterable[Notice],
        *,
        request_id: Optional[uuid.UUID] = None,
    ) -> DispatchTicket:
        """Start delivering ``notices`` in the background.

        Must be called from within a running event loop.  Never raises for
        delivery problems and never waits for delivery.
        """
        batch = list(notices)
        ticket = DispatchTicket(
            dispatch_id=uuid.uuid4(),
            recipient_count=len(batch),
            request_id=request_id,
        )
        if not batch:
            logger.debug("Broadcast %s: no recipients", ticket.dispatch_id)
            return ticket

        task = asyncio.create_task(
            self._fan_out(ticket.dispatch_id, batch),
            name=f"dispatch-{ticket.dispatch_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        ticket.task = task

        logger.info(
            "Broadcast %s scheduled: %d recipients (request %s)",
            ticket.dispatch_id, len(batch), request_id,
        )
        return ticket

    async def deliver(self, notice: Notice) -> bool:
        """Deliver one notice with retries; dead-letter it on exhaustion.

        Returns True when the sink accepted the notice.
        """
        last_exc: Exception | None = None

        for attempt in range(1, self._max_retries + 1):
            try:
                await self._sink.notify(
                    notice.user_id, notice.title, notice.message, notice.action_ref
                )
                logger.info(
                    "Notification %s delivered to %s (attempt %d/%d)",
                    notice.kind, notice.user_id, attempt, self._max_retries,
                )
                return True
            except Exception as exc:
                last_exc = exc
                if attempt < self._max_retries:
                    delay = self._base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "Notification %s to %s failed (attempt %d/%d), "
                        "retrying in %.2fs: %s",
                        notice.kind, notice.user_id, attempt, self._max_retries,
                        delay, exc,
                    )
                    await self._sleep(delay)
                    continue

        failure = DownstreamNotificationFailure(
            notice.user_id, self._max_retries, last_exc or RuntimeError("unknown")
        )
        logger.error("%s", failure, extra={"request_id": notice.request_id})
        await self._record_dead_letter(notice, str(last_exc))
        return False

    async def drain(self) -> None:
        """Wait for every in-flight fan-out to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # -- internals ----------------------------------------------------------

    async def _deliver_bounded(self, notice: Notice) -> bool:
        async with self._semaphore:
            return await self.deliver(notice)

    async def _fan_out(self, dispatch_id: uuid.UUID, batch: list[Notice]) -> DeliveryReport:
        outcomes = await asyncio.gather(
            *(self._deliver_bounded(n) for n in batch),
            return_exceptions=True,
        )

        report = DeliveryReport()
        for notice, outcome in zip(batch, outcomes):
            if outcome is True:
                report.delivered.append(notice.user_id)
            else:
                if isinstance(outcome, BaseException):
                    logger.error(
                        "Broadcast %s: unexpected error delivering to %s: %s",
                        dispatch_id, notice.user_id, outcome,
                    )
                report.dead_lettered.append(notice.user_id)

        logger.info(
            "Broadcast %s finished: %d delivered, %d dead-lettered",
            dispatch_id, report.success_count, report.failure_count,
        )
        return report

    async def _record_dead_letter(self, notice: Notice, error: str) -> None:
        try:
            await self._dead_letters.record(notice, self._max_retries, error)
        except Exception:
            logger.exception(
                "Could not write dead letter for %s to %s", notice.kind, notice.user_id
            )
