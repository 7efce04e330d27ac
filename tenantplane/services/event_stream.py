from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantplane.core.errors import SubscriberOverflowError
from tenantplane.domain.events import ProvisioningEventView
from tenantplane.persistence.repos import events as events_repo
from tenantplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Heartbeat:
    # Yielded when a followed stream has been idle for one poll interval.
    at: datetime


@dataclass(eq=False)
class _Subscriber:
    tenant_id: str
    queue: asyncio.Queue[ProvisioningEventView]
    overflowed: bool = False
    wake: asyncio.Event = field(default_factory=asyncio.Event)


class EventStreamPublisher:
    """Ordered per-tenant event fan-out with replay from the persisted log.

    Live delivery is in-process only. Subscribers re-read storage when idle
    and whenever they see a sequence gap, so events committed by other
    processes still arrive, in order, exactly once per subscriber.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        buffer_size: int = 256,
        idle_poll_s: float = 15.0,
        page_size: int = 1000,
    ) -> None:
        self._session_factory = session_factory
        self._buffer_size = max(1, buffer_size)
        self._idle_poll_s = idle_poll_s
        self._page_size = max(1, page_size)
        self._subscribers: dict[str, set[_Subscriber]] = defaultdict(set)

    def subscriber_count(self, tenant_id: str) -> int:
        return len(self._subscribers.get(tenant_id, ()))

    async def publish(
        self,
        tenant_id: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
    ) -> ProvisioningEventView:
        # Standalone events get their own transaction; transitions use notify() after commit.
        async with self._session_factory() as session:
            view = await events_repo.append_event(session, tenant_id, event_type=event_type, payload=payload)
            await session.commit()
        self.notify(view)
        return view

    def notify(self, *events: ProvisioningEventView) -> None:
        # Never blocks: a subscriber with a full buffer is cut off instead of slowing publishers.
        for event in sorted(events, key=lambda item: item.sequence_number):
            for subscriber in list(self._subscribers.get(event.tenant_id, ())):
                try:
                    subscriber.queue.put_nowait(event)
                except asyncio.QueueFull:
                    subscriber.overflowed = True
                    subscriber.wake.set()
                    self._unregister(subscriber)
                    increment_counter("event_subscriber_overflow_total")
                    logger.warning(
                        "event_subscriber_overflow tenant_id=%s buffer=%s", event.tenant_id, self._buffer_size
                    )

    def _register(self, tenant_id: str) -> _Subscriber:
        subscriber = _Subscriber(tenant_id=tenant_id, queue=asyncio.Queue(maxsize=self._buffer_size))
        self._subscribers[tenant_id].add(subscriber)
        return subscriber

    def _unregister(self, subscriber: _Subscriber) -> None:
        subscribers = self._subscribers.get(subscriber.tenant_id)
        if subscribers is None:
            return
        subscribers.discard(subscriber)
        if not subscribers:
            self._subscribers.pop(subscriber.tenant_id, None)

    async def _stored(
        self, tenant_id: str, from_sequence: int, to_sequence: int | None = None
    ) -> AsyncIterator[ProvisioningEventView]:
        # Pages until the range is exhausted; no session is held while the caller consumes.
        next_sequence = from_sequence
        while True:
            async with self._session_factory() as session:
                page = await events_repo.list_events(
                    session,
                    tenant_id,
                    from_sequence=next_sequence,
                    to_sequence=to_sequence,
                    limit=self._page_size,
                )
            for event in page:
                yield event
            if len(page) < self._page_size:
                return
            next_sequence = page[-1].sequence_number + 1

    async def _next_live(self, subscriber: _Subscriber) -> ProvisioningEventView | None:
        # Returns None on idle timeout or overflow so the caller can re-check state.
        if not subscriber.queue.empty():
            return subscriber.queue.get_nowait()
        getter = asyncio.ensure_future(subscriber.queue.get())
        waker = asyncio.ensure_future(subscriber.wake.wait())
        try:
            done, _ = await asyncio.wait({getter, waker}, timeout=self._idle_poll_s, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waker.cancel()
            if not getter.done():
                getter.cancel()
        if getter in done and not getter.cancelled():
            return getter.result()
        return None

    async def subscribe(
        self,
        tenant_id: str,
        from_sequence: int = 0,
        *,
        follow: bool = True,
    ) -> AsyncIterator[ProvisioningEventView | Heartbeat]:
        # Register before replaying so nothing committed during the replay query is missed.
        subscriber = self._register(tenant_id)
        last_sequence = max(from_sequence, 0) - 1
        try:
            async for event in self._stored(tenant_id, last_sequence + 1):
                yield event
                last_sequence = event.sequence_number
            if not follow:
                return
            while True:
                if subscriber.overflowed:
                    raise SubscriberOverflowError(
                        f"subscriber for tenant {tenant_id} fell behind after sequence {last_sequence}",
                        details={"last_sequence": last_sequence},
                    )
                event = await self._next_live(subscriber)
                if event is None:
                    if subscriber.overflowed:
                        continue
                    # Idle: pick up anything written by other processes, then heartbeat.
                    async for stored in self._stored(tenant_id, last_sequence + 1):
                        yield stored
                        last_sequence = stored.sequence_number
                    yield Heartbeat(at=datetime.now(timezone.utc))
                    continue
                if event.sequence_number <= last_sequence:
                    continue
                if event.sequence_number > last_sequence + 1:
                    # Back-fill a gap from storage so delivery stays contiguous.
                    async for stored in self._stored(tenant_id, last_sequence + 1, event.sequence_number - 1):
                        yield stored
                        last_sequence = stored.sequence_number
                yield event
                last_sequence = event.sequence_number
        finally:
            self._unregister(subscriber)
