"""
Progress channel: per-plan publish/subscribe of lifecycle events.

WHY THIS FILE EXISTS:
--------------------
A plan can take a while (network calls, SMTP). Whoever started it, a CLI,
an MCP client or a test, wants to see each step start and finish as it
happens. The engine publishes events here; observers subscribe by plan id.

    channel = ProgressChannel()
    async with channel.subscribe(plan.id) as sub:
        async for event in sub:
            print(event.kind)

DELIVERY RULES:
--------------
- Events for one plan reach each subscriber in publish order.
- Publishing never blocks. Each subscriber has a bounded queue; when it is
  full the event is dropped for that subscriber only and counted in
  ``Subscription.dropped``. A slow observer can never stall the engine or
  another observer.
- The terminal event (PlanCompleted / PlanFailed) is always delivered: if the
  queue is full, the oldest queued event is dropped to make room.
- No replay. Subscribing after an event was published means missing it.
  ``ExecutionEngine.watch`` covers the common case by sending a snapshot of
  the running plan first.
- Nothing here is persisted.
"""

import asyncio
import logging
from collections import defaultdict
from typing import AsyncIterator, Optional

from schemas import ProgressEvent

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256
DEFAULT_WATCH_TIMEOUT = 30.0

_CLOSED = object()


class Subscription:
    """
    One observer's view of one plan's events.

    Iterate it with ``async for``; iteration ends after the terminal event
    or when the subscription is closed. Use it as an async context manager
    so it always unsubscribes.
    """

    def __init__(self, channel: "ProgressChannel", plan_id: str, queue_size: int):
        self.plan_id = plan_id
        self.dropped = 0
        self.timed_out = False
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(queue_size, 1))
        self._closed = False
        self._finished = False
        self._draining = False

    @property
    def closed(self) -> bool:
        return self._closed or self._finished

    def _offer(self, event: ProgressEvent) -> bool:
        """Queue an event without blocking. Returns False if it was dropped."""
        if self.closed or self._draining:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            pass

        if event.is_terminal:
            # Make room: losing an intermediate event beats never finishing
            self._queue.get_nowait()
            self._queue.put_nowait(event)
            self.dropped += 1
            return True

        self.dropped += 1
        logger.debug(f"Subscriber queue full for plan {self.plan_id}, dropped {event.kind}")
        return False

    async def next(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """
        Wait for the next event.

        Returns:
            The event, or None if the subscription is over or ``timeout``
            seconds passed with nothing to deliver
        """
        if self.closed:
            return None
        if self._draining and self._queue.empty():
            self._finished = True
            return None
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            self.timed_out = True
            return None

        if item is _CLOSED:
            self._finished = True
            return None
        if item.is_terminal:
            self._finished = True
            self._channel.unsubscribe(self)
        return item

    async def events(self, timeout: float = DEFAULT_WATCH_TIMEOUT) -> AsyncIterator[ProgressEvent]:
        """
        Yield events until the plan finishes or nothing arrives for ``timeout`` seconds.

        Giving up only abandons this observer; the plan keeps running.
        """
        try:
            while True:
                event = await self.next(timeout=timeout)
                if event is None:
                    if self.timed_out:
                        logger.info(f"Stopped watching plan {self.plan_id} after {timeout}s without events")
                    return
                yield event
        finally:
            self.close()

    def finish(self) -> None:
        """End iteration once the events already queued have been read."""
        if self._draining or self.closed:
            return
        self._draining = True
        self._channel.unsubscribe(self)
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    def close(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._channel.unsubscribe(self)
        try:
            # Wake a consumer blocked in next()
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        event = await self.next()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class ProgressChannel:
    """
    Registry of subscriptions keyed by plan id.

    One channel is shared by an engine and everyone watching its plans. It
    is meant to be used from a single event loop.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)

    def subscribe(
        self,
        plan_id: str,
        initial: Optional[ProgressEvent] = None
    ) -> Subscription:
        """
        Start observing a plan.

        Args:
            plan_id: Plan to observe
            initial: Optional event queued ahead of everything published
                from now on (used for the running-plan snapshot)
        """
        sub = Subscription(self, plan_id, self.queue_size)
        if initial is not None:
            sub._offer(initial)
        self._subscribers[plan_id].append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.plan_id)
        if not subs:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            del self._subscribers[sub.plan_id]

    def publish(self, event: ProgressEvent) -> int:
        """
        Fan an event out to the plan's subscribers without blocking.

        Returns:
            Number of subscribers that received it
        """
        subs = list(self._subscribers.get(event.plan_id, []))
        delivered = sum(1 for sub in subs if sub._offer(event))
        if event.is_terminal:
            # Nothing follows a terminal event
            self._subscribers.pop(event.plan_id, None)
        return delivered

    def subscriber_count(self, plan_id: str) -> int:
        return len(self._subscribers.get(plan_id, []))
