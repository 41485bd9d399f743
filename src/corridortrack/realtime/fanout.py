"""Topic-based fan-out of tracking events to live subscribers.

The hub knows nothing about transports: anything with an async `send(event)` can subscribe.
WebSocket and SSE connections both wrap a `QueueSubscriber`, whose bounded queue is the only
per-subscriber buffering. Delivery is best-effort and at-most-once; there is no replay.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Iterable, Optional, Protocol

logger = logging.getLogger(__name__)

Event = dict[str, Any]

EVENT_LOCATION = "location"
EVENT_TRIP_START = "trip-start"
EVENT_TRIP_END = "trip-end"


def trip_topic(trip_id: str) -> str:
    return f"trip:{trip_id}"


def vehicle_topic(vehicle_ref: str) -> str:
    return f"vehicle:{vehicle_ref}"


def corridor_topic(corridor_key: str) -> str:
    return f"corridor:{corridor_key}"


class Subscriber(Protocol):
    async def send(self, event: Event) -> None:
        ...


_subscriber_ids = itertools.count(1)


class QueueSubscriber:
    """A subscriber backed by a bounded queue; the oldest event is dropped when it is full."""

    def __init__(self, maxsize: int = 100, name: Optional[str] = None) -> None:
        self.name = name or f"sub-{next(_subscriber_ids)}"
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max(1, int(maxsize)))
        self.dropped = 0

    async def send(self, event: Event) -> None:
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None if `timeout` elapses first."""

        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def __repr__(self) -> str:
        return f"QueueSubscriber({self.name!r})"


class FanoutHub:
    def __init__(self) -> None:
        self._members: dict[str, set[Subscriber]] = {}
        self._topics_by_subscriber: dict[Subscriber, set[str]] = {}

    def subscribe(self, subscriber: Subscriber, topic: str) -> None:
        self._members.setdefault(topic, set()).add(subscriber)
        self._topics_by_subscriber.setdefault(subscriber, set()).add(topic)
        logger.debug("%r joined %s", subscriber, topic)

    def unsubscribe(self, subscriber: Subscriber, topic: str) -> None:
        members = self._members.get(topic)
        if members is not None:
            members.discard(subscriber)
            if not members:
                del self._members[topic]
        topics = self._topics_by_subscriber.get(subscriber)
        if topics is not None:
            topics.discard(topic)
            if not topics:
                del self._topics_by_subscriber[subscriber]

    def unsubscribe_all(self, subscriber: Subscriber) -> None:
        for topic in list(self._topics_by_subscriber.get(subscriber, ())):
            self.unsubscribe(subscriber, topic)
        self._topics_by_subscriber.pop(subscriber, None)

    def topics_of(self, subscriber: Subscriber) -> set[str]:
        return set(self._topics_by_subscriber.get(subscriber, ()))

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is None:
            return len(self._topics_by_subscriber)
        return len(self._members.get(topic, ()))

    async def publish(self, topics: Iterable[str], event: Event) -> int:
        """Deliver `event` once to every subscriber of any of `topics`; returns the delivery count."""

        targets: list[Subscriber] = []
        seen: set[int] = set()
        for topic in topics:
            for subscriber in list(self._members.get(topic, ())):
                if id(subscriber) in seen:
                    continue
                seen.add(id(subscriber))
                targets.append(subscriber)
        if not targets:
            return 0

        results = await asyncio.gather(*(s.send(event) for s in targets), return_exceptions=True)
        delivered = 0
        for subscriber, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Dropping subscriber %r after send failure (%s).", subscriber, type(result).__name__
                )
                self.unsubscribe_all(subscriber)
                continue
            delivered += 1
        return delivered
