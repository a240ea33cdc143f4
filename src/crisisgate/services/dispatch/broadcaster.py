"""
Event Broadcaster

Fans lifecycle and location change notifications out to live subscribers.
Delivery is best-effort with no durable queue: a subscriber connected after
an event misses it and reconciles by re-fetching from the repository.

Topics are the global feed, a specific crisis, or a specific SOS request.
Events are delivered to each subscriber in publish order.
"""

import asyncio
import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional

from crisisgate.models.entities import format_datetime, utcnow


GLOBAL_TOPIC = "global"


def crisis_topic(crisis_id: str) -> str:
    return f"crisis:{crisis_id}"


def sos_topic(request_id: str) -> str:
    return f"sos:{request_id}"


class EventKind(Enum):
    """Kinds of events published by the dispatch core"""
    REQUEST_CREATED = "requestCreated"
    STATUS_CHANGED = "statusChanged"
    ASSIGNED = "assigned"
    TEAM_LOCATION_UPDATED = "teamLocationUpdated"
    SHELTER_CAPACITY_UPDATED = "shelterCapacityUpdated"
    CRISIS_CREATED = "crisisCreated"
    CRISIS_UPDATED = "crisisUpdated"
    CRISIS_RESOLVED = "crisisResolved"


@dataclass(frozen=True)
class Event:
    """One published notification"""
    topic: str
    event_kind: EventKind
    entity_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'topic': self.topic,
            'eventKind': self.event_kind.value,
            'entityId': self.entity_id,
            'payload': self.payload,
            'timestamp': format_datetime(self.timestamp),
            'sequence': self.sequence
        }


class SubscriptionClosed(Exception):
    """Raised when reading from a subscription that has been unsubscribed"""
    pass


class Subscription:
    """
    Handle for one subscriber on one topic.

    Events are buffered in arrival order. Async consumers iterate with
    ``async for event in subscription``; sync consumers can ``drain()``.
    """

    _ids = itertools.count(1)

    def __init__(self, topic: str, max_queue_size: int = 0):
        self.id = next(self._ids)
        self.topic = topic
        self.max_queue_size = max_queue_size
        self.dropped = 0
        self.closed = False
        self._buffer: Deque[Event] = deque()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._waker: Optional[asyncio.Event] = None
        self.logger = logging.getLogger(__name__)

    def __repr__(self) -> str:
        return f"Subscription(id={self.id}, topic={self.topic!r}, pending={self.pending})"

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def deliver(self, event: Event) -> bool:
        """Buffer an event; safe to call from any thread"""
        with self._lock:
            if self.closed:
                return False
            if self.max_queue_size and len(self._buffer) >= self.max_queue_size:
                self._buffer.popleft()
                self.dropped += 1
                self.logger.warning(
                    f"Subscription {self.id} on {self.topic} is full, dropped oldest event"
                )
            self._buffer.append(event)
            self._wake()
        return True

    def close(self) -> None:
        with self._lock:
            self.closed = True
            self._wake()

    def _wake(self) -> None:
        """Wake an awaiting consumer (caller holds the lock)"""
        if self._waker is None or self._loop is None or self._loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._waker.set()
        else:
            self._loop.call_soon_threadsafe(self._waker.set)

    def drain(self) -> List[Event]:
        """Take every buffered event without waiting"""
        with self._lock:
            events = list(self._buffer)
            self._buffer.clear()
        return events

    def get_nowait(self) -> Optional[Event]:
        with self._lock:
            return self._buffer.popleft() if self._buffer else None

    async def get(self, timeout: Optional[float] = None) -> Event:
        """
        Wait for the next event.

        Raises:
            SubscriptionClosed: if the subscription was closed and is empty
            asyncio.TimeoutError: if no event arrived within timeout
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._loop is not loop:
                self._loop = loop
                self._waker = asyncio.Event()

        while True:
            with self._lock:
                if self._buffer:
                    return self._buffer.popleft()
                if self.closed:
                    raise SubscriptionClosed(f"Subscription {self.id} is closed")
                self._waker.clear()

            if timeout is None:
                await self._waker.wait()
            else:
                await asyncio.wait_for(self._waker.wait(), timeout)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration


class EventBroadcaster:
    """Concurrency-safe topic registry mapping topics to live subscriptions"""

    def __init__(self, max_queue_size: int = 0):
        self.max_queue_size = max_queue_size
        self._topics: Dict[str, Dict[int, Subscription]] = {}
        self._registry_lock = threading.Lock()
        self._publish_lock = threading.Lock()
        self._sequence = itertools.count(1)
        self.published_count = 0
        self.logger = logging.getLogger(__name__)

    def subscribe(self, topic: str) -> Subscription:
        """Open a subscription on a topic"""
        subscription = Subscription(topic, self.max_queue_size)
        with self._registry_lock:
            self._topics.setdefault(topic, {})[subscription.id] = subscription
        self.logger.debug(f"Subscription {subscription.id} opened on {topic}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Close a subscription; unsubscribing twice is a no-op"""
        with self._registry_lock:
            subscribers = self._topics.get(subscription.topic)
            if subscribers is not None:
                subscribers.pop(subscription.id, None)
                if not subscribers:
                    del self._topics[subscription.topic]
        subscription.close()

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        with self._registry_lock:
            if topic is not None:
                return len(self._topics.get(topic, {}))
            return sum(len(subs) for subs in self._topics.values())

    def publish(
        self,
        topic: str,
        event_kind: EventKind,
        entity_id: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> int:
        """
        Deliver an event to every live subscription on a topic.

        Returns:
            Number of subscriptions the event was delivered to
        """
        with self._publish_lock:
            with self._registry_lock:
                snapshot = list(self._topics.get(topic, {}).values())

            if not snapshot:
                return 0

            event = Event(
                topic=topic,
                event_kind=event_kind,
                entity_id=entity_id,
                payload=payload or {},
                sequence=next(self._sequence)
            )
            delivered = sum(1 for subscription in snapshot if subscription.deliver(event))
            self.published_count += 1

        self.logger.debug(f"Published {event_kind.value} for {entity_id} to {delivered} subscriber(s) on {topic}")
        return delivered

    def publish_many(
        self,
        topics: Iterable[str],
        event_kind: EventKind,
        entity_id: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> int:
        """Publish the same event on several topics, skipping duplicates"""
        delivered = 0
        seen = set()
        for topic in topics:
            if topic in seen:
                continue
            seen.add(topic)
            delivered += self.publish(topic, event_kind, entity_id, payload)
        return delivered

    def close(self) -> None:
        """Close every subscription"""
        with self._registry_lock:
            subscriptions = [s for subs in self._topics.values() for s in subs.values()]
            self._topics.clear()
        for subscription in subscriptions:
            subscription.close()
