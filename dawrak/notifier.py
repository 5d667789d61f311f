"""In-process change feed.

Store operations publish an event after every committed mutation; WebSocket
handlers subscribe and forward them. Events are hints to re-fetch state, not
state themselves: a subscriber that falls behind loses its oldest events and a
client that reconnects misses whatever was published in between.
"""

import asyncio
from dataclasses import dataclass, field
import itertools
import logging
import threading
from typing import Any, Optional

from .config import FEED_MAX_PENDING


logger = logging.getLogger(__name__)

QUEUE_UPDATED = "queue_updated"
TICKET_INSERTED = "ticket_inserted"
TICKET_UPDATED = "ticket_updated"


@dataclass(frozen=True)
class ChangeEvent:
    kind: str
    queue_id: int
    payload: dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> dict[str, Any]:
        return {"type": self.kind, "queue_id": self.queue_id, **self.payload}


class Subscription:
    """One subscriber's pending events, bound to the loop that created it."""

    def __init__(
        self,
        subscription_id: int,
        queue_id: Optional[int],
        loop: asyncio.AbstractEventLoop,
        max_pending: int,
    ) -> None:
        self.id = subscription_id
        self.queue_id = queue_id
        self.loop = loop
        self.dropped = 0
        self._events: asyncio.Queue = asyncio.Queue(maxsize=max_pending)

    def wants(self, event: ChangeEvent) -> bool:
        return self.queue_id is None or self.queue_id == event.queue_id

    def offer(self, event: ChangeEvent) -> None:
        # Runs on the subscriber's loop.
        if self._events.full():
            self._events.get_nowait()
            self.dropped += 1
            logger.warning(
                "Feed subscriber %s overflowed, dropped oldest event (%s dropped so far)",
                self.id,
                self.dropped,
            )
        self._events.put_nowait(event)

    async def get(self) -> ChangeEvent:
        return await self._events.get()

    def pending(self) -> int:
        return self._events.qsize()


class ChangeNotifier:
    def __init__(self, max_pending: int = FEED_MAX_PENDING) -> None:
        self.max_pending = max_pending
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscriptions: dict[int, Subscription] = {}

    def subscribe(self, queue_id: Optional[int] = None) -> Subscription:
        """Register a subscriber on the running event loop.

        ``queue_id`` limits the feed to one queue; ``None`` receives all.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            subscription = Subscription(next(self._ids), queue_id, loop, self.max_pending)
            self._subscriptions[subscription.id] = subscription
        logger.debug("Feed subscriber %s attached (queue=%s)", subscription.id, queue_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)
        logger.debug("Feed subscriber %s detached", subscription.id)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> None:
        """Deliver ``event`` to every interested subscriber. Safe from any thread."""
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.wants(event)]

        for subscription in targets:
            try:
                subscription.loop.call_soon_threadsafe(subscription.offer, event)
            except RuntimeError:
                logger.info("Feed subscriber %s loop is closed, detaching", subscription.id)
                self.unsubscribe(subscription)


notifier = ChangeNotifier()


def queue_event(queue) -> ChangeEvent:
    return ChangeEvent(
        QUEUE_UPDATED,
        queue.id,
        {
            "current_number": queue.current_number,
            "last_issued_number": queue.last_issued_number,
            "is_paused": queue.is_paused,
            "epoch": queue.epoch,
            "last_called_at": queue.last_called_at.isoformat() if queue.last_called_at else None,
        },
    )


def ticket_event(kind: str, ticket) -> ChangeEvent:
    return ChangeEvent(
        kind,
        ticket.queue_id,
        {
            "ticket_id": ticket.id,
            "ticket_number": ticket.ticket_number,
            "epoch": ticket.epoch,
            "status": ticket.status,
        },
    )
