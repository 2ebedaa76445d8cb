"""
DoorCast Backend — Subscription Registry
==========================================

What:  The set of currently connected live viewers and their private,
       bounded delivery channels.
Why:   Connection lifecycle (register/unregister) and the Broadcaster touch
       the same map concurrently; this module is the only owner of it.
How:   A dict guarded by a threading.Lock. Iteration works on a snapshot
       taken under the lock, so registering or removing a viewer during a
       broadcast never disturbs the pass in progress.
Who:   WebSocket route (register/unregister), Broadcaster (for_each_active),
       lifespan (close_all), health route (active_count).

Subscriber Lifecycle:
    active ──unregister()──▶ closing ──channel closed──▶ closed

    Only `active` subscribers are in the map. Removal happens exactly once;
    a second unregister() is a no-op returning False.
"""

import asyncio
import logging
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from app.config import settings
from app.exceptions import SubscriberDeliveryError

logger = logging.getLogger(__name__)

Message = Dict[str, Any]

# Queued behind pending messages to wake a waiting delivery loop on close
_CLOSE_SENTINEL = object()


class SubscriberState(str, Enum):
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class Subscriber:
    """
    One live viewer.

    Attributes:
        connection_id: Opaque hex id, unique for the connection's lifetime
        state:         active → closing → closed
        delivered:     Messages handed to the transport
        dropped:       Messages refused because the channel was full
    """

    def __init__(self, connection_id: str, queue_size: int):
        self.connection_id = connection_id
        self.state = SubscriberState.ACTIVE
        self.connected_at = datetime.now(timezone.utc)
        self.delivered = 0
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

    @property
    def is_active(self) -> bool:
        return self.state is SubscriberState.ACTIVE

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, message: Message) -> bool:
        """
        Enqueue without waiting.

        Returns:
            True if queued, False if the channel is full (message dropped).
        Raises:
            SubscriberDeliveryError if the subscriber is no longer active.
        """
        if not self.is_active:
            raise SubscriberDeliveryError(self.connection_id, reason="channel closed")
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    async def next_message(self) -> Optional[Message]:
        """Next message in FIFO order, or None once the channel is closed."""
        item = await self._queue.get()
        if item is _CLOSE_SENTINEL or not self.is_active:
            return None
        return item

    def close(self) -> None:
        """Mark closed and wake the delivery loop. Idempotent."""
        if self.state is SubscriberState.CLOSED:
            return
        self.state = SubscriberState.CLOSED
        # Pending messages are discarded anyway once closed; make room for the sentinel
        while True:
            try:
                self._queue.put_nowait(_CLOSE_SENTINEL)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass

    def __repr__(self) -> str:
        return f"<Subscriber(id={self.connection_id}, state={self.state.value}, pending={self.pending})>"


class SubscriptionRegistry:
    """Thread-safe map of connection_id → active Subscriber."""

    def __init__(self, queue_size: Optional[int] = None):
        self._queue_size = queue_size or settings.subscriber_queue_size
        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = threading.Lock()

    def register(self) -> Subscriber:
        subscriber = Subscriber(uuid.uuid4().hex, self._queue_size)
        with self._lock:
            self._subscribers[subscriber.connection_id] = subscriber
            total = len(self._subscribers)
        logger.info("Subscriber registered: %s (active=%d)", subscriber.connection_id, total)
        return subscriber

    def unregister(self, connection_id: str) -> bool:
        """
        Remove a subscriber and close its channel.

        Returns:
            True if it was removed by this call, False if it was already gone.
        """
        with self._lock:
            subscriber = self._subscribers.pop(connection_id, None)
            if subscriber is None:
                return False
            subscriber.state = SubscriberState.CLOSING
            total = len(self._subscribers)
        subscriber.close()
        logger.info(
            "Subscriber unregistered: %s (delivered=%d, dropped=%d, active=%d)",
            connection_id,
            subscriber.delivered,
            subscriber.dropped,
            total,
        )
        return True

    def for_each_active(self, fn: Callable[[Subscriber], Any]) -> int:
        """
        Call fn(subscriber) for every active subscriber in a snapshot.

        An exception from fn isolates that one subscriber: it is logged and
        the subscriber is unregistered; the pass continues with the rest.

        Returns:
            Number of subscribers fn completed for.
        """
        with self._lock:
            snapshot = list(self._subscribers.values())

        completed = 0
        for subscriber in snapshot:
            if not subscriber.is_active:
                continue
            try:
                fn(subscriber)
            except SubscriberDeliveryError as e:
                logger.warning("%s; removing subscriber", e.message)
                self.unregister(subscriber.connection_id)
                continue
            except Exception:
                logger.exception("Delivery to subscriber %s failed", subscriber.connection_id)
                self.unregister(subscriber.connection_id)
                continue
            completed += 1
        return completed

    def get(self, connection_id: str) -> Optional[Subscriber]:
        with self._lock:
            return self._subscribers.get(connection_id)

    def active_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close_all(self) -> int:
        """Shutdown: unregister every subscriber. Returns how many were removed."""
        with self._lock:
            connection_ids = list(self._subscribers)
        removed = sum(1 for cid in connection_ids if self.unregister(cid))
        if removed:
            logger.info("Closed %d live subscriber(s)", removed)
        return removed
