"""
DoorCast Backend — Broadcaster (Real-Time Fan-Out)
====================================================

What:  Turns a committed event into one live message and offers it to every
       active subscriber; drains each subscriber's channel to its socket.
Why:   The uploader must never wait on, or fail because of, a viewer. A slow
       or dead viewer must never delay the others.
How:   publish() is synchronous and only enqueues (put_nowait). Each
       subscriber has its own delivery task (run_delivery_loop) that owns
       the only await on the transport.
Who:   IngestionPipeline calls publish(); the WebSocket route runs one
       delivery loop per connection.

Overflow Policy (channel full):
    drop                 → the new message is dropped for that viewer only
    drop_and_disconnect  → dropped, and the viewer is unregistered (default)

    Either way the message is the one lost, never one already queued, so
    what a viewer does receive stays in publish order.

Message Format:
    {"type": "new_image" | "doorbell", "data": {...metadata...}, "timestamp": "..."}
    Heartbeats: {"type": "ping", "timestamp": "..."}
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from app.config import settings
from app.exceptions import SubscriberDeliveryError
from app.schemas.event import EventKind, EventNotification
from app.services.registry import Message, Subscriber, SubscriptionRegistry

logger = logging.getLogger(__name__)

# Socket event names used by existing viewer apps
MESSAGE_TYPES = {
    EventKind.IMAGE: "new_image",
    EventKind.BUTTON_PRESS: "doorbell",
}

OVERFLOW_DROP = "drop"
OVERFLOW_DROP_AND_DISCONNECT = "drop_and_disconnect"

Send = Callable[[Message], Awaitable[None]]


@dataclass(frozen=True)
class PublishResult:
    """Outcome of one publish() pass."""

    queued: int
    dropped: int
    removed: int


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class Broadcaster:
    """Fans notifications out through the SubscriptionRegistry."""

    def __init__(self, registry: SubscriptionRegistry, overflow_policy: Optional[str] = None):
        self._registry = registry
        self.overflow_policy = overflow_policy or settings.broadcast_overflow_policy
        if self.overflow_policy not in (OVERFLOW_DROP, OVERFLOW_DROP_AND_DISCONNECT):
            raise ValueError(f"Unknown overflow policy '{self.overflow_policy}'")

    @staticmethod
    def build_message(notification: EventNotification) -> Message:
        return {
            "type": MESSAGE_TYPES[notification.kind],
            "data": notification.model_dump(mode="json"),
            "timestamp": _timestamp(),
        }

    def publish(self, notification: EventNotification) -> PublishResult:
        """
        Offer one notification to every active subscriber. Never awaits.

        Subscribers that overflow (under drop_and_disconnect) are removed
        after the pass, so the snapshot being iterated is never mutated by
        this call.
        """
        message = self.build_message(notification)
        queued = 0
        overflowed: List[str] = []
        failed: List[str] = []

        def offer(subscriber: Subscriber) -> None:
            nonlocal queued
            try:
                accepted = subscriber.offer(message)
            except SubscriberDeliveryError:
                failed.append(subscriber.connection_id)
                raise
            if accepted:
                queued += 1
            else:
                overflowed.append(subscriber.connection_id)

        self._registry.for_each_active(offer)

        removed = len(failed)
        if overflowed:
            logger.warning(
                "Dropped %s for %d slow subscriber(s) (policy=%s)",
                message["type"],
                len(overflowed),
                self.overflow_policy,
            )
            if self.overflow_policy == OVERFLOW_DROP_AND_DISCONNECT:
                removed += sum(1 for cid in overflowed if self._registry.unregister(cid))

        logger.debug(
            "Published %s %s: queued=%d dropped=%d removed=%d",
            message["type"],
            notification.id,
            queued,
            len(overflowed),
            removed,
        )
        return PublishResult(queued=queued, dropped=len(overflowed), removed=removed)

    async def run_delivery_loop(
        self,
        subscriber: Subscriber,
        send: Send,
        heartbeat_interval: Optional[float] = None,
    ) -> None:
        """
        Drain one subscriber's channel to its transport, in FIFO order.

        Sends a heartbeat after `heartbeat_interval` seconds without traffic.
        Returns when the subscriber is closed or a send fails; a failed send
        unregisters the subscriber.
        """
        interval = heartbeat_interval or settings.ws_heartbeat_interval

        while subscriber.is_active:
            heartbeat = False
            try:
                message = await asyncio.wait_for(subscriber.next_message(), timeout=interval)
            except asyncio.TimeoutError:
                message = {"type": "ping", "timestamp": _timestamp()}
                heartbeat = True

            if message is None:
                return

            try:
                await send(message)
            except Exception as e:
                error = SubscriberDeliveryError(subscriber.connection_id, reason=str(e) or type(e).__name__)
                logger.warning("%s; removing subscriber", error.message)
                self._registry.unregister(subscriber.connection_id)
                return

            if not heartbeat:
                subscriber.delivered += 1
