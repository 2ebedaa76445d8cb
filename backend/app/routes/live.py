"""
DoorCast Backend — Live Notification Channel
==============================================

What:  WS /events/live, the push channel for viewer apps.
Why:   Viewers learn about a ring or a new still as soon as it is committed,
       without polling GET /events.
How:   Each connection registers one Subscriber and runs two tasks:
         delivery: Broadcaster.run_delivery_loop → websocket.send_json
         receiver: reads client frames until the client goes away
       Whichever finishes first ends the connection.

Protocol:
    server → {"type": "connected", "data": {"connection_id": "..."}}   first frame
    server → {"type": "new_image" | "doorbell", "data": {...}, "timestamp": "..."}
    server → {"type": "ping", "timestamp": "..."}                      when idle
    client → "ping"   answered with {"type": "pong"} in channel order

    If the server drops a viewer (full channel or failed send), the socket
    is closed with 1013 (try again later); reconnecting and calling
    GET /events fills the gap.
"""

import asyncio
import logging
from datetime import datetime, timezone

import anyio
from fastapi import APIRouter, WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from app.config import settings
from app.dependencies import get_services
from app.exceptions import SubscriberDeliveryError
from app.services.registry import Subscriber

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Live"])

# RFC 6455 "Try Again Later"
CLOSE_TRY_AGAIN_LATER = 1013


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _receive_loop(websocket: WebSocket, subscriber: Subscriber) -> None:
    """Read client frames until disconnect; answer text pings via the channel."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        text = message.get("text")
        if text is None or text.strip().lower() != "ping":
            logger.debug("Ignoring client frame on %s", subscriber.connection_id)
            continue
        try:
            subscriber.offer({"type": "pong", "timestamp": _timestamp()})
        except SubscriberDeliveryError:
            return


@router.websocket("/events/live")
async def live_events(websocket: WebSocket) -> None:
    services = get_services(websocket)
    registry = services.registry

    await websocket.accept()
    subscriber = registry.register()
    subscriber.offer(
        {
            "type": "connected",
            "data": {"connection_id": subscriber.connection_id},
            "timestamp": _timestamp(),
        }
    )

    delivery = asyncio.create_task(
        services.broadcaster.run_delivery_loop(
            subscriber, websocket.send_json, settings.ws_heartbeat_interval
        )
    )
    receiver = asyncio.create_task(_receive_loop(websocket, subscriber))

    try:
        await asyncio.wait({delivery, receiver}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        # False when the server already removed this viewer (overflow, failed send)
        removed_by_server = not registry.unregister(subscriber.connection_id)
        for task in (delivery, receiver):
            task.cancel()
        # The server cancels this handler when the socket goes away; teardown still has to finish
        with anyio.CancelScope(shield=True):
            results = await asyncio.gather(delivery, receiver, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Live connection %s task failed: %r", subscriber.connection_id, result)

    if removed_by_server and websocket.application_state == WebSocketState.CONNECTED:
        try:
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
        except (RuntimeError, OSError, WebSocketDisconnect) as e:
            logger.debug("Close after removal of %s failed: %s", subscriber.connection_id, e)
    logger.info(
        "Live connection %s ended (%s)",
        subscriber.connection_id,
        "removed by server" if removed_by_server else "client disconnected",
    )
