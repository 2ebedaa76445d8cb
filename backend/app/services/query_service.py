"""
DoorCast Backend — Query Service
==================================

What:  Read-only access to stored events for viewers.
Why:   Keeps HTTP handlers free of store details; the only place that turns
       a client-supplied id string into a UUID.
Who:   GET /events, GET /events/{id}, GET /images, GET /images/id/{id}.
"""

import logging
import uuid
from typing import List, Optional, Union

from app.config import settings
from app.exceptions import NotFoundError
from app.schemas.event import Event, EventKind, EventMetadata, EventPage
from app.services.event_store import EventStore

logger = logging.getLogger(__name__)


class QueryService:
    def __init__(self, store: EventStore):
        self._store = store

    async def list_recent(
        self,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
        kind: Optional[EventKind] = None,
    ) -> EventPage:
        """Metadata page, newest first. See EventStore.list for limit/cursor rules."""
        return await self._store.list(limit=limit, before=cursor, kind=kind)

    async def list_all(self, kind: Optional[EventKind] = None) -> List[EventMetadata]:
        """Every matching event, newest first, read one full page at a time."""
        events: List[EventMetadata] = []
        cursor: Optional[str] = None
        while True:
            page = await self._store.list(limit=settings.list_max_limit, before=cursor, kind=kind)
            events.extend(page.events)
            if not page.has_more or page.next_cursor is None:
                return events
            cursor = page.next_cursor

    async def get_full(self, event_id: Union[str, uuid.UUID]) -> Event:
        """
        Full event with payload.

        An id that is not a UUID cannot name any event, so it is reported
        as not found rather than as bad input.
        """
        if not isinstance(event_id, uuid.UUID):
            try:
                event_id = uuid.UUID(str(event_id))
            except ValueError:
                logger.debug("Rejected malformed event id %r", event_id)
                raise NotFoundError(resource="event", resource_id=str(event_id))
        return await self._store.get(event_id)
