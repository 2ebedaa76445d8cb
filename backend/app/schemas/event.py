"""
DoorCast Backend — Pydantic Event Schemas
===========================================

What:  Pydantic models for events, drafts, notifications and API responses.
Why:   Strict input validation (a draft is either an image or a button press,
       with exactly the fields that kind allows) and a single serialization
       path for HTTP responses and live notifications.
How:   Drafts form a discriminated union on `kind`; committed events and
       their metadata projections are frozen models built from ORM rows.
Who:   IngestionPipeline (drafts), EventStore (Event, EventPage),
       Broadcaster (EventNotification), route handlers (responses).

Design Decision:
    Schemas are separate from the SQLAlchemy model because the payload lives
    on disk, not in the row, and because list responses and notifications
    must never carry it.
"""

import base64
import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class EventKind(str, Enum):
    IMAGE = "image"
    BUTTON_PRESS = "button_press"


# ══════════════════════════════════════════════════════════════════════════
# Drafts: validated input, not yet committed
# ══════════════════════════════════════════════════════════════════════════


_DRAFT_CONFIG = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class ImageDraft(BaseModel):
    """
    What:  A validated still image waiting to be committed.
    Why extra="forbid": a misspelled field is a client bug worth a 400,
           not something to silently drop.

    Aliases accept the camelCase names older doorbell firmware sends
    (contentType, sourceLabel).
    """

    model_config = _DRAFT_CONFIG

    kind: Literal["image"] = "image"
    payload: bytes = Field(min_length=1, description="Raw image bytes")
    content_type: str = Field(alias="contentType", min_length=1, max_length=100)
    filename: Optional[str] = Field(default=None, max_length=255)
    source_label: Optional[str] = Field(default=None, alias="sourceLabel", max_length=128)

    @field_validator("content_type")
    @classmethod
    def normalize_content_type(cls, v: str) -> str:
        """'Image/JPEG; charset=binary' → 'image/jpeg'"""
        return v.split(";", 1)[0].strip().lower()


class ButtonPressDraft(BaseModel):
    """A doorbell ring without an image. Carries no payload."""

    model_config = _DRAFT_CONFIG

    kind: Literal["button_press"] = "button_press"
    source_label: Optional[str] = Field(default=None, alias="sourceLabel", max_length=128)


EventDraft = Annotated[Union[ImageDraft, ButtonPressDraft], Field(discriminator="kind")]

# Validates a plain dict into the right draft class in one call
event_draft_adapter: TypeAdapter = TypeAdapter(EventDraft)


# ══════════════════════════════════════════════════════════════════════════
# Committed Events
# ══════════════════════════════════════════════════════════════════════════


class EventMetadata(BaseModel):
    """
    What:  Payload-free projection of a committed event.
    Who:   List responses, ingest responses, notifications.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: uuid.UUID = Field(description="Event identifier (UUID)")
    kind: EventKind = Field(description="image or button_press")
    created_at: datetime = Field(description="Commit time (UTC ISO 8601)")
    source_label: Optional[str] = Field(default=None, description="Originator tag")
    filename: Optional[str] = Field(default=None, description="Original file name")
    content_type: Optional[str] = Field(default=None, description="Payload MIME type")
    size_bytes: int = Field(default=0, description="Payload length in bytes")


class Event(EventMetadata):
    """A committed event including its payload (images only) and checksum."""

    payload: Optional[bytes] = Field(default=None, repr=False)
    checksum: Optional[str] = Field(default=None, description="SHA-256 of the payload")

    def metadata(self) -> EventMetadata:
        return EventMetadata.model_validate(self.model_dump(include=set(EventMetadata.model_fields)))


class EventNotification(EventMetadata):
    """
    What:  The message body fanned out to live subscribers.
    Why a separate type: notifications are built only from committed events,
           so a subscriber can always fetch the event it was told about.
    """

    @classmethod
    def from_event(cls, event: Event) -> "EventNotification":
        return cls.model_validate(event.model_dump(include=set(EventMetadata.model_fields)))


class EventPage(BaseModel):
    """
    What:  One page of event metadata, newest first.

    Pagination strategy:
        Keyset on (created_at, id). next_cursor is the id of the last event
        on this page; passing it back as `before` returns the events that
        follow it in list order, even when new events arrive in between.
    """

    events: List[EventMetadata] = Field(description="Event metadata, newest first")
    total_count: int = Field(description="Total number of stored events")
    next_cursor: Optional[str] = Field(
        default=None,
        description="Cursor for the next page (event id). Null if no more pages.",
    )
    has_more: bool = Field(description="Whether more pages are available")


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class EventResponse(EventMetadata):
    """
    What:  Full event as JSON.
    Who:   GET /events/{id} (default representation) and GET /images/id/{id}.
    """

    checksum: Optional[str] = Field(default=None, description="SHA-256 of the payload")
    data: Optional[str] = Field(default=None, description="Base64-encoded payload")

    @classmethod
    def from_event(cls, event: Event) -> "EventResponse":
        fields = event.model_dump(include=set(EventMetadata.model_fields) | {"checksum"})
        if event.payload is not None:
            fields["data"] = base64.b64encode(event.payload).decode("ascii")
        return cls.model_validate(fields)


class LegacyAck(BaseModel):
    """Acknowledgement returned by POST /ping and POST /upload."""

    success: bool = True
    id: Optional[uuid.UUID] = None


class DeleteAllResponse(BaseModel):
    deleted: int = Field(description="Number of events removed")


class ErrorResponse(BaseModel):
    """
    What:  Standardized error response format for all API errors.

    Fields:
        error: Machine-readable error code (invalid_input, not_found, store_failure)
        message: Human-readable description
        details: Optional extra context (e.g., which field failed validation)
        request_id: Correlation ID for tracing this error in server logs
    """

    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    status: str = Field(description="Overall service status: healthy, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    live_subscribers: int = Field(description="Currently connected live viewers")
    uptime_seconds: float = Field(description="Seconds since service started")
