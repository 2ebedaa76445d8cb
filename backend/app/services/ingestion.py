"""
DoorCast Backend — Ingestion Pipeline (Business Logic Orchestrator)
=====================================================================

What:  Accepts a raw upload, validates it, commits it durably, and only then
       announces it to live viewers.
Why:   A viewer must never be told about an event that cannot be fetched,
       and the uploader must never wait on or fail because of a viewer.
How:   Composes EventStore and Broadcaster.
Who:   Called by POST /events and the legacy /ping and /upload routes.

Orchestration Flow:
    ┌──────────┐    ┌─────────────┐    ┌──────────────┐    ┌───────────┐
    │   Raw    │───▶│  Normalize  │───▶│    Commit    │───▶│  Publish  │
    │  upload  │    │ & validate  │    │ (EventStore) │    │ (enqueue) │
    └──────────┘    └─────────────┘    └──────────────┘    └───────────┘
                      400 on fail        500 on fail        never fails
                                                            the upload

    Commit and publish run in one shielded task: once validation passes,
    a client that disconnects mid-request neither retracts the commit nor
    suppresses its notification.
"""

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Set, Tuple

import magic
from pydantic import ValidationError as PydanticValidationError

from app.config import settings
from app.exceptions import FileStorageError, ValidationError
from app.schemas.event import (
    Event,
    EventKind,
    EventNotification,
    ImageDraft,
    event_draft_adapter,
)
from app.services.broadcaster import Broadcaster
from app.services.event_store import Draft, EventStore

logger = logging.getLogger(__name__)

# Room for form fields / JSON keys around the payload itself
_REQUEST_OVERHEAD = 64 * 1024

# Clients send the payload as base64 "data"
_CLIENT_FIELD_NAMES = {"payload": "data"}

# Declared types that say nothing about the image; the bytes decide instead
_GENERIC_CONTENT_TYPES = {"application/octet-stream", "binary/octet-stream"}

# Non-canonical names older clients send
_CONTENT_TYPE_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-png": "image/png",
}


@dataclass(frozen=True)
class RawUpload:
    """
    An upload as the transport delivered it, before any validation.

    Attributes:
        fields:            JSON object or multipart form fields
        file_content:      Bytes of a multipart file part, if any
        file_content_type: Content type the client declared for that part
        file_name:         File name the client sent with that part
        content_length:    Content-Length header of the request
    """

    fields: Mapping[str, Any] = field(default_factory=dict)
    file_content: Optional[bytes] = None
    file_content_type: Optional[str] = None
    file_name: Optional[str] = None
    content_length: Optional[int] = None


def max_request_size() -> int:
    """Largest acceptable request body: base64 inflates payloads by 4/3."""
    return settings.max_payload_size * 4 // 3 + _REQUEST_OVERHEAD


def decode_base64_payload(value: Any) -> Tuple[bytes, Optional[str]]:
    """
    Decode a base64 payload, plain or as a data: URI.

    Returns:
        (payload bytes, media type from the data: URI or None)
    Raises:
        ValidationError if the value is not valid base64.
    """
    if not isinstance(value, str):
        raise ValidationError(message="'data' must be a base64 string", field="data")

    media_type = None
    if value.startswith("data:"):
        header, sep, value = value[5:].partition(",")
        if not sep or not header.endswith(";base64"):
            raise ValidationError(message="'data' URI must be base64-encoded", field="data")
        media_type = header[: -len(";base64")] or None

    try:
        return base64.b64decode("".join(value.split()), validate=True), media_type
    except (binascii.Error, ValueError):
        raise ValidationError(message="'data' is not valid base64", field="data")


def normalize_content_type(value: str) -> str:
    """'Image/JPG; charset=binary' → 'image/jpeg'"""
    media = value.split(";", 1)[0].strip().lower()
    return _CONTENT_TYPE_ALIASES.get(media, media)


def detect_content_type(payload: bytes) -> str:
    """
    Content type of a payload, read from its bytes.

    What:    Uses magic bytes (file header) to determine the true type.
    Why:     A declared type or file name is whatever the client says it is;
             a PNG named porch.jpg is still a PNG.
    How:     python-magic matches the leading bytes against known signatures
             (e.g., JPEG starts with FF D8 FF).

    Raises:
        FileStorageError if libmagic itself fails.
    """
    try:
        detected = magic.from_buffer(payload, mime=True)
    except magic.MagicException as e:
        logger.error("MIME type detection failed: %s", str(e))
        raise FileStorageError(
            message="Could not verify file type. Please try again.",
            context={"error": str(e)},
        ) from e
    return normalize_content_type(detected)


class IngestionPipeline:
    """
    Upload → validate → commit → publish.

    Keeps track of commits still in flight so shutdown can wait for them.
    """

    def __init__(self, store: EventStore, broadcaster: Broadcaster):
        self._store = store
        self._broadcaster = broadcaster
        self._in_flight: Set[asyncio.Task] = set()

    # ── Validation ────────────────────────────────────────────────────────

    def validate(self, raw: RawUpload) -> Draft:
        """
        Normalize a raw upload into an EventDraft.

        Raises:
            ValidationError for anything the store must not see: unknown
            kind or field, payload on a button press, missing or bad image
            payload, disallowed content type, declared content type that
            disagrees with the bytes, oversized payload.
        """
        if raw.content_length is not None and raw.content_length > max_request_size():
            raise ValidationError(
                message="Request body is too large",
                field="data",
                context={"content_length": raw.content_length, "max_request_size": max_request_size()},
            )

        fields = dict(raw.fields)
        if "payload" in fields:
            raise ValidationError(
                message="Unknown field 'payload'; send the image as base64 'data' or as a file part",
                field="payload",
            )

        if "data" in fields:
            payload, media_type = decode_base64_payload(fields.pop("data"))
            fields["payload"] = payload
            if media_type and not _has_content_type(fields):
                fields["content_type"] = media_type

        if raw.file_content is not None:
            if "payload" in fields:
                raise ValidationError(
                    message="Send either a file part or base64 'data', not both",
                    field="file",
                )
            fields["payload"] = raw.file_content
            if raw.file_content_type and not _has_content_type(fields):
                fields["content_type"] = raw.file_content_type
            if raw.file_name and "filename" not in fields:
                fields["filename"] = raw.file_name

        payload = fields.get("payload")
        if fields.get("kind") == EventKind.IMAGE.value and isinstance(payload, bytes) and payload:
            self._check_size(payload)
            self._resolve_content_type(fields, payload)

        try:
            draft = event_draft_adapter.validate_python(fields)
        except PydanticValidationError as e:
            errors = e.errors(include_url=False, include_context=False, include_input=False)
            first = errors[0] if errors else {"loc": (), "msg": "invalid upload"}
            location = _client_location(first["loc"])
            raise ValidationError(
                message=f"{location}: {first['msg']}" if location else first["msg"],
                field=location or None,
                context={"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in errors]},
            ) from e

        if isinstance(draft, ImageDraft):
            self._check_image(draft)
        return draft

    @staticmethod
    def _check_size(payload: bytes) -> None:
        if len(payload) > settings.max_payload_size:
            max_mb = settings.max_payload_size / (1024 * 1024)
            raise ValidationError(
                message=f"Payload exceeds maximum of {max_mb:.1f}MB",
                field="data",
                context={"size": len(payload), "max_payload_size": settings.max_payload_size},
            )

    @staticmethod
    def _resolve_content_type(fields: Dict[str, Any], payload: bytes) -> None:
        """
        Settle an image's content type against its bytes.

        Missing or generic declaration → the detected type.
        Declaration that disagrees with the bytes → ValidationError.
        """
        declared = fields.get("content_type") or fields.get("contentType")
        if declared is not None and not isinstance(declared, str):
            # Left for the schema to reject
            return

        detected = detect_content_type(payload)
        fields.pop("contentType", None)
        if not declared or normalize_content_type(declared) in _GENERIC_CONTENT_TYPES:
            fields["content_type"] = detected
            return

        declared = normalize_content_type(declared)
        if declared != detected:
            raise ValidationError(
                message=f"Declared content type '{declared}' does not match the uploaded bytes ('{detected}')",
                field="content_type",
                context={"declared": declared, "detected": detected},
            )
        fields["content_type"] = declared

    def _check_image(self, draft: ImageDraft) -> None:
        allowed = settings.allowed_content_types_set
        if draft.content_type not in allowed:
            raise ValidationError(
                message=f"Content type '{draft.content_type}' is not supported",
                field="content_type",
                context={"allowed": sorted(allowed)},
            )
        self._check_size(draft.payload)

    # ── Ingest ────────────────────────────────────────────────────────────

    async def ingest(self, raw: RawUpload) -> Event:
        """
        Validate, commit and publish one upload.

        Returns:
            The committed event.
        Raises:
            ValidationError: rejected before touching the store
            StoreError:      commit failed; nothing was published
        """
        draft = self.validate(raw)
        task = asyncio.ensure_future(self._commit_and_publish(draft))
        self._in_flight.add(task)
        task.add_done_callback(self._task_done)
        return await asyncio.shield(task)

    async def _commit_and_publish(self, draft: Draft) -> Event:
        event = await self._store.commit(draft)
        self._publish(event)
        return event

    def _publish(self, event: Event) -> None:
        try:
            result = self._broadcaster.publish(EventNotification.from_event(event))
        except Exception:
            logger.exception("Broadcast of event %s failed", event.id)
            return
        logger.info(
            "Event %s announced to %d subscriber(s) (dropped=%d, removed=%d)",
            event.id,
            result.queued,
            result.dropped,
            result.removed,
        )

    def _task_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        if task.cancelled():
            return
        # Marks the exception retrieved when the requester went away
        error = task.exception()
        if error is not None:
            logger.debug("Ingestion task finished with %s", type(error).__name__)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def drain(self) -> None:
        """Wait for in-flight commits. Called at shutdown."""
        if not self._in_flight:
            return
        logger.info("Waiting for %d in-flight ingestion(s)", len(self._in_flight))
        await asyncio.gather(*list(self._in_flight), return_exceptions=True)


def _client_location(loc) -> str:
    """('image', 'payload') → 'data': drop the union tag, use client field names."""
    parts = [str(part) for part in loc]
    if parts and parts[0] in ("image", "button_press"):
        parts = parts[1:]
    return ".".join(_CLIENT_FIELD_NAMES.get(part, part) for part in parts)


def _has_content_type(fields: Mapping[str, Any]) -> bool:
    return bool(fields.get("content_type") or fields.get("contentType"))
