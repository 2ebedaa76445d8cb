"""
DoorCast Backend — Event Route Handlers
=========================================

What:  POST /events (ingest), GET /events (list), GET /events/{id} (detail),
       DELETE /admin/events (administrative wipe).
Why:   The HTTP surface for capture devices and viewer apps.
How:   Routes only translate HTTP to service calls; validation, commit and
       broadcast live in IngestionPipeline, reads in QueryService.
Who:   Doorbell firmware (POST), viewer apps (GET), operators (DELETE).

Upload Formats (POST /events):
    application/json     {"kind": "image", "data": "<base64>", "content_type": "image/jpeg", ...}
    multipart/form-data  kind, source_label, filename, content_type fields + "file" part

Caching Strategy:
    - GET /events:      no-cache (new events arrive at any time)
    - GET /events/{id}: events are immutable; private, max-age=3600, ETag = checksum (raw) or checksum-json
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Request, Response
from starlette.datastructures import UploadFile

from app.dependencies import get_pipeline, get_query_service, get_store
from app.exceptions import ValidationError
from app.schemas.event import (
    DeleteAllResponse,
    ErrorResponse,
    EventKind,
    EventMetadata,
    EventPage,
    EventResponse,
)
from app.services.event_store import EventStore
from app.services.ingestion import IngestionPipeline, RawUpload, max_request_size
from app.services.query_service import QueryService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Events"])

# Mounted only when ADMIN_ROUTES_ENABLED=true (see main.create_app)
admin_router = APIRouter(prefix="/admin", tags=["Admin"])

# Media ranges that select the raw payload over JSON
_RAW_RANGES = ("image/*", "application/octet-stream")
_JSON_RANGES = ("application/json", "application/*", "*/*")


# ── Request Parsing ───────────────────────────────────────────────────────


def declared_length(request: Request) -> Optional[int]:
    value = request.headers.get("content-length")
    if not value:
        return None
    try:
        length = int(value)
    except ValueError:
        raise ValidationError(message="Invalid Content-Length header", field="content-length")
    # Checked before the body is read into memory
    if length > max_request_size():
        raise ValidationError(
            message="Request body is too large",
            field="data",
            context={"content_length": length, "max_request_size": max_request_size()},
        )
    return length


async def read_json_object(request: Request) -> Dict[str, Any]:
    body = await request.body()
    try:
        data = json.loads(body) if body else None
    except ValueError:
        raise ValidationError(message="Request body is not valid JSON")
    if not isinstance(data, dict):
        raise ValidationError(message="Request body must be a JSON object")
    return data


async def read_raw_upload(request: Request) -> RawUpload:
    """Collect JSON or multipart input into a RawUpload without interpreting it."""
    content_length = declared_length(request)
    content_type = request.headers.get("content-type", "").lower()

    if not content_type.startswith("multipart/form-data"):
        return RawUpload(fields=await read_json_object(request), content_length=content_length)

    form = await request.form()
    try:
        fields: Dict[str, Any] = {}
        file_part: Optional[UploadFile] = None
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                if key != "file" or file_part is not None:
                    raise ValidationError(
                        message="Only one file part named 'file' is accepted",
                        field=key,
                    )
                file_part = value
            else:
                fields[key] = value

        if file_part is None:
            return RawUpload(fields=fields, content_length=content_length)
        return RawUpload(
            fields=fields,
            file_content=await file_part.read(),
            file_content_type=file_part.content_type,
            file_name=file_part.filename,
            content_length=content_length,
        )
    finally:
        await form.close()


def _parse_accept(header: str) -> List[Tuple[str, float]]:
    ranges = []
    for part in header.split(","):
        media, *params = [p.strip() for p in part.split(";")]
        if not media:
            continue
        quality = 1.0
        for param in params:
            if param.startswith("q="):
                try:
                    quality = float(param[2:])
                except ValueError:
                    quality = 0.0
        ranges.append((media.lower(), quality))
    return ranges


def prefers_raw(accept: Optional[str], content_type: Optional[str]) -> bool:
    """
    True when the Accept header ranks the payload's own type (or image/*,
    application/octet-stream) strictly above JSON. No Accept header → JSON.
    """
    if not accept or not content_type:
        return False
    raw_q = json_q = 0.0
    for media, quality in _parse_accept(accept):
        if media == content_type or media in _RAW_RANGES:
            raw_q = max(raw_q, quality)
        if media in _JSON_RANGES:
            json_q = max(json_q, quality)
    return raw_q > json_q


# ── Routes ────────────────────────────────────────────────────────────────


@router.post(
    "/events",
    status_code=201,
    response_model=EventMetadata,
    responses={
        201: {"description": "Event committed and announced", "model": EventMetadata},
        400: {"description": "Invalid upload", "model": ErrorResponse},
        429: {"description": "Rate limit exceeded", "model": ErrorResponse},
        500: {"description": "Event store failure", "model": ErrorResponse},
    },
    summary="Ingest an image or button press",
    description=(
        "Accepts a still image (base64 JSON or multipart) or a button press. "
        "The event is stored durably before any live viewer is notified."
    ),
)
async def create_event(
    request: Request,
    response: Response,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> EventMetadata:
    raw = await read_raw_upload(request)
    logger.info(
        "Received upload: kind=%s, size=%s bytes",
        raw.fields.get("kind", "?"),
        raw.content_length if raw.content_length is not None else "unknown",
    )
    event = await pipeline.ingest(raw)
    response.headers["Location"] = f"/events/{event.id}"
    return event.metadata()


@router.get(
    "/events",
    response_model=EventPage,
    responses={
        200: {"description": "Page of event metadata, newest first", "model": EventPage},
        400: {"description": "Invalid limit or cursor", "model": ErrorResponse},
        500: {"description": "Event store failure", "model": ErrorResponse},
    },
    summary="List recent events",
)
async def list_events(
    response: Response,
    limit: Optional[int] = Query(
        default=None,
        description="Page size. Defaults to LIST_DEFAULT_LIMIT; larger values are capped at LIST_MAX_LIMIT.",
    ),
    before: Optional[str] = Query(
        default=None,
        description="Event id (next_cursor of the previous page) or ISO-8601 timestamp.",
    ),
    kind: Optional[EventKind] = Query(default=None, description="Only events of this kind."),
    queries: QueryService = Depends(get_query_service),
) -> EventPage:
    page = await queries.list_recent(limit=limit, cursor=before, kind=kind)
    response.headers["X-Total-Count"] = str(page.total_count)
    response.headers["Cache-Control"] = "no-cache"
    return page


@router.get(
    "/events/{event_id}",
    response_model=EventResponse,
    responses={
        200: {
            "description": "Full event. JSON with base64 data, or the raw image when the Accept header asks for it.",
            "model": EventResponse,
            "content": {"image/*": {}, "application/octet-stream": {}},
        },
        404: {"description": "Event not found", "model": ErrorResponse},
        500: {"description": "Event store failure", "model": ErrorResponse},
    },
    summary="Get one event with its image",
)
async def get_event(
    event_id: str,
    request: Request,
    queries: QueryService = Depends(get_query_service),
):
    event = await queries.get_full(event_id)
    raw = event.payload is not None and prefers_raw(request.headers.get("accept"), event.content_type)

    headers = {"Cache-Control": "private, max-age=3600", "Vary": "Accept"}
    if event.checksum:
        # One tag per representation: the raw bytes and the JSON envelope differ
        headers["ETag"] = f'"{event.checksum}"' if raw else f'"{event.checksum}-json"'
        if request.headers.get("if-none-match") == headers["ETag"]:
            return Response(status_code=304, headers=headers)

    if raw:
        return Response(content=event.payload, media_type=event.content_type, headers=headers)

    body = EventResponse.from_event(event)
    return Response(
        content=body.model_dump_json(),
        media_type="application/json",
        headers=headers,
    )


@admin_router.delete(
    "/events",
    response_model=DeleteAllResponse,
    responses={500: {"description": "Event store failure", "model": ErrorResponse}},
    summary="Delete every stored event",
)
async def delete_all_events(store: EventStore = Depends(get_store)) -> DeleteAllResponse:
    deleted = await store.delete_all()
    return DeleteAllResponse(deleted=deleted)
