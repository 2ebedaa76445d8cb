"""
DoorCast Backend — Legacy Doorbell Routes
===========================================

What:  The paths deployed doorbell firmware and viewer apps already call:
       POST /ping, POST /upload, GET /images, GET /images/id/{id}.
Why:   Devices in the field are not reflashed when the server changes.
How:   Thin adapters onto the same IngestionPipeline and QueryService as
       /events, so legacy uploads are stored and announced exactly like
       new ones (durable commit first, then the live notification).

Mapping:
    POST /ping            → button_press event            → {"success": true, "id": ...}
    POST /upload          → image event (base64 JSON)     → {"success": true, "id": ...}
    GET  /images          → image metadata, newest first (all of them unless ?limit=)
    GET  /images/id/{id}  → full event JSON, base64 data
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from app.dependencies import get_pipeline, get_query_service
from app.exceptions import ValidationError
from app.routes.events import declared_length, read_json_object
from app.schemas.event import ErrorResponse, EventKind, EventMetadata, EventResponse, LegacyAck
from app.services.ingestion import IngestionPipeline, RawUpload
from app.services.query_service import QueryService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Legacy"])

# Fields /upload forwards; anything else older firmware sends is ignored
_UPLOAD_FIELDS = ("filename", "data", "contentType", "content_type", "sourceLabel", "source_label")


@router.post(
    "/ping",
    response_model=LegacyAck,
    responses={500: {"description": "Event store failure", "model": ErrorResponse}},
    summary="Doorbell button pressed",
)
async def ping(pipeline: IngestionPipeline = Depends(get_pipeline)) -> LegacyAck:
    event = await pipeline.ingest(RawUpload(fields={"kind": EventKind.BUTTON_PRESS.value}))
    return LegacyAck(id=event.id)


@router.post(
    "/upload",
    response_model=LegacyAck,
    responses={
        400: {"description": "Missing or invalid fields", "model": ErrorResponse},
        500: {"description": "Event store failure", "model": ErrorResponse},
    },
    summary="Upload a base64 image",
)
async def upload(
    request: Request,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> LegacyAck:
    content_length = declared_length(request)
    body = await read_json_object(request)
    if not body.get("filename") or not body.get("data"):
        raise ValidationError(
            message="Missing fields",
            context={"required": ["filename", "data"]},
        )

    fields: Dict[str, Any] = {key: body[key] for key in _UPLOAD_FIELDS if key in body}
    # No declared type: the pipeline reads it from the decoded bytes
    fields["kind"] = EventKind.IMAGE.value

    event = await pipeline.ingest(RawUpload(fields=fields, content_length=content_length))
    return LegacyAck(id=event.id)


@router.get(
    "/images",
    response_model=List[EventMetadata],
    responses={500: {"description": "Event store failure", "model": ErrorResponse}},
    summary="List stored images, newest first",
)
async def list_images(
    response: Response,
    limit: Optional[int] = Query(
        default=None,
        description="Number of images to return. Omitted: every stored image.",
    ),
    queries: QueryService = Depends(get_query_service),
) -> List[EventMetadata]:
    if limit is None:
        images = await queries.list_all(kind=EventKind.IMAGE)
        response.headers["X-Total-Count"] = str(len(images))
        return images

    page = await queries.list_recent(limit=limit, kind=EventKind.IMAGE)
    response.headers["X-Total-Count"] = str(page.total_count)
    return page.events


@router.get(
    "/images/id/{event_id}",
    response_model=EventResponse,
    responses={
        404: {"description": "Not found", "model": ErrorResponse},
        500: {"description": "Event store failure", "model": ErrorResponse},
    },
    summary="Get one image with base64 data",
)
async def get_image(
    event_id: str,
    queries: QueryService = Depends(get_query_service),
) -> EventResponse:
    event = await queries.get_full(event_id)
    return EventResponse.from_event(event)
