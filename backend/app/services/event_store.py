"""
DoorCast Backend — Event Store (Metadata & Blob Store)
========================================================

What:  Durable storage of committed events: metadata rows in the database,
       payloads on disk through BlobService.
Why:   The only component that assigns event ids and timestamps, and the
       only writer of the events table.
How:   Each operation opens its own session, so a commit is fully finished
       (and visible to other sessions) before the caller publishes anything.
Who:   IngestionPipeline (commit), QueryService (list/get), admin route
       (delete_all), health/tests (count).

Commit Protocol:
    ┌───────────┐    ┌──────────────┐    ┌──────────────┐    ┌──────────┐
    │ id + time │───▶│ blob (.part) │───▶│ fsync+rename │───▶│ row (tx) │
    └───────────┘    └──────────────┘    └──────────────┘    └──────────┘

    Serialized by an asyncio.Lock so id assignment and created_at advance
    together. A row is never inserted before its blob is durable; if the row
    insert fails, the blob is removed again.

Ordering:
    created_at is clamped to strictly after the last issued timestamp, so a
    wall clock that steps backwards never reorders events. Lists order by
    (created_at DESC, id DESC).

Retries:
    Reads retry on OperationalError (dropped connection, failover) with
    tenacity exponential backoff + jitter. Commits are never retried here;
    the uploader gets a StoreError and may resend.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple, Union

from sqlalchemy import and_, delete, func, or_, select, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from app.config import settings
from app.exceptions import DatabaseError, NotFoundError, ValidationError
from app.models.event import EventRecord
from app.schemas.event import (
    ButtonPressDraft,
    Event,
    EventKind,
    EventMetadata,
    EventPage,
    ImageDraft,
)
from app.services.blob_service import BlobService, StoredBlob

logger = logging.getLogger(__name__)

Draft = Union[ImageDraft, ButtonPressDraft]
Cursor = Union[uuid.UUID, datetime]

# Shared by every read path; commits are deliberately not decorated
read_retry = retry(
    retry=retry_if_exception_type(OperationalError),
    stop=stop_after_attempt(settings.store_retry_max_attempts),
    wait=wait_exponential_jitter(
        multiplier=settings.store_retry_min_wait,
        max=settings.store_retry_max_wait,
        jitter=settings.store_retry_min_wait,
    ),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_cursor(before: Optional[str]) -> Optional[Cursor]:
    """
    Interpret a `before` cursor.

    Accepts an event id (keyset cursor) or an ISO-8601 timestamp. A 'Z'
    suffix and naive timestamps are read as UTC.

    Raises:
        ValidationError if the value is neither.
    """
    if before is None or before == "":
        return None
    try:
        return uuid.UUID(before)
    except ValueError:
        pass
    try:
        ts = datetime.fromisoformat(before.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(
            message="'before' must be an event id or an ISO-8601 timestamp",
            field="before",
            context={"value": before},
        )
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class EventStore:
    """
    Durable event storage.

    Args:
        session_factory: async_sessionmaker bound to the events database
        blobs:           BlobService for payloads
        clock:           Returns the current UTC time (tests inject a fake)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        blobs: BlobService,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._session_factory = session_factory
        self._blobs = blobs
        self._clock = clock or _utcnow
        self._commit_lock = asyncio.Lock()
        self._last_created_at: Optional[datetime] = None

    # ── Writes ────────────────────────────────────────────────────────────

    async def commit(self, draft: Draft) -> Event:
        """
        Persist a validated draft and return the committed event.

        Raises:
            FileStorageError: the payload could not be written durably
            DatabaseError:    the metadata row could not be inserted
        In both cases nothing of the event remains in the store.
        """
        async with self._commit_lock:
            event_id = uuid.uuid4()
            try:
                created_at = await self._next_timestamp()
            except SQLAlchemyError as e:
                logger.error("Failed to read commit watermark: %s", str(e))
                raise DatabaseError(
                    message="Failed to save the event. Please try again.",
                    context={"error_type": type(e).__name__},
                ) from e

            stored: Optional[StoredBlob] = None
            if isinstance(draft, ImageDraft):
                stored = await self._blobs.write_blob(
                    event_id, draft.payload, draft.content_type, now=created_at
                )

            record = EventRecord(
                id=event_id,
                kind=draft.kind,
                source_label=draft.source_label,
                filename=getattr(draft, "filename", None),
                content_type=getattr(draft, "content_type", None),
                size_bytes=stored.size if stored else 0,
                blob_path=stored.relative_path if stored else None,
                checksum=stored.sha256 if stored else None,
                created_at=created_at,
            )

            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        session.add(record)
            except BaseException as e:
                # Covers cancellation too: no row means the blob must go
                if stored is not None:
                    await self._blobs.cleanup_file(stored.relative_path)
                if isinstance(e, SQLAlchemyError):
                    logger.error("Failed to insert event %s: %s", event_id, str(e))
                    raise DatabaseError(
                        message="Failed to save the event. Please try again.",
                        context={"event_id": str(event_id), "error_type": type(e).__name__},
                    ) from e
                raise

            self._last_created_at = created_at

        logger.info(
            "Event committed: %s kind=%s size=%d",
            event_id,
            draft.kind,
            record.size_bytes,
        )
        return Event(
            **EventMetadata.model_validate(record).model_dump(),
            payload=draft.payload if isinstance(draft, ImageDraft) else None,
            checksum=record.checksum,
        )

    async def delete_all(self) -> int:
        """
        Administrative: remove every event in one transaction.

        Blobs are removed afterwards, best effort; a blob that outlives its
        row is unreachable and harmless.
        """
        async with self._commit_lock:
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        paths = (
                            await session.execute(
                                select(EventRecord.blob_path).where(EventRecord.blob_path.is_not(None))
                            )
                        ).scalars().all()
                        result = await session.execute(delete(EventRecord))
                        deleted = result.rowcount or 0
            except SQLAlchemyError as e:
                logger.error("Failed to delete events: %s", str(e))
                raise DatabaseError(
                    message="Could not delete events. Please try again.",
                    context={"error_type": type(e).__name__},
                ) from e

        for path in paths:
            await self._blobs.cleanup_file(path)
        logger.warning("Deleted all events (%d rows)", deleted)
        return deleted

    # ── Reads ─────────────────────────────────────────────────────────────

    async def list(
        self,
        limit: Optional[int] = None,
        before: Optional[str] = None,
        kind: Optional[EventKind] = None,
    ) -> EventPage:
        """
        Metadata for up to `limit` events, newest first.

        Args:
            limit:  None → configured default; <= 0 → ValidationError;
                    above the configured maximum → clamped.
            before: Event id (keyset) or ISO timestamp; see parse_cursor().
            kind:   Only events of this kind; total_count counts the same subset.

        Returns:
            EventPage with has_more and next_cursor (id of the last event).
        """
        effective_limit = self.normalize_limit(limit)
        cursor = parse_cursor(before)

        try:
            records, total_count = await self._fetch_page(effective_limit, cursor, kind)
        except SQLAlchemyError as e:
            logger.error("Database error listing events: %s", str(e), exc_info=True)
            raise DatabaseError(
                message="Could not retrieve events. Please try again.",
                context={"error_type": type(e).__name__},
            ) from e

        has_more = len(records) > effective_limit
        if has_more:
            records = records[:effective_limit]

        return EventPage(
            events=[EventMetadata.model_validate(r) for r in records],
            total_count=total_count,
            next_cursor=str(records[-1].id) if has_more and records else None,
            has_more=has_more,
        )

    async def get(self, event_id: uuid.UUID) -> Event:
        """
        Full event including its verified payload.

        Raises:
            NotFoundError:    no event with this id
            FileStorageError: blob missing or failing verification
            DatabaseError:    query failed after retries
        """
        try:
            record = await self._fetch_one(event_id)
        except SQLAlchemyError as e:
            logger.error("Database error fetching event %s: %s", event_id, str(e))
            raise DatabaseError(
                message="Could not retrieve the event. Please try again.",
                context={"event_id": str(event_id)},
            ) from e

        if record is None:
            raise NotFoundError(resource="event", resource_id=str(event_id))

        payload = None
        if record.blob_path:
            payload = await self._blobs.read_blob(
                record.blob_path,
                expected_size=record.size_bytes,
                expected_sha256=record.checksum,
            )
        return Event(
            **EventMetadata.model_validate(record).model_dump(),
            payload=payload,
            checksum=record.checksum,
        )

    async def count(self) -> int:
        try:
            return await self._count()
        except SQLAlchemyError as e:
            raise DatabaseError(
                message="Could not count events.",
                context={"error_type": type(e).__name__},
            ) from e

    async def check_connection(self) -> None:
        """
        One round trip to the database, for /health.

        Not retried: a health check reports the database as it is now.
        """
        async with self._session_factory() as session:
            await session.execute(text("SELECT 1"))

    # ── Helpers ───────────────────────────────────────────────────────────

    @staticmethod
    def normalize_limit(limit: Optional[int]) -> int:
        if limit is None:
            return settings.list_default_limit
        if limit <= 0:
            raise ValidationError(
                message="'limit' must be a positive integer",
                field="limit",
                context={"value": limit},
            )
        return min(limit, settings.list_max_limit)

    async def _next_timestamp(self) -> datetime:
        """Wall clock, clamped to strictly after the last issued timestamp."""
        if self._last_created_at is None:
            self._last_created_at = await self._latest_created_at()
        now = self._clock()
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        return now

    @read_retry
    async def _latest_created_at(self) -> Optional[datetime]:
        async with self._session_factory() as session:
            return (await session.execute(select(func.max(EventRecord.created_at)))).scalar()

    @read_retry
    async def _fetch_one(self, event_id: uuid.UUID) -> Optional[EventRecord]:
        async with self._session_factory() as session:
            return await session.get(EventRecord, event_id)

    @read_retry
    async def _count(self) -> int:
        async with self._session_factory() as session:
            return (await session.execute(select(func.count(EventRecord.id)))).scalar() or 0

    @read_retry
    async def _fetch_page(
        self, limit: int, cursor: Optional[Cursor], kind: Optional[EventKind]
    ) -> Tuple[List[EventRecord], int]:
        async with self._session_factory() as session:
            query = select(EventRecord)
            count_query = select(func.count(EventRecord.id))
            if kind is not None:
                query = query.where(EventRecord.kind == kind.value)
                count_query = count_query.where(EventRecord.kind == kind.value)

            if isinstance(cursor, uuid.UUID):
                anchor = await self._cursor_anchor(session, cursor)
                query = query.where(
                    or_(
                        EventRecord.created_at < anchor,
                        and_(EventRecord.created_at == anchor, EventRecord.id < cursor),
                    )
                )
            elif isinstance(cursor, datetime):
                query = query.where(EventRecord.created_at < cursor)

            # limit + 1 tells us whether another page exists
            query = query.order_by(
                EventRecord.created_at.desc(), EventRecord.id.desc()
            ).limit(limit + 1)
            records = list((await session.execute(query)).scalars().all())

            total_count = (await session.execute(count_query)).scalar() or 0
            return records, total_count

    @staticmethod
    async def _cursor_anchor(session: AsyncSession, cursor: uuid.UUID) -> datetime:
        anchor = (
            await session.execute(
                select(EventRecord.created_at).where(EventRecord.id == cursor)
            )
        ).scalar_one_or_none()
        if anchor is None:
            raise ValidationError(
                message=f"Unknown cursor '{cursor}'",
                field="before",
                context={"value": str(cursor)},
            )
        return anchor
