"""
DoorCast Backend — Event SQLAlchemy Model
===========================================

What:  ORM model representing the `events` table.
Why:   Maps doorbell events (image uploads and button presses) to rows.
How:   Inherits from the shared DeclarativeBase; Alembic reads this for migrations.
Who:   Used by EventStore for inserts and reads, and by Alembic.
When:  Inserted once at commit time; never updated afterwards.

Table Design Rationale:
    - UUID primary key: assigned by the store at commit time, never reused
    - blob_path: Relative path from storage root; NULL for button presses
    - checksum: SHA-256 of the payload, re-verified on every full read
    - created_at: UTC, non-decreasing in commit order

    Composite index on (created_at DESC, id DESC):
        Serves the list query and the keyset cursor in one index scan.
        id breaks ties between events committed within the same tick.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, Index, Integer, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, UTCDateTime


class EventRecord(Base):
    """
    One persisted doorbell event.

    Lifecycle:
        1. Blob written (images only), then the row is inserted
        2. Read by list (metadata only) and get (metadata + blob)
        3. Removed only by the administrative delete-all
    """

    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        comment="Event identifier assigned at commit time",
    )

    # Values: 'image' | 'button_press'
    kind: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Event kind: image, button_press",
    )

    source_label: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        comment="Optional originator tag supplied by the device",
    )

    # ── Payload Metadata (images only) ────────────────────────────────────
    filename: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Original file name as sent by the device",
    )
    content_type: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Declared MIME type of the payload",
    )
    size_bytes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
        comment="Payload length in bytes (0 for button presses)",
    )
    # Format: YYYY/MM/DD/<event-id>.<ext>
    blob_path: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Relative path from storage root to the payload blob",
    )
    checksum: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="SHA-256 hex digest of the payload",
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        comment="Commit time (UTC), non-decreasing in commit order",
    )

    __table_args__ = (
        CheckConstraint("kind IN ('image', 'button_press')", name="ck_events_kind"),
        Index("idx_events_created_at_id", created_at.desc(), id.desc()),
    )

    def __repr__(self) -> str:
        return (
            f"<EventRecord(id={self.id}, kind='{self.kind}', "
            f"created_at='{self.created_at}')>"
        )
