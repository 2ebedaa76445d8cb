"""Create events table

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

What:  Creates the `events` table holding doorbell event metadata.
       Image payloads live on disk under STORAGE_ROOT; rows reference them
       by relative path and SHA-256.

Rollback: downgrade() drops the table (blobs on disk are left in place).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("id", sa.Uuid(), nullable=False, comment="Event identifier assigned at commit time"),
        sa.Column("kind", sa.String(32), nullable=False, comment="Event kind: image, button_press"),
        sa.Column(
            "source_label",
            sa.String(128),
            nullable=True,
            comment="Optional originator tag supplied by the device",
        ),
        sa.Column("filename", sa.String(255), nullable=True, comment="Original file name as sent by the device"),
        sa.Column("content_type", sa.String(100), nullable=True, comment="Declared MIME type of the payload"),
        sa.Column(
            "size_bytes",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
            comment="Payload length in bytes (0 for button presses)",
        ),
        sa.Column(
            "blob_path",
            sa.String(255),
            nullable=True,
            comment="Relative path from storage root to the payload blob",
        ),
        sa.Column("checksum", sa.String(64), nullable=True, comment="SHA-256 hex digest of the payload"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            comment="Commit time (UTC), non-decreasing in commit order",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("kind IN ('image', 'button_press')", name="ck_events_kind"),
    )

    # Serves ORDER BY created_at DESC, id DESC and the keyset cursor
    op.create_index(
        "idx_events_created_at_id",
        "events",
        [sa.text("created_at DESC"), sa.text("id DESC")],
    )


def downgrade() -> None:
    op.drop_index("idx_events_created_at_id", table_name="events")
    op.drop_table("events")
