"""
DoorCast Backend — Blob Storage Service
=========================================

What:  Durable on-disk storage for image payloads.
Why:   Payloads stay out of the metadata table; the database holds only the
       relative path, size and SHA-256 of each blob.
How:   Blobs are written to a temporary sibling file, flushed, fsynced and
       atomically renamed into place, so a reader can never observe a
       half-written blob under its final name.
Who:   Called by EventStore during commit (write), get (read) and
       delete_all / failed commits (cleanup).

Directory Structure:
    storage/
    └── 2026/
        └── 10/
            └── 19/
                ├── 0f8e6c3a-....jpg
                └── 9a1d22b4-....png

    The file name is the event id, so a blob can be traced back to its row
    without consulting the database.
"""

import asyncio
import hashlib
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from app.config import settings
from app.exceptions import FileStorageError

logger = logging.getLogger(__name__)

# Extension used on disk for each accepted content type
CONTENT_TYPE_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


@dataclass(frozen=True)
class StoredBlob:
    """Where a blob landed and what it contains."""

    relative_path: str
    size: int
    sha256: str


class BlobService:
    """
    Writes, reads and removes payload blobs under a storage root.

    All paths handed in or out are relative to the storage root. resolve()
    refuses any path that would escape it.
    """

    def __init__(self, storage_root: Optional[str] = None, fsync: Optional[bool] = None):
        self.storage_root = Path(storage_root or settings.storage_root).resolve()
        self.storage_root.mkdir(parents=True, exist_ok=True)
        self.fsync = settings.blob_fsync if fsync is None else fsync
        logger.info("BlobService initialized with storage_root=%s", self.storage_root)

    def resolve(self, relative_path: str) -> Path:
        """Absolute path for a stored blob; raises FileStorageError on traversal."""
        candidate = (self.storage_root / relative_path).resolve()
        if candidate != self.storage_root and self.storage_root not in candidate.parents:
            raise FileStorageError(
                message="Invalid blob path",
                context={"path": relative_path},
            )
        return candidate

    def _generate_storage_path(self, event_id: uuid.UUID, content_type: str, now: datetime) -> str:
        ext = CONTENT_TYPE_EXTENSIONS.get(content_type, ".bin")
        return f"{now.strftime('%Y/%m/%d')}/{event_id}{ext}"

    async def write_blob(
        self,
        event_id: uuid.UUID,
        content: bytes,
        content_type: str,
        now: Optional[datetime] = None,
    ) -> StoredBlob:
        """
        Durably write a payload and return its location and digest.

        Steps:
            1. Write <name>.part
            2. flush + fsync (unless disabled)
            3. Atomic rename to <name>

        Raises:
            FileStorageError if any step fails. The temporary file is removed.
        """
        relative_path = self._generate_storage_path(
            event_id, content_type, now or datetime.now(timezone.utc)
        )
        final_path = self.resolve(relative_path)
        temp_path = final_path.with_name(final_path.name + ".part")

        try:
            final_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, "wb") as f:
                await f.write(content)
                await f.flush()
                if self.fsync:
                    await asyncio.to_thread(os.fsync, f.fileno())
            await aiofiles.os.replace(temp_path, final_path)
        except OSError as e:
            logger.error("Failed to store blob at %s: %s", relative_path, str(e))
            await self._remove_quietly(temp_path)
            raise FileStorageError(
                message="Failed to save uploaded payload. Please try again.",
                context={"path": relative_path, "os_error": str(e)},
            ) from e

        digest = hashlib.sha256(content).hexdigest()
        logger.debug("Blob stored: %s (%d bytes)", relative_path, len(content))
        return StoredBlob(relative_path=relative_path, size=len(content), sha256=digest)

    async def read_blob(
        self,
        relative_path: str,
        expected_size: Optional[int] = None,
        expected_sha256: Optional[str] = None,
    ) -> bytes:
        """
        Read a blob back and verify it against the recorded size and digest.

        Raises:
            FileStorageError if the blob is missing, unreadable or corrupted.
        """
        path = self.resolve(relative_path)
        try:
            async with aiofiles.open(path, "rb") as f:
                content = await f.read()
        except OSError as e:
            logger.error("Failed to read blob %s: %s", relative_path, str(e))
            raise FileStorageError(
                message="Stored payload could not be read",
                context={"path": relative_path, "os_error": str(e)},
            ) from e

        if expected_size is not None and len(content) != expected_size:
            raise FileStorageError(
                message="Stored payload is corrupted",
                context={"path": relative_path, "expected_size": expected_size, "size": len(content)},
            )
        if expected_sha256 is not None and hashlib.sha256(content).hexdigest() != expected_sha256:
            raise FileStorageError(
                message="Stored payload is corrupted",
                context={"path": relative_path, "reason": "checksum mismatch"},
            )
        return content

    async def cleanup_file(self, relative_path: str) -> None:
        """
        Remove a blob (best effort).

        When:  A commit failed after its blob was written, or delete_all ran.
        Errors are logged and swallowed here on purpose: the caller is
        already reporting the failure that matters.
        """
        try:
            path = self.resolve(relative_path)
        except FileStorageError:
            logger.warning("Refusing to clean up blob outside storage root: %s", relative_path)
            return
        await self._remove_quietly(path)

    async def _remove_quietly(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
            logger.debug("Cleaned up blob: %s", path.name)
        except FileNotFoundError:
            logger.debug("Cleanup: blob already gone: %s", path.name)
        except OSError as e:
            logger.warning("Failed to clean up blob %s: %s", path, str(e))
