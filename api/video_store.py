"""
Durable video records.

Every status change is a single UPDATE statement, so a reader never sees a
record that is live without its hls_path, duration and thumbnail. A live
record is never moved back to processing or failed, and a terminally failed
record (failed_at set) is never reopened: duplicate or late job deliveries
cannot undo a finished outcome.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import sqlalchemy as sa
from databases import Database

from api.common import ensure_utc
from api.database import utcnow, videos
from api.db_retry import db_execute_with_retry, fetch_one_with_retry
from api.enums import VideoStatus
from api.errors import truncate_error

logger = logging.getLogger(__name__)


@dataclass
class VideoRecord:
    id: str
    video_id: str
    title: str
    uploader_id: Optional[int]
    status: VideoStatus
    hls_path: Optional[str] = None
    duration: float = 0.0
    thumbnail: Optional[str] = None
    error_message: Optional[str] = None
    failed_at: Optional[datetime] = None

    @property
    def is_live(self) -> bool:
        return self.status == VideoStatus.LIVE

    @property
    def is_failed_permanently(self) -> bool:
        return self.status == VideoStatus.FAILED and self.failed_at is not None

    @classmethod
    def from_row(cls, row) -> "VideoRecord":
        return cls(
            id=row["id"],
            video_id=row["video_id"],
            title=row["title"] or "",
            uploader_id=row["uploader_id"],
            status=VideoStatus(row["status"]),
            hls_path=row["hls_path"],
            duration=row["duration"] or 0.0,
            thumbnail=row["thumbnail"],
            error_message=row["error_message"],
            failed_at=ensure_utc(row["failed_at"]),
        )


class VideoStore:
    """Reads and conditional single-statement writes on the videos table."""

    def __init__(self, db: Optional[Database] = None) -> None:
        if db is None:
            from api.database import database as db
        self.db = db

    async def get(self, doc_id: str) -> Optional[VideoRecord]:
        row = await fetch_one_with_retry(videos.select().where(videos.c.id == doc_id), db=self.db)
        return VideoRecord.from_row(row) if row else None

    async def create(
        self,
        video_id: str,
        title: str,
        uploader_id: Optional[int] = None,
        doc_id: Optional[str] = None,
    ) -> VideoRecord:
        """Insert a pending record (upload path)."""
        doc_id = doc_id or uuid.uuid4().hex
        now = utcnow()
        await db_execute_with_retry(
            videos.insert().values(
                id=doc_id,
                video_id=video_id,
                title=title,
                uploader_id=uploader_id,
                status=VideoStatus.PENDING.value,
                duration=0.0,
                created_at=now,
                updated_at=now,
            ),
            db=self.db,
        )
        return VideoRecord(
            id=doc_id,
            video_id=video_id,
            title=title,
            uploader_id=uploader_id,
            status=VideoStatus.PENDING,
        )

    async def update(self, doc_id: str, **values: Any) -> None:
        """Apply one atomic UPDATE to a record."""
        if "status" in values and isinstance(values["status"], VideoStatus):
            values["status"] = values["status"].value
        values["updated_at"] = utcnow()
        await db_execute_with_retry(videos.update().where(videos.c.id == doc_id).values(**values), db=self.db)

    async def claim_for_processing(self, doc_id: str) -> Optional[VideoRecord]:
        """
        Set a record to processing unless it is live or failed permanently.

        Returns the record after the update (a finished record is returned
        untouched), or None if it does not exist.
        """
        await db_execute_with_retry(
            videos.update()
            .where(videos.c.id == doc_id)
            .where(videos.c.status != VideoStatus.LIVE.value)
            .where(videos.c.failed_at.is_(None))
            .values(status=VideoStatus.PROCESSING.value, error_message=None, updated_at=utcnow()),
            db=self.db,
        )
        return await self.get(doc_id)

    async def mark_live(
        self,
        doc_id: str,
        hls_path: str,
        duration: float,
        thumbnail: Optional[str] = None,
    ) -> None:
        """Publish a verified package: status, hls_path, duration and thumbnail in one write."""
        values = {
            "status": VideoStatus.LIVE.value,
            "hls_path": hls_path,
            "duration": duration,
            "error_message": None,
            "updated_at": utcnow(),
        }
        if thumbnail:
            values["thumbnail"] = thumbnail
        await db_execute_with_retry(videos.update().where(videos.c.id == doc_id).values(**values), db=self.db)
        logger.info(f"Video record {doc_id} is live at {hls_path}")

    async def mark_failed(self, doc_id: str, error: str, terminal: bool = False) -> None:
        """
        Record a failure unless the video already went live or failed permanently.

        A terminal failure also sets failed_at, after which claim_for_processing
        refuses the record.
        """
        values = {
            "status": VideoStatus.FAILED.value,
            "error_message": truncate_error(error),
            "updated_at": utcnow(),
        }
        if terminal:
            values["failed_at"] = values["updated_at"]
        await db_execute_with_retry(
            videos.update()
            .where(videos.c.id == doc_id)
            .where(videos.c.status != VideoStatus.LIVE.value)
            .where(videos.c.failed_at.is_(None))
            .values(**values),
            db=self.db,
        )

    async def count_by_status(self, status: VideoStatus) -> int:
        row = await fetch_one_with_retry(
            sa.select(sa.func.count().label("n")).select_from(videos).where(videos.c.status == status.value),
            db=self.db,
        )
        return row["n"] if row else 0
