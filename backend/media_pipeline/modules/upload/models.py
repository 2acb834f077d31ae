"""Upload session model.

An upload session tracks one resumable upload attempt. Received chunks are
stored as an explicit sorted index list next to the record, so completeness
never depends on listing the temp directory.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, BigInteger, DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from media_pipeline.core.clock import utcnow
from media_pipeline.core.database import Base


class UploadStatus(str, Enum):
    """Status of an upload session."""

    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


# Statuses in which chunks may still be submitted
ACTIVE_STATUSES = (UploadStatus.PENDING.value, UploadStatus.UPLOADING.value)


class UploadSession(Base):
    """Upload session model."""

    __tablename__ = "upload_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # File information
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)

    # Chunking
    chunk_size: Mapped[int] = mapped_column(Integer, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    expected_chunk_hashes: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    received_chunks: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)

    status: Mapped[str] = mapped_column(
        String(50), default=UploadStatus.PENDING.value, index=True
    )
    assembled_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def uploaded_chunk_count(self) -> int:
        return len(self.received_chunks or [])

    @property
    def progress_percent(self) -> int:
        return progress_percent(self.uploaded_chunk_count, self.total_chunks)

    def is_expired(self, now: datetime) -> bool:
        """Whether a non-terminal session has passed its expiry."""
        return self.status in ACTIVE_STATUSES and now > self.expires_at

    def __repr__(self) -> str:
        return f"<UploadSession {self.id} - {self.status}>"


def progress_percent(uploaded: int, total: int) -> int:
    """Whole-number upload progress, 100 only once every chunk is present."""
    if total <= 0:
        return 0
    return min(100, uploaded * 100 // total)
