"""Media item model.

A media item is the lecture video record the pipeline fills in. URL fields
are only ever populated on a COMPLETED item.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, Float, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from media_pipeline.core.clock import utcnow
from media_pipeline.core.database import Base


class ProcessingStatus(str, Enum):
    """Processing status of a media item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Values written whenever URLs must not be exposed
CLEARED_URLS = {
    "primary_video_url": None,
    "adaptive_manifest_url": None,
    "thumbnail_url": None,
    "video_urls": None,
}


class MediaItem(Base):
    """Media item model."""

    __tablename__ = "media_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)

    # Source
    upload_session_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    source_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)

    # Processing state
    processing_status: Mapped[str] = mapped_column(
        String(50), default=ProcessingStatus.PENDING.value, index=True
    )
    processing_progress: Mapped[int] = mapped_column(Integer, default=0)  # 0-100
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Published artifacts
    primary_video_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    adaptive_manifest_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    video_urls: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # label -> url

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<MediaItem {self.id} - {self.processing_status}>"
