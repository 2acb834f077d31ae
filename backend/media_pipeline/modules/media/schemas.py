"""Pydantic schemas for the media module."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from media_pipeline.modules.media.models import ProcessingStatus


class RegisterMediaRequest(BaseModel):
    upload_session_id: uuid.UUID
    title: str = Field(..., min_length=1, max_length=255)


class ProcessingStatusResponse(BaseModel):
    """Polling view of a media item's processing state.

    URL fields are only populated once processing has COMPLETED.
    """

    media_item_id: uuid.UUID
    title: str
    status: ProcessingStatus
    progress: int
    stage: Optional[str] = None
    attempts: int = 0
    duration_seconds: Optional[float] = None
    primary_video_url: Optional[str] = None
    adaptive_manifest_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    video_urls: Optional[dict[str, str]] = None
    error_message: Optional[str] = None
    updated_at: Optional[datetime] = None
