"""Pydantic schemas for the upload module."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from media_pipeline.modules.upload.models import UploadStatus


class InitiateUploadRequest(BaseModel):
    """Request schema for starting an upload session."""

    file_name: str = Field(..., min_length=1, max_length=255)
    file_size: int = Field(..., gt=0)
    mime_type: str = Field(..., min_length=1, max_length=255)
    total_chunks: int = Field(..., gt=0)
    chunk_hashes: list[str] = Field(..., min_length=1)


class InitiateUploadResponse(BaseModel):
    session_id: uuid.UUID
    chunk_size: int
    total_chunks: int
    expires_at: datetime


class ChunkAcceptedResponse(BaseModel):
    session_id: uuid.UUID
    chunk_index: int
    uploaded_count: int
    total_chunks: int
    progress_percent: int


class CompleteUploadRequest(BaseModel):
    final_hash: str = Field(..., min_length=1)


class CompleteUploadResponse(BaseModel):
    """Result of a successful completion, handed to the processing pipeline."""

    session_id: uuid.UUID
    assembled_path: str
    file_name: str
    file_size: int
    mime_type: str
    file_hash: str


class UploadStatusResponse(BaseModel):
    session_id: uuid.UUID
    status: UploadStatus
    file_name: str
    file_size: int
    mime_type: str
    uploaded_count: int
    total_chunks: int
    progress_percent: int
    received_chunks: list[int]
    created_at: datetime
    expires_at: datetime
    failure_reason: Optional[str] = None


class CancelUploadResponse(BaseModel):
    session_id: uuid.UUID
    status: UploadStatus
