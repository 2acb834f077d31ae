"""Upload API router.

Thin HTTP surface over UploadSessionManager. Errors are rendered by the
application's MediaPipelineError handler.
"""

import uuid

from fastapi import APIRouter, Depends, File, Form, UploadFile, status

from media_pipeline.core.exceptions import InvalidInputError
from media_pipeline.core.identity import get_current_user_id
from media_pipeline.modules.upload.schemas import (
    CancelUploadResponse,
    ChunkAcceptedResponse,
    CompleteUploadRequest,
    CompleteUploadResponse,
    InitiateUploadRequest,
    InitiateUploadResponse,
    UploadStatusResponse,
)
from media_pipeline.modules.upload.service import UploadSessionManager
from media_pipeline.pipeline import get_upload_manager

router = APIRouter(prefix="/uploads", tags=["uploads"])


@router.post("", response_model=InitiateUploadResponse, status_code=status.HTTP_201_CREATED)
async def initiate_upload(
    data: InitiateUploadRequest,
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    """Start a resumable upload session."""
    return await manager.initiate(
        owner_id=user_id,
        file_name=data.file_name,
        file_size=data.file_size,
        mime_type=data.mime_type,
        total_chunks=data.total_chunks,
        expected_chunk_hashes=data.chunk_hashes,
    )


@router.put("/{session_id}/chunks/{chunk_index}", response_model=ChunkAcceptedResponse)
async def upload_chunk(
    session_id: uuid.UUID,
    chunk_index: int,
    chunk_hash: str = Form(...),
    chunk: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    """Upload one chunk. Safe to retry."""
    if chunk.size is not None and chunk.size > manager.chunk_size:
        raise InvalidInputError(
            f"Chunk exceeds the {manager.chunk_size} byte chunk size",
            details={"chunk_index": chunk_index, "size": chunk.size},
        )
    # One byte past the limit is enough for the manager to reject it
    data = await chunk.read(manager.chunk_size + 1)
    return await manager.submit_chunk(
        owner_id=user_id,
        session_id=session_id,
        chunk_index=chunk_index,
        data=data,
        claimed_hash=chunk_hash,
    )


@router.post("/{session_id}/complete", response_model=CompleteUploadResponse)
async def complete_upload(
    session_id: uuid.UUID,
    data: CompleteUploadRequest,
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    """Reassemble and verify an upload."""
    return await manager.complete(user_id, session_id, data.final_hash)


@router.get("/{session_id}", response_model=UploadStatusResponse)
async def get_upload_status(
    session_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    return await manager.status(user_id, session_id)


@router.delete("/{session_id}", response_model=CancelUploadResponse)
async def cancel_upload(
    session_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    manager: UploadSessionManager = Depends(get_upload_manager),
):
    """Cancel an upload and release its storage."""
    return await manager.cancel(user_id, session_id)
