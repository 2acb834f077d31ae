"""Media API router."""

import asyncio
import json
import uuid

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse

from media_pipeline.core.identity import get_current_user_id
from media_pipeline.modules.media.models import ProcessingStatus
from media_pipeline.modules.media.schemas import ProcessingStatusResponse, RegisterMediaRequest
from media_pipeline.modules.media.service import MediaService
from media_pipeline.pipeline import get_media_service

router = APIRouter(prefix="/media", tags=["media"])

KEEPALIVE_SECONDS = 15.0
TERMINAL_STATUSES = (ProcessingStatus.COMPLETED.value, ProcessingStatus.FAILED.value)


@router.post("", response_model=ProcessingStatusResponse, status_code=status.HTTP_202_ACCEPTED)
async def register_media(
    data: RegisterMediaRequest,
    user_id: str = Depends(get_current_user_id),
    service: MediaService = Depends(get_media_service),
):
    """Register a completed upload as a media item and queue processing."""
    return await service.register_from_upload(user_id, data.upload_session_id, data.title)


@router.get("/{media_item_id}/processing-status", response_model=ProcessingStatusResponse)
async def get_processing_status(
    media_item_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    service: MediaService = Depends(get_media_service),
):
    return await service.processing_status(media_item_id, user_id)


@router.post(
    "/{media_item_id}/reprocess",
    response_model=ProcessingStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def reprocess_media(
    media_item_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    service: MediaService = Depends(get_media_service),
):
    """Queue a FAILED or COMPLETED media item for processing again."""
    return await service.request_reprocess(user_id, media_item_id)


@router.get("/{media_item_id}/progress/stream")
async def stream_progress(
    media_item_id: uuid.UUID,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: MediaService = Depends(get_media_service),
):
    """Server-sent events with live processing progress.

    The stream ends with an ``event: complete`` once processing finishes.
    """
    snapshot = await service.processing_status(media_item_id, user_id)

    async def event_stream():
        yield f"data: {json.dumps(snapshot.model_dump(mode='json'))}\n\n"
        if snapshot.status.value in TERMINAL_STATUSES:
            yield "event: complete\ndata: {}\n\n"
            return

        async with service.progress.subscribe(media_item_id) as queue:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event.to_dict())}\n\n"
                if event.is_terminal:
                    yield "event: complete\ndata: {}\n\n"
                    break

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
