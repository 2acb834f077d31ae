"""Media item service.

Registers media items against completed uploads, dispatches processing jobs
and serves the polling read of processing state.
"""

import logging
import uuid
from typing import Optional, Protocol, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from media_pipeline.core.exceptions import (
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    QueueFullError,
)
from media_pipeline.core.logging import log_info, log_warning
from media_pipeline.modules.media.models import MediaItem, ProcessingStatus
from media_pipeline.modules.media.repository import MediaItemRepository
from media_pipeline.modules.media.schemas import ProcessingStatusResponse
from media_pipeline.modules.processing.jobs import ReprocessRequestedJob, UploadCompletedJob
from media_pipeline.modules.processing.progress import ProgressBroker
from media_pipeline.modules.upload.models import UploadStatus
from media_pipeline.modules.upload.repository import UploadSessionRepository

logger = logging.getLogger(__name__)

ProcessingJobType = Union[UploadCompletedJob, ReprocessRequestedJob]


class JobDispatcher(Protocol):
    """Anything that accepts processing jobs (WorkQueue, CeleryJobQueue)."""

    async def submit(self, job: ProcessingJobType) -> bool: ...


class MediaService:
    """Service for media item registration and processing status."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        dispatcher: JobDispatcher,
        progress: Optional[ProgressBroker] = None,
    ):
        self.session_maker = session_maker
        self.dispatcher = dispatcher
        self.progress = progress or ProgressBroker()

    async def register_from_upload(
        self,
        owner_id: str,
        upload_session_id: uuid.UUID,
        title: str,
    ) -> ProcessingStatusResponse:
        """Create a PENDING media item for a completed video upload and queue it.

        Raises:
            NotFoundError: Unknown upload session
            ForbiddenError: Upload belongs to another user
            InvalidStateError: Upload not completed, or already registered
            InvalidInputError: Upload is not a video
            QueueFullError: The job could not be queued; the item is left
                FAILED and can be reprocessed
        """
        async with self.session_maker() as db:
            uploads = UploadSessionRepository(db)
            media = MediaItemRepository(db)

            upload = await uploads.get(upload_session_id)
            if upload is None:
                raise NotFoundError("Upload session not found")
            if upload.owner_id != owner_id:
                raise ForbiddenError("Upload session belongs to another user")
            if upload.status != UploadStatus.COMPLETED.value or not upload.assembled_path:
                raise InvalidStateError(
                    "Upload session is not completed",
                    details={"status": upload.status},
                )
            if not upload.mime_type.startswith("video/"):
                raise InvalidInputError(
                    "Only video uploads can be processed",
                    details={"mime_type": upload.mime_type},
                )
            existing = await media.get_by_upload_session(upload_session_id)
            if existing is not None:
                raise InvalidStateError(
                    "Upload is already registered to a media item",
                    details={"media_item_id": str(existing.id)},
                )

            item = await media.create(
                owner_id=owner_id,
                title=title,
                source_path=upload.assembled_path,
                mime_type=upload.mime_type,
                upload_session_id=upload_session_id,
            )
            await db.commit()

        log_info(
            logger,
            "Media item registered",
            media_item_id=str(item.id),
            upload_session_id=str(upload_session_id),
        )
        await self._dispatch(
            UploadCompletedJob(
                media_item_id=item.id,
                upload_session_id=upload_session_id,
                source_path=item.source_path,
            )
        )
        return await self.processing_status(item.id, owner_id)

    async def processing_status(
        self,
        media_item_id: uuid.UUID,
        owner_id: Optional[str] = None,
    ) -> ProcessingStatusResponse:
        """Latest committed processing state, with live progress merged in."""
        async with self.session_maker() as db:
            item = await self._load(MediaItemRepository(db), media_item_id, owner_id)
        return self._to_response(item)

    async def request_reprocess(
        self,
        owner_id: str,
        media_item_id: uuid.UUID,
        reason: str = "manual",
    ) -> ProcessingStatusResponse:
        """Reset a FAILED or COMPLETED item to PENDING and queue it again.

        Raises:
            InvalidStateError: If the item is PENDING or PROCESSING
        """
        async with self.session_maker() as db:
            repo = MediaItemRepository(db)
            item = await self._load(repo, media_item_id, owner_id)
            reset = await repo.reset_to_pending(
                media_item_id,
                [ProcessingStatus.FAILED.value, ProcessingStatus.COMPLETED.value],
            )
            if not reset:
                raise InvalidStateError(
                    f"Media item is {item.processing_status}",
                    details={"status": item.processing_status},
                )
            await db.commit()

        self.progress.forget(media_item_id)
        await self._dispatch(ReprocessRequestedJob(media_item_id=media_item_id, reason=reason))
        return await self.processing_status(media_item_id, owner_id)

    async def get_owned(self, owner_id: str, media_item_id: uuid.UUID) -> MediaItem:
        async with self.session_maker() as db:
            return await self._load(MediaItemRepository(db), media_item_id, owner_id)

    async def _dispatch(self, job: ProcessingJobType) -> None:
        try:
            await self.dispatcher.submit(job)
        except QueueFullError:
            async with self.session_maker() as db:
                await MediaItemRepository(db).mark_failed(job.media_item_id, "Processing queue full")
                await db.commit()
            log_warning(logger, "Processing queue full", media_item_id=str(job.media_item_id))
            raise

    async def _load(
        self,
        repo: MediaItemRepository,
        media_item_id: uuid.UUID,
        owner_id: Optional[str],
    ) -> MediaItem:
        item = await repo.get(media_item_id)
        if item is None:
            raise NotFoundError("Media item not found", details={"media_item_id": str(media_item_id)})
        if owner_id is not None and item.owner_id != owner_id:
            raise ForbiddenError("Media item belongs to another user")
        return item

    def _to_response(self, item: MediaItem) -> ProcessingStatusResponse:
        progress = item.processing_progress or 0
        stage = None
        event = self.progress.latest(item.id)
        if event is not None and item.processing_status == ProcessingStatus.PROCESSING.value:
            progress = max(progress, event.progress)
            stage = event.stage

        completed = item.processing_status == ProcessingStatus.COMPLETED.value
        return ProcessingStatusResponse(
            media_item_id=item.id,
            title=item.title,
            status=ProcessingStatus(item.processing_status),
            progress=progress,
            stage=stage,
            attempts=item.attempts or 0,
            duration_seconds=item.duration_seconds,
            primary_video_url=item.primary_video_url if completed else None,
            adaptive_manifest_url=item.adaptive_manifest_url if completed else None,
            thumbnail_url=item.thumbnail_url if completed else None,
            video_urls=item.video_urls if completed else None,
            error_message=item.error_message,
            updated_at=item.updated_at,
        )
