"""Media item repository.

Status changes are guarded UPDATEs, like the upload session repository, so a
worker and the garbage collector can never clobber each other's transition.
"""

import uuid
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from media_pipeline.core.clock import utcnow
from media_pipeline.modules.media.models import CLEARED_URLS, MediaItem, ProcessingStatus


class MediaItemRepository:
    """Repository for MediaItem persistence."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        owner_id: str,
        title: str,
        source_path: str,
        mime_type: str,
        upload_session_id: Optional[uuid.UUID] = None,
    ) -> MediaItem:
        item = MediaItem(
            owner_id=owner_id,
            title=title,
            source_path=source_path,
            mime_type=mime_type,
            upload_session_id=upload_session_id,
            processing_status=ProcessingStatus.PENDING.value,
            processing_progress=0,
            attempts=0,
        )
        self.session.add(item)
        await self.session.flush()
        return item

    async def get(self, media_item_id: uuid.UUID) -> Optional[MediaItem]:
        result = await self.session.execute(
            select(MediaItem)
            .where(MediaItem.id == media_item_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_upload_session(self, upload_session_id: uuid.UUID) -> Optional[MediaItem]:
        result = await self.session.execute(
            select(MediaItem).where(MediaItem.upload_session_id == upload_session_id)
        )
        return result.scalars().first()

    async def _transition(
        self,
        media_item_id: uuid.UUID,
        from_statuses: Iterable[str],
        to_status: ProcessingStatus,
        **values: Any,
    ) -> bool:
        result = await self.session.execute(
            update(MediaItem)
            .where(
                MediaItem.id == media_item_id,
                MediaItem.processing_status.in_(list(from_statuses)),
            )
            .values(processing_status=to_status.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def claim_for_processing(self, media_item_id: uuid.UUID) -> bool:
        """PENDING -> PROCESSING. Only one caller can win the claim."""
        return await self._transition(
            media_item_id,
            [ProcessingStatus.PENDING.value],
            ProcessingStatus.PROCESSING,
            processing_progress=0,
            processing_started_at=utcnow(),
            error_message=None,
            attempts=MediaItem.attempts + 1,
            **CLEARED_URLS,
        )

    async def update_progress(self, media_item_id: uuid.UUID, progress: int) -> bool:
        result = await self.session.execute(
            update(MediaItem)
            .where(
                MediaItem.id == media_item_id,
                MediaItem.processing_status == ProcessingStatus.PROCESSING.value,
            )
            .values(processing_progress=progress, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_completed(
        self,
        media_item_id: uuid.UUID,
        duration_seconds: float,
        primary_video_url: str,
        adaptive_manifest_url: str,
        thumbnail_url: str,
        video_urls: dict[str, str],
    ) -> bool:
        """PROCESSING -> COMPLETED with every URL set in one statement."""
        return await self._transition(
            media_item_id,
            [ProcessingStatus.PROCESSING.value],
            ProcessingStatus.COMPLETED,
            processing_progress=100,
            duration_seconds=duration_seconds,
            primary_video_url=primary_video_url,
            adaptive_manifest_url=adaptive_manifest_url,
            thumbnail_url=thumbnail_url,
            video_urls=video_urls,
            completed_at=utcnow(),
            error_message=None,
        )

    async def mark_failed(self, media_item_id: uuid.UUID, error_message: str) -> bool:
        """PENDING | PROCESSING -> FAILED, clearing URLs."""
        return await self._transition(
            media_item_id,
            [
                ProcessingStatus.PENDING.value,
                ProcessingStatus.PROCESSING.value,
            ],
            ProcessingStatus.FAILED,
            error_message=error_message[:4000],
            failed_at=utcnow(),
            **CLEARED_URLS,
        )

    async def restore_failed(
        self,
        media_item_id: uuid.UUID,
        failed_at: datetime,
        error_message: Optional[str],
    ) -> bool:
        """PENDING -> FAILED with the original failure time and error.

        Undoes a reset whose job never got queued, so the item is picked up
        again by the next cooldown scan.
        """
        return await self._transition(
            media_item_id,
            [ProcessingStatus.PENDING.value],
            ProcessingStatus.FAILED,
            error_message=error_message,
            failed_at=failed_at,
            **CLEARED_URLS,
        )

    async def reset_to_pending(
        self,
        media_item_id: uuid.UUID,
        from_statuses: Iterable[str],
        failed_before: Optional[datetime] = None,
    ) -> bool:
        """Return an item to PENDING with URLs cleared.

        Args:
            media_item_id: Item to reset
            from_statuses: Statuses the reset is valid from
            failed_before: Only reset items that failed before this time
        """
        stmt = (
            update(MediaItem)
            .where(
                MediaItem.id == media_item_id,
                MediaItem.processing_status.in_(list(from_statuses)),
            )
            .values(
                processing_status=ProcessingStatus.PENDING.value,
                processing_progress=0,
                error_message=None,
                failed_at=None,
                completed_at=None,
                updated_at=utcnow(),
                **CLEARED_URLS,
            )
            .execution_options(synchronize_session=False)
        )
        if failed_before is not None:
            stmt = stmt.where(MediaItem.failed_at < failed_before)
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def list_failed_before(self, cutoff: datetime) -> list[MediaItem]:
        result = await self.session.execute(
            select(MediaItem).where(
                MediaItem.processing_status == ProcessingStatus.FAILED.value,
                MediaItem.failed_at < cutoff,
            )
        )
        return list(result.scalars().all())

    async def get_status_map(self, media_item_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, str]:
        ids = list(media_item_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(MediaItem.id, MediaItem.processing_status).where(MediaItem.id.in_(ids))
        )
        return {row.id: row.processing_status for row in result.all()}
