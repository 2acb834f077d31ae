"""Transcoding coordinator.

Runs one processing job end to end:

1. claim the media item (PENDING -> PROCESSING)
2. run the transcoder in a worker thread, reporting progress per stage
3. publish every artifact
4. mark the item COMPLETED with its URLs and duration

Any failure marks the item FAILED with URLs cleared and is re-raised for the
caller to log. The job's working directory is removed on success and kept on
failure until the garbage collector reclaims it.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from media_pipeline.core.logging import log_error, log_info, log_warning
from media_pipeline.core.metrics import TRANSCODE_JOBS_TOTAL
from media_pipeline.modules.media.models import ProcessingStatus
from media_pipeline.modules.media.repository import MediaItemRepository
from media_pipeline.modules.processing.jobs import ReprocessRequestedJob, UploadCompletedJob
from media_pipeline.modules.processing.progress import ProgressBroker, ProgressEvent
from media_pipeline.modules.transcoding.publisher import ArtifactPublisher, PublishedArtifacts
from media_pipeline.modules.transcoding.service import (
    TranscodeJobState,
    TranscodeStage,
    VideoTranscoder,
)

logger = logging.getLogger(__name__)

ProcessingJobType = Union[UploadCompletedJob, ReprocessRequestedJob]

PUBLISHING_STAGE = "publishing"

STAGE_PROGRESS = {
    TranscodeStage.EXTRACTING_METADATA: 10,
    TranscodeStage.GENERATING_THUMBNAIL: 20,
    TranscodeStage.TRANSCODING_RENDITIONS: 50,
    TranscodeStage.BUILDING_MANIFEST: 70,
}
PUBLISHING_PROGRESS = 90


class TranscodingCoordinator:
    """Drives a media item through transcoding and publishing."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        transcoder: VideoTranscoder,
        publisher: ArtifactPublisher,
        progress: ProgressBroker,
        output_root: Union[str, Path],
        publish_original: bool = True,
    ):
        self.session_maker = session_maker
        self.transcoder = transcoder
        self.publisher = publisher
        self.progress = progress
        self.output_root = Path(output_root)
        self.publish_original = publish_original

    def output_dir_for(self, media_item_id: uuid.UUID) -> Path:
        return self.output_root / str(media_item_id)

    async def handle(self, job: ProcessingJobType) -> Optional[PublishedArtifacts]:
        """Process one job.

        Returns:
            Published artifacts, or None if the item was not PENDING

        Raises:
            Exception: Whatever failed, after the item is marked FAILED
        """
        media_item_id = job.media_item_id

        async with self.session_maker() as db:
            repo = MediaItemRepository(db)
            claimed = await repo.claim_for_processing(media_item_id)
            await db.commit()
            item = await repo.get(media_item_id) if claimed else None

        if item is None:
            log_warning(
                logger,
                "Media item not pending, job skipped",
                media_item_id=str(media_item_id),
                job_kind=job.kind,
            )
            TRANSCODE_JOBS_TOTAL.labels(job_kind=job.kind, outcome="skipped").inc()
            return None

        log_info(logger, "Processing started", media_item_id=str(media_item_id), job_kind=job.kind)
        source_path = Path(item.source_path)
        output_dir = self.output_dir_for(media_item_id)

        try:
            outcome = await self._run_transcoder(media_item_id, source_path, output_dir)

            await self.report(media_item_id, PUBLISHING_PROGRESS, PUBLISHING_STAGE)
            published = await asyncio.to_thread(
                self.publisher.publish_all,
                outcome.renditions,
                outcome.thumbnail_path,
                outcome.manifest,
                media_item_id,
                source_path if self.publish_original else None,
            )

            async with self.session_maker() as db:
                completed = await MediaItemRepository(db).mark_completed(
                    media_item_id,
                    duration_seconds=outcome.metadata.duration_seconds,
                    primary_video_url=published.primary_video_url,
                    adaptive_manifest_url=published.manifest_url,
                    thumbnail_url=published.thumbnail_url,
                    video_urls=published.video_urls,
                )
                await db.commit()
        except Exception as e:
            await self._fail(job, e)
            raise

        if not completed:
            # Reset or failed elsewhere while we were working
            await asyncio.to_thread(self.publisher.unpublish, published.keys)
            log_warning(logger, "Media item changed state during processing", media_item_id=str(media_item_id))
            TRANSCODE_JOBS_TOTAL.labels(job_kind=job.kind, outcome="abandoned").inc()
            return None

        await asyncio.to_thread(self.transcoder.discard_outputs, output_dir)
        await self.report(
            media_item_id, 100, TranscodeStage.DONE.value, ProcessingStatus.COMPLETED.value
        )
        TRANSCODE_JOBS_TOTAL.labels(job_kind=job.kind, outcome="completed").inc()
        log_info(
            logger,
            "Processing completed",
            media_item_id=str(media_item_id),
            renditions=sorted(published.video_urls),
        )
        return published

    async def report(
        self,
        media_item_id: uuid.UUID,
        progress: int,
        stage: str,
        status: str = ProcessingStatus.PROCESSING.value,
        message: Optional[str] = None,
    ) -> None:
        """Publish a progress event and persist the percentage."""
        self.progress.publish(
            ProgressEvent(
                media_item_id=media_item_id,
                progress=progress,
                stage=stage,
                status=status,
                message=message,
            )
        )
        if status == ProcessingStatus.PROCESSING.value:
            async with self.session_maker() as db:
                await MediaItemRepository(db).update_progress(media_item_id, progress)
                await db.commit()

    async def _run_transcoder(self, media_item_id: uuid.UUID, source_path: Path, output_dir: Path):
        loop = asyncio.get_running_loop()
        pending_reports: list = []

        def on_stage(stage: TranscodeStage) -> None:
            # Called from the transcoder thread
            percent = STAGE_PROGRESS.get(stage)
            if percent is not None:
                pending_reports.append(
                    asyncio.run_coroutine_threadsafe(
                        self.report(media_item_id, percent, stage.value), loop
                    )
                )

        state = TranscodeJobState()
        try:
            return await asyncio.to_thread(
                self.transcoder.run, source_path, output_dir, state, on_stage
            )
        finally:
            if pending_reports:
                await asyncio.gather(
                    *(asyncio.wrap_future(f) for f in pending_reports),
                    return_exceptions=True,
                )

    async def _fail(self, job: ProcessingJobType, error: Exception) -> None:
        stage = getattr(error, "stage", None)
        message = f"{type(error).__name__}: {error}"
        try:
            async with self.session_maker() as db:
                await MediaItemRepository(db).mark_failed(job.media_item_id, message)
                await db.commit()
        except Exception as db_error:
            log_error(
                logger,
                "Could not mark media item failed",
                exception=db_error,
                media_item_id=str(job.media_item_id),
            )
        latest = self.progress.latest(job.media_item_id)
        self.progress.publish(
            ProgressEvent(
                media_item_id=job.media_item_id,
                progress=latest.progress if latest else 0,
                stage=stage or TranscodeStage.FAILED.value,
                status=ProcessingStatus.FAILED.value,
                message=message,
            )
        )
        TRANSCODE_JOBS_TOTAL.labels(job_kind=job.kind, outcome="failed").inc()
        log_error(
            logger,
            "Processing failed",
            media_item_id=str(job.media_item_id),
            job_kind=job.kind,
            stage=stage,
            error=message,
        )
