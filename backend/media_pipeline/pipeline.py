"""Wiring of the upload and processing services.

One ``Pipeline`` is built per process and owns the long-lived pieces: the
per-session locks, the work queue and the garbage collection schedule.
"""

from dataclasses import dataclass
from typing import Optional, Union

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from media_pipeline.core.config import Settings
from media_pipeline.core.locks import KeyedLocks
from media_pipeline.core.storage import StorageConfig, create_storage
from media_pipeline.modules.cleanup.scheduler import CleanupScheduler
from media_pipeline.modules.cleanup.service import GarbageCollector
from media_pipeline.modules.media.service import MediaService
from media_pipeline.modules.processing.coordinator import TranscodingCoordinator
from media_pipeline.modules.processing.progress import ProgressBroker
from media_pipeline.modules.processing.queue import WorkQueue
from media_pipeline.modules.processing.tasks import CeleryJobQueue
from media_pipeline.modules.transcoding.publisher import ArtifactPublisher
from media_pipeline.modules.transcoding.service import VideoTranscoder
from media_pipeline.modules.upload.chunk_store import ChunkStore
from media_pipeline.modules.upload.service import UploadSessionManager

JobQueue = Union[WorkQueue, CeleryJobQueue]


@dataclass
class Pipeline:
    """Long-lived services for one process."""
    settings: Settings
    upload_manager: UploadSessionManager
    media_service: MediaService
    coordinator: TranscodingCoordinator
    progress: ProgressBroker
    queue: JobQueue
    garbage_collector: GarbageCollector
    scheduler: Optional[CleanupScheduler] = None

    async def start(self) -> None:
        await self.queue.start()
        if self.scheduler is not None:
            self.scheduler.start()

    async def stop(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        await self.queue.stop()


def build_coordinator(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    progress: ProgressBroker,
) -> TranscodingCoordinator:
    publisher = ArtifactPublisher(
        create_storage(StorageConfig.from_settings(settings)),
        key_prefix=settings.STORAGE_KEY_PREFIX,
    )
    return TranscodingCoordinator(
        session_maker=session_maker,
        transcoder=VideoTranscoder.from_settings(settings),
        publisher=publisher,
        progress=progress,
        output_root=settings.VIDEO_OUTPUT_DIR,
        publish_original=settings.TRANSCODE_PUBLISH_ORIGINAL,
    )


def build_queue(settings: Settings, coordinator: TranscodingCoordinator) -> JobQueue:
    backend = settings.JOB_QUEUE_BACKEND.lower()
    if backend == "local":
        return WorkQueue(
            coordinator.handle,
            workers=settings.TRANSCODE_WORKERS,
            maxsize=settings.TRANSCODE_QUEUE_SIZE,
        )
    if backend == "celery":
        return CeleryJobQueue()
    raise ValueError(f"Unsupported job queue backend: {backend}")


def build_garbage_collector(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    chunk_store: Optional[ChunkStore] = None,
    locks: Optional[KeyedLocks] = None,
    queue: Optional[JobQueue] = None,
) -> GarbageCollector:
    if queue is None and settings.JOB_QUEUE_BACKEND.lower() == "celery":
        queue = CeleryJobQueue()
    return GarbageCollector.from_settings(
        settings,
        session_maker,
        chunk_store or ChunkStore(settings.UPLOAD_TEMP_DIR),
        locks=locks,
        dispatch=queue.submit if queue is not None else None,
    )


def build_pipeline(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
) -> Pipeline:
    locks = KeyedLocks()
    chunk_store = ChunkStore(settings.UPLOAD_TEMP_DIR)
    progress = ProgressBroker()

    coordinator = build_coordinator(settings, session_maker, progress)
    queue = build_queue(settings, coordinator)
    collector = build_garbage_collector(settings, session_maker, chunk_store, locks, queue)

    scheduler = None
    if settings.GC_ENABLED and settings.JOB_QUEUE_BACKEND.lower() == "local":
        scheduler = CleanupScheduler(collector, settings.GC_INTERVAL_SECONDS)

    return Pipeline(
        settings=settings,
        upload_manager=UploadSessionManager.from_settings(settings, session_maker, chunk_store, locks),
        media_service=MediaService(session_maker, queue, progress),
        coordinator=coordinator,
        progress=progress,
        queue=queue,
        garbage_collector=collector,
        scheduler=scheduler,
    )


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def get_upload_manager(request: Request) -> UploadSessionManager:
    return get_pipeline(request).upload_manager


def get_media_service(request: Request) -> MediaService:
    return get_pipeline(request).media_service
