"""Tests for the end-to-end processing of a media item."""

import uuid
from pathlib import Path

import pytest

from media_pipeline.core.exceptions import PublishError, TranscodeError, UnreadableMediaError
from media_pipeline.core.storage import LocalStorage, StorageConfig, StorageResult
from media_pipeline.modules.media.models import MediaItem, ProcessingStatus
from media_pipeline.modules.media.repository import MediaItemRepository
from media_pipeline.modules.processing.coordinator import TranscodingCoordinator
from media_pipeline.modules.processing.jobs import ReprocessRequestedJob, UploadCompletedJob
from media_pipeline.modules.processing.progress import ProgressBroker
from media_pipeline.modules.transcoding.publisher import ArtifactPublisher


class ManifestRejectingStorage(LocalStorage):
    def upload(self, file_path, key, content_type="application/octet-stream"):
        if key.endswith("hls/playlist.m3u8"):
            return StorageResult(success=False, key=key, url="", error_message="quota exceeded")
        return super().upload(file_path, key, content_type)


@pytest.fixture
def source(tmp_path) -> Path:
    path = tmp_path / "uploads" / "lecture.mp4"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"source video")
    return path


@pytest.fixture
def progress() -> ProgressBroker:
    return ProgressBroker()


@pytest.fixture
def make_coordinator(session_maker, make_transcoder, publisher, progress, settings):
    def factory(transcoder=None, publisher_=None) -> TranscodingCoordinator:
        return TranscodingCoordinator(
            session_maker=session_maker,
            transcoder=transcoder or make_transcoder(),
            publisher=publisher_ or publisher,
            progress=progress,
            output_root=settings.VIDEO_OUTPUT_DIR,
        )

    return factory


async def _create_item(session_maker, source: Path) -> uuid.UUID:
    async with session_maker() as db:
        item = await MediaItemRepository(db).create(
            owner_id="user-1",
            title="Lecture 1",
            source_path=str(source),
            mime_type="video/mp4",
        )
        await db.commit()
        return item.id


async def _get(session_maker, media_item_id) -> MediaItem:
    async with session_maker() as db:
        return await db.get(MediaItem, media_item_id)


def _job(media_item_id, source) -> UploadCompletedJob:
    return UploadCompletedJob(
        media_item_id=media_item_id,
        upload_session_id=uuid.uuid4(),
        source_path=str(source),
    )


class TestTranscodingCoordinator:

    @pytest.mark.asyncio
    async def test_successful_job_completes_item(
        self, make_coordinator, session_maker, progress, source, settings
    ) -> None:
        media_item_id = await _create_item(session_maker, source)
        coordinator = make_coordinator()

        async with progress.subscribe(media_item_id) as events:
            published = await coordinator.handle(_job(media_item_id, source))
            seen = [events.get_nowait() for _ in range(events.qsize())]

        item = await _get(session_maker, media_item_id)
        assert item.processing_status == ProcessingStatus.COMPLETED.value
        assert item.processing_progress == 100
        assert item.attempts == 1
        assert item.duration_seconds == 120.0
        assert item.adaptive_manifest_url == published.manifest_url
        assert item.adaptive_manifest_url.endswith(f"/{media_item_id}/hls/playlist.m3u8")
        assert item.thumbnail_url.endswith("/thumbnail.jpg")
        assert item.primary_video_url.endswith("/original.mp4")
        assert sorted(item.video_urls) == ["360p", "480p", "720p"]
        assert item.completed_at is not None

        assert [e.progress for e in seen] == [10, 20, 50, 70, 90, 100]
        assert seen[-1].status == "completed"
        # Working directory is released on success
        assert not (Path(settings.VIDEO_OUTPUT_DIR) / str(media_item_id)).exists()

    @pytest.mark.asyncio
    async def test_item_not_pending_is_skipped(
        self, make_coordinator, session_maker, source
    ) -> None:
        media_item_id = await _create_item(session_maker, source)
        coordinator = make_coordinator()
        await coordinator.handle(_job(media_item_id, source))

        again = await coordinator.handle(ReprocessRequestedJob(media_item_id=media_item_id))

        assert again is None
        item = await _get(session_maker, media_item_id)
        assert item.processing_status == ProcessingStatus.COMPLETED.value
        assert item.attempts == 1

    @pytest.mark.asyncio
    async def test_unknown_item_is_skipped(self, make_coordinator, source) -> None:
        assert await make_coordinator().handle(_job(uuid.uuid4(), source)) is None

    @pytest.mark.asyncio
    async def test_transcode_failure_marks_item_failed(
        self, make_coordinator, make_transcoder, session_maker, progress, source, settings
    ) -> None:
        media_item_id = await _create_item(session_maker, source)
        coordinator = make_coordinator(transcoder=make_transcoder(fail_on="480p"))

        with pytest.raises(TranscodeError):
            await coordinator.handle(_job(media_item_id, source))

        item = await _get(session_maker, media_item_id)
        assert item.processing_status == ProcessingStatus.FAILED.value
        assert "TranscodeError" in item.error_message
        assert item.failed_at is not None
        assert item.adaptive_manifest_url is None
        assert item.video_urls is None
        latest = progress.latest(media_item_id)
        assert latest.status == "failed"
        assert latest.stage == "transcoding-renditions"
        assert list(Path(settings.LOCAL_STORAGE_PATH).rglob("*.mp4")) == []

    @pytest.mark.asyncio
    async def test_unreadable_source_marks_item_failed(
        self, make_coordinator, make_transcoder, session_maker, source
    ) -> None:
        media_item_id = await _create_item(session_maker, source)
        coordinator = make_coordinator(transcoder=make_transcoder(fail_on="probe"))

        with pytest.raises(UnreadableMediaError):
            await coordinator.handle(_job(media_item_id, source))

        item = await _get(session_maker, media_item_id)
        assert item.processing_status == ProcessingStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_publish_failure_leaves_nothing_published(
        self, make_coordinator, session_maker, source, settings
    ) -> None:
        media_item_id = await _create_item(session_maker, source)
        storage = ManifestRejectingStorage(
            StorageConfig(backend="local", local_path=settings.LOCAL_STORAGE_PATH)
        )
        coordinator = make_coordinator(publisher_=ArtifactPublisher(storage))

        with pytest.raises(PublishError):
            await coordinator.handle(_job(media_item_id, source))

        item = await _get(session_maker, media_item_id)
        assert item.processing_status == ProcessingStatus.FAILED.value
        assert item.primary_video_url is None
        assert [p for p in Path(settings.LOCAL_STORAGE_PATH).rglob("*") if p.is_file()] == []

    @pytest.mark.asyncio
    async def test_reprocessing_after_failure_succeeds(
        self, make_coordinator, make_transcoder, session_maker, source
    ) -> None:
        media_item_id = await _create_item(session_maker, source)
        with pytest.raises(TranscodeError):
            await make_coordinator(transcoder=make_transcoder(fail_on="720p")).handle(
                _job(media_item_id, source)
            )
        async with session_maker() as db:
            assert await MediaItemRepository(db).reset_to_pending(
                media_item_id, [ProcessingStatus.FAILED.value]
            )
            await db.commit()

        published = await make_coordinator().handle(ReprocessRequestedJob(media_item_id=media_item_id))

        assert published is not None
        item = await _get(session_maker, media_item_id)
        assert item.processing_status == ProcessingStatus.COMPLETED.value
        assert item.attempts == 2
        assert item.error_message is None
