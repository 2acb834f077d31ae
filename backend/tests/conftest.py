"""Shared fixtures: isolated settings, a SQLite database and fake ffmpeg."""

from datetime import timedelta
from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio

from media_pipeline.core.clock import utcnow
from media_pipeline.core.config import DEFAULT_ALLOWED_MIME_TYPES, Settings
from media_pipeline.core.database import Base, create_engine, create_session_maker
from media_pipeline.core.exceptions import TranscodeError, UnreadableMediaError
from media_pipeline.core.locks import KeyedLocks
from media_pipeline.core.storage import LocalStorage, StorageConfig
from media_pipeline.modules.media.models import MediaItem  # noqa: F401
from media_pipeline.modules.transcoding.ffmpeg import MediaMetadata
from media_pipeline.modules.transcoding.publisher import ArtifactPublisher
from media_pipeline.modules.transcoding.service import VideoTranscoder
from media_pipeline.modules.upload.chunk_store import ChunkStore
from media_pipeline.modules.upload.integrity import hash_bytes
from media_pipeline.modules.upload.models import UploadSession  # noqa: F401
from media_pipeline.modules.upload.service import UploadSessionManager


class FakeClock:
    """Settable clock returning naive UTC datetimes."""

    def __init__(self, now=None):
        self.now = now or utcnow()

    def __call__(self):
        return self.now


class FakeFFmpeg:
    """Stands in for FFmpegTranscoder by writing placeholder files."""

    def __init__(
        self,
        metadata: Optional[MediaMetadata] = None,
        fail_on: Optional[str] = None,
        segments_per_rendition: int = 2,
    ):
        self.metadata = metadata or MediaMetadata(
            duration_seconds=120.0, width=1280, height=720, bitrate=3_000_000
        )
        self.fail_on = fail_on
        self.segments_per_rendition = segments_per_rendition
        self.thumbnail_offsets: list[float] = []
        self.transcoded: list[str] = []

    def probe(self, input_path):
        if self.fail_on == "probe":
            raise UnreadableMediaError("Not a video")
        return self.metadata

    def generate_thumbnail(self, input_path, output_path, offset_seconds, size="750x422"):
        if self.fail_on == "thumbnail":
            raise TranscodeError("thumbnail failed")
        self.thumbnail_offsets.append(offset_seconds)
        Path(output_path).write_bytes(b"jpeg")
        return Path(output_path)

    def transcode_rendition(self, input_path, output_path, profile, segment_seconds=10):
        if self.fail_on == profile.label:
            raise TranscodeError(f"encode {profile.label} failed")
        self.transcoded.append(profile.label)
        Path(output_path).write_bytes(f"mp4 {profile.label}".encode())
        return Path(output_path)

    def segment_hls(self, input_path, playlist_path, segment_pattern, segment_seconds=10):
        if self.fail_on == "hls":
            raise TranscodeError("segmenting failed")
        lines = ["#EXTM3U", "#EXT-X-VERSION:3", f"#EXT-X-TARGETDURATION:{segment_seconds}"]
        for i in range(self.segments_per_rendition):
            segment = Path(str(segment_pattern) % i)
            segment.write_bytes(b"ts")
            lines += [f"#EXTINF:{segment_seconds}.0,", segment.name]
        lines.append("#EXT-X-ENDLIST")
        Path(playlist_path).write_text("\n".join(lines) + "\n")
        return Path(playlist_path)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}",
        DATABASE_AUTO_CREATE=True,
        LOG_JSON=False,
        UPLOAD_TEMP_DIR=str(tmp_path / "temp"),
        UPLOAD_ASSEMBLED_DIR=str(tmp_path / "uploads"),
        VIDEO_OUTPUT_DIR=str(tmp_path / "output"),
        LOCAL_STORAGE_PATH=str(tmp_path / "storage"),
        UPLOAD_CHUNK_SIZE=1024,
        GC_ENABLED=False,
    )


@pytest_asyncio.fixture
async def session_maker(settings):
    engine = create_engine(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield create_session_maker(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def chunk_store(settings) -> ChunkStore:
    return ChunkStore(settings.UPLOAD_TEMP_DIR)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage(settings) -> LocalStorage:
    return LocalStorage(
        StorageConfig(backend="local", local_path=settings.LOCAL_STORAGE_PATH, public_base_url="/media")
    )


@pytest.fixture
def publisher(storage) -> ArtifactPublisher:
    return ArtifactPublisher(storage, key_prefix="lectures")


@pytest.fixture
def make_transcoder():
    def factory(**kwargs) -> VideoTranscoder:
        return VideoTranscoder(ffmpeg=FakeFFmpeg(**kwargs))

    return factory


@pytest.fixture
def locks() -> KeyedLocks:
    return KeyedLocks()


@pytest.fixture
def manager(session_maker, chunk_store, settings, clock, locks) -> UploadSessionManager:
    return UploadSessionManager(
        session_maker=session_maker,
        chunk_store=chunk_store,
        assembled_dir=settings.UPLOAD_ASSEMBLED_DIR,
        chunk_size=settings.UPLOAD_CHUNK_SIZE,
        max_file_size=10 * 1024 * 1024,
        allowed_mime_types=DEFAULT_ALLOWED_MIME_TYPES,
        session_ttl=timedelta(hours=24),
        locks=locks,
        clock=clock,
    )


def split_chunks(data: bytes, chunk_size: int) -> list[bytes]:
    return [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]


@pytest.fixture
def upload_file(manager):
    """Run a whole upload; returns the completion result, or the session id
    when ``complete`` is False."""

    async def _upload(
        data: bytes,
        owner_id: str = "user-1",
        mime_type: str = "video/mp4",
        file_name: str = "lecture.mp4",
        complete: bool = True,
    ):
        chunks = split_chunks(data, manager.chunk_size)
        hashes = [hash_bytes(c) for c in chunks]
        started = await manager.initiate(owner_id, file_name, len(data), mime_type, len(chunks), hashes)
        for index, chunk in enumerate(chunks):
            await manager.submit_chunk(owner_id, started.session_id, index, chunk, hashes[index])
        if not complete:
            return started.session_id
        return await manager.complete(owner_id, started.session_id, hash_bytes(data))

    return _upload
