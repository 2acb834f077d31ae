"""Tests for the upload session lifecycle."""

import asyncio
import uuid
from datetime import timedelta
from pathlib import Path

import pytest
from hypothesis import given, settings, strategies as st

from media_pipeline.core.config import DEFAULT_ALLOWED_MIME_TYPES
from media_pipeline.core.exceptions import (
    ForbiddenError,
    IncompleteUploadError,
    IntegrityMismatchError,
    InvalidInputError,
    InvalidStateError,
    MissingChunkError,
    NotFoundError,
    OutOfRangeError,
)
from media_pipeline.modules.upload import integrity
from media_pipeline.modules.upload.integrity import hash_bytes
from media_pipeline.modules.upload.models import UploadSession, UploadStatus, progress_percent
from media_pipeline.modules.upload.service import (
    UploadSessionManager,
    expected_chunk_count,
    safe_file_name,
)

MiB = 1024 * 1024


def _payload(size: int) -> bytes:
    return (bytes(range(256)) * (size // 256 + 1))[:size]


def _chunks(data: bytes, chunk_size: int) -> list[bytes]:
    return [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]


async def _initiate(manager: UploadSessionManager, data: bytes, owner_id: str = "user-1"):
    chunks = _chunks(data, manager.chunk_size)
    hashes = [hash_bytes(c) for c in chunks]
    started = await manager.initiate(owner_id, "lecture.mp4", len(data), "video/mp4", len(chunks), hashes)
    return started.session_id, chunks, hashes


async def _load(session_maker, session_id) -> UploadSession:
    async with session_maker() as db:
        return await db.get(UploadSession, session_id)


class TestChunkArithmetic:

    @given(
        file_size=st.integers(min_value=1, max_value=10 * 1024 ** 3),
        chunk_size=st.integers(min_value=1, max_value=64 * MiB),
    )
    @settings(max_examples=200)
    def test_chunk_count_covers_file_exactly(self, file_size: int, chunk_size: int) -> None:
        count = expected_chunk_count(file_size, chunk_size)
        assert (count - 1) * chunk_size < file_size <= count * chunk_size

    @given(total=st.integers(min_value=1, max_value=10_000), data=st.data())
    @settings(max_examples=100)
    def test_progress_reaches_100_only_when_complete(self, total: int, data) -> None:
        uploaded = data.draw(st.integers(min_value=0, max_value=total))
        percent = progress_percent(uploaded, total)
        assert 0 <= percent <= 100
        assert (percent == 100) == (uploaded == total)

    def test_file_names_are_stripped_of_directories(self) -> None:
        assert safe_file_name("../../etc/passwd") == "passwd"
        assert safe_file_name("C:\\videos\\lecture 1.mp4") == "lecture 1.mp4"
        assert safe_file_name("..") == "upload"


class TestInitiate:

    @pytest.mark.asyncio
    async def test_initiate_creates_pending_session_with_storage(
        self, manager, session_maker, chunk_store, clock
    ) -> None:
        session_id, _, hashes = await _initiate(manager, _payload(2500))

        upload = await _load(session_maker, session_id)
        assert upload.status == UploadStatus.PENDING.value
        assert upload.total_chunks == 3
        assert upload.expected_chunk_hashes == hashes
        assert upload.received_chunks == []
        assert upload.expires_at == clock.now + timedelta(hours=24)
        assert chunk_store.exists(session_id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"mime_type": "application/x-msdownload"},
            {"file_size": 11 * MiB, "total_chunks": 11 * 1024},
            {"file_size": 0},
            {"total_chunks": 4},
            {"chunk_hashes": ["a" * 64] * 2},
            {"chunk_hashes": ["not-a-digest"] * 3},
            {"file_name": "   "},
        ],
    )
    async def test_initiate_rejects_invalid_requests(self, manager, chunk_store, overrides) -> None:
        request = {
            "file_name": "lecture.mp4",
            "file_size": 2500,
            "mime_type": "video/mp4",
            "total_chunks": 3,
            "chunk_hashes": ["a" * 64] * 3,
        }
        request.update(overrides)

        with pytest.raises(InvalidInputError):
            await manager.initiate(
                "user-1",
                request["file_name"],
                request["file_size"],
                request["mime_type"],
                request["total_chunks"],
                request["chunk_hashes"],
            )
        assert chunk_store.list_session_dirs() == []


class TestSubmitChunk:

    @pytest.mark.asyncio
    async def test_resubmitting_a_chunk_is_idempotent(self, manager, session_maker) -> None:
        session_id, chunks, hashes = await _initiate(manager, _payload(2500))

        first = await manager.submit_chunk("user-1", session_id, 1, chunks[1], hashes[1])
        second = await manager.submit_chunk("user-1", session_id, 1, chunks[1], hashes[1])

        assert first.uploaded_count == second.uploaded_count == 1
        assert second.progress_percent == 33
        upload = await _load(session_maker, session_id)
        assert upload.status == UploadStatus.UPLOADING.value
        assert upload.received_chunks == [1]

    @pytest.mark.asyncio
    async def test_corrupted_bytes_are_rejected_and_not_stored(
        self, manager, session_maker, chunk_store
    ) -> None:
        session_id, chunks, hashes = await _initiate(manager, _payload(2500))
        corrupted = b"\x00" + chunks[0][1:]

        with pytest.raises(IntegrityMismatchError):
            await manager.submit_chunk("user-1", session_id, 0, corrupted, hashes[0])

        assert not chunk_store.chunk_path(session_id, 0).exists()
        upload = await _load(session_maker, session_id)
        assert upload.status == UploadStatus.PENDING.value
        assert upload.received_chunks == []

    @pytest.mark.asyncio
    async def test_claimed_hash_must_match_expected(self, manager) -> None:
        session_id, chunks, _ = await _initiate(manager, _payload(2500))

        with pytest.raises(IntegrityMismatchError):
            await manager.submit_chunk("user-1", session_id, 0, chunks[0], hash_bytes(b"other"))

    @pytest.mark.asyncio
    async def test_claimed_hash_is_case_insensitive(self, manager) -> None:
        session_id, chunks, hashes = await _initiate(manager, _payload(2500))

        result = await manager.submit_chunk("user-1", session_id, 0, chunks[0], hashes[0].upper())

        assert result.uploaded_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("index", [-1, 3, 100])
    async def test_out_of_range_index(self, manager, index) -> None:
        session_id, chunks, hashes = await _initiate(manager, _payload(2500))

        with pytest.raises(OutOfRangeError):
            await manager.submit_chunk("user-1", session_id, index, chunks[0], hashes[0])

    @pytest.mark.asyncio
    async def test_oversized_chunk_is_rejected(self, manager) -> None:
        session_id, _, _ = await _initiate(manager, _payload(2500))
        too_big = _payload(manager.chunk_size + 1)

        with pytest.raises(InvalidInputError):
            await manager.submit_chunk("user-1", session_id, 0, too_big, hash_bytes(too_big))

    @pytest.mark.asyncio
    async def test_oversized_chunk_is_rejected_before_hashing(self, manager, monkeypatch) -> None:
        session_id, _, hashes = await _initiate(manager, _payload(2500))
        hashed = []

        def recording_hash(data: bytes) -> str:
            hashed.append(len(data))
            return hash_bytes(data)

        monkeypatch.setattr(integrity, "hash_bytes", recording_hash)

        with pytest.raises(InvalidInputError):
            await manager.submit_chunk(
                "user-1", session_id, 0, _payload(manager.chunk_size * 4), hashes[0]
            )
        assert hashed == []

    @pytest.mark.asyncio
    async def test_other_owner_is_forbidden(self, manager) -> None:
        session_id, chunks, hashes = await _initiate(manager, _payload(2500))

        with pytest.raises(ForbiddenError):
            await manager.submit_chunk("user-2", session_id, 0, chunks[0], hashes[0])

    @pytest.mark.asyncio
    async def test_unknown_session(self, manager) -> None:
        with pytest.raises(NotFoundError):
            await manager.submit_chunk("user-1", uuid.uuid4(), 0, b"x", hash_bytes(b"x"))

    @pytest.mark.asyncio
    async def test_submit_after_storage_released_is_invalid_state(
        self, manager, chunk_store
    ) -> None:
        session_id, chunks, hashes = await _initiate(manager, _payload(2500))
        chunk_store.purge(session_id)

        with pytest.raises(InvalidStateError):
            await manager.submit_chunk("user-1", session_id, 0, chunks[0], hashes[0])

        assert not chunk_store.exists(session_id)

    @pytest.mark.asyncio
    async def test_expired_session_rejects_chunks_and_releases_storage(
        self, manager, session_maker, chunk_store, clock
    ) -> None:
        session_id, chunks, hashes = await _initiate(manager, _payload(2500))
        await manager.submit_chunk("user-1", session_id, 0, chunks[0], hashes[0])

        clock.now += timedelta(hours=25)
        with pytest.raises(InvalidStateError):
            await manager.submit_chunk("user-1", session_id, 1, chunks[1], hashes[1])

        upload = await _load(session_maker, session_id)
        assert upload.status == UploadStatus.EXPIRED.value
        assert not chunk_store.exists(session_id)


class TestComplete:

    @pytest.mark.asyncio
    async def test_out_of_order_concurrent_upload_reassembles_exactly(
        self, session_maker, chunk_store, settings
    ) -> None:
        manager = UploadSessionManager(
            session_maker=session_maker,
            chunk_store=chunk_store,
            assembled_dir=settings.UPLOAD_ASSEMBLED_DIR,
            chunk_size=5 * MiB,
            max_file_size=2 * 1024 * MiB,
            allowed_mime_types=DEFAULT_ALLOWED_MIME_TYPES,
            session_ttl=timedelta(hours=24),
        )
        data = _payload(12 * MiB)
        session_id, chunks, hashes = await _initiate(manager, data)
        assert len(chunks) == 3

        await asyncio.gather(
            *(
                manager.submit_chunk("user-1", session_id, i, chunks[i], hashes[i])
                for i in (2, 0, 1)
            )
        )
        result = await manager.complete("user-1", session_id, hash_bytes(data))

        with open(result.assembled_path, "rb") as f:
            assert f.read() == data
        assert result.file_hash == hash_bytes(data)
        assert result.file_size == len(data)
        upload = await _load(session_maker, session_id)
        assert upload.status == UploadStatus.COMPLETED.value
        assert upload.completed_at is not None
        assert not chunk_store.exists(session_id)

    @pytest.mark.asyncio
    async def test_concurrent_complete_assembles_once(self, manager, session_maker, settings) -> None:
        data = _payload(2500)
        session_id = await _upload_all(manager, data)

        results = await asyncio.gather(
            manager.complete("user-1", session_id, hash_bytes(data)),
            manager.complete("user-1", session_id, hash_bytes(data)),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, BaseException)]
        refused = [r for r in results if isinstance(r, BaseException)]
        assert len(succeeded) == 1
        assert len(refused) == 1
        assert isinstance(refused[0], InvalidStateError)

        assembled = list((Path(settings.UPLOAD_ASSEMBLED_DIR) / str(session_id)).iterdir())
        assert [str(p) for p in assembled] == [succeeded[0].assembled_path]
        assert assembled[0].read_bytes() == data
        upload = await _load(session_maker, session_id)
        assert upload.status == UploadStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_incomplete_upload_stays_resumable(self, manager, session_maker) -> None:
        data = _payload(2500)
        session_id, chunks, hashes = await _initiate(manager, data)
        await manager.submit_chunk("user-1", session_id, 0, chunks[0], hashes[0])

        with pytest.raises(IncompleteUploadError) as exc_info:
            await manager.complete("user-1", session_id, hash_bytes(data))
        assert exc_info.value.details["missing_chunks"] == [1, 2]

        upload = await _load(session_maker, session_id)
        assert upload.status == UploadStatus.UPLOADING.value

        for i in (1, 2):
            await manager.submit_chunk("user-1", session_id, i, chunks[i], hashes[i])
        result = await manager.complete("user-1", session_id, hash_bytes(data))
        assert result.file_hash == hash_bytes(data)

    @pytest.mark.asyncio
    async def test_final_hash_mismatch_fails_session(
        self, manager, session_maker, chunk_store, settings, tmp_path
    ) -> None:
        data = _payload(2500)
        session_id = await _upload_all(manager, data)

        with pytest.raises(IntegrityMismatchError):
            await manager.complete("user-1", session_id, hash_bytes(b"something else"))

        upload = await _load(session_maker, session_id)
        assert upload.status == UploadStatus.FAILED.value
        assert upload.failure_reason == "Final file hash mismatch"
        assert upload.failed_at is not None
        assert not chunk_store.exists(session_id)
        assert not (tmp_path / "uploads" / str(session_id)).exists()

    @pytest.mark.asyncio
    async def test_chunk_lost_from_storage_fails_session(
        self, manager, session_maker, chunk_store
    ) -> None:
        data = _payload(2500)
        session_id = await _upload_all(manager, data)
        chunk_store.chunk_path(session_id, 1).unlink()

        with pytest.raises(MissingChunkError):
            await manager.complete("user-1", session_id, hash_bytes(data))

        upload = await _load(session_maker, session_id)
        assert upload.status == UploadStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_completed_session_rejects_further_chunks(self, manager) -> None:
        data = _payload(2500)
        session_id = await _upload_all(manager, data)
        await manager.complete("user-1", session_id, hash_bytes(data))

        with pytest.raises(InvalidStateError):
            await manager.submit_chunk("user-1", session_id, 0, data[:1024], hash_bytes(data[:1024]))
        with pytest.raises(InvalidStateError):
            await manager.complete("user-1", session_id, hash_bytes(data))


class TestStatusAndCancel:

    @pytest.mark.asyncio
    async def test_status_reports_received_chunks(self, manager) -> None:
        session_id, chunks, hashes = await _initiate(manager, _payload(2500))
        await manager.submit_chunk("user-1", session_id, 2, chunks[2], hashes[2])

        status = await manager.status("user-1", session_id)

        assert status.status == UploadStatus.UPLOADING
        assert status.received_chunks == [2]
        assert status.uploaded_count == 1
        assert status.progress_percent == 33

    @pytest.mark.asyncio
    async def test_status_reports_expiry_before_it_is_written(
        self, manager, session_maker, clock
    ) -> None:
        session_id, _, _ = await _initiate(manager, _payload(2500))
        clock.now += timedelta(days=2)

        status = await manager.status("user-1", session_id)

        assert status.status == UploadStatus.EXPIRED
        upload = await _load(session_maker, session_id)
        assert upload.status == UploadStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_cancel_releases_storage(self, manager, session_maker, chunk_store) -> None:
        session_id, chunks, hashes = await _initiate(manager, _payload(2500))
        await manager.submit_chunk("user-1", session_id, 0, chunks[0], hashes[0])

        result = await manager.cancel("user-1", session_id)

        assert result.status == UploadStatus.FAILED
        assert not chunk_store.exists(session_id)
        upload = await _load(session_maker, session_id)
        assert upload.failure_reason == "Cancelled by owner"
        with pytest.raises(InvalidStateError):
            await manager.submit_chunk("user-1", session_id, 1, chunks[1], hashes[1])

        # Cancelling again is harmless
        again = await manager.cancel("user-1", session_id)
        assert again.status == UploadStatus.FAILED

    @pytest.mark.asyncio
    async def test_completed_session_cannot_be_cancelled(self, manager) -> None:
        data = _payload(2500)
        session_id = await _upload_all(manager, data)
        await manager.complete("user-1", session_id, hash_bytes(data))

        with pytest.raises(InvalidStateError):
            await manager.cancel("user-1", session_id)

    @pytest.mark.asyncio
    async def test_cancel_of_expired_session_expires_it(
        self, manager, session_maker, clock
    ) -> None:
        session_id, _, _ = await _initiate(manager, _payload(2500))
        clock.now += timedelta(days=2)

        result = await manager.cancel("user-1", session_id)

        assert result.status == UploadStatus.EXPIRED
        upload = await _load(session_maker, session_id)
        assert upload.status == UploadStatus.EXPIRED.value


async def _upload_all(manager: UploadSessionManager, data: bytes) -> uuid.UUID:
    session_id, chunks, hashes = await _initiate(manager, data)
    for i, chunk in enumerate(chunks):
        await manager.submit_chunk("user-1", session_id, i, chunk, hashes[i])
    return session_id
