"""Upload session service.

Owns the upload session state machine:

    PENDING -> UPLOADING -> COMPLETED | FAILED
    PENDING | UPLOADING -> EXPIRED (once past expires_at)

Each session's mutations run under a per-session lock; file I/O and hashing
are pushed to worker threads so one slow upload never blocks another.
"""

import asyncio
import logging
import shutil
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from media_pipeline.core.clock import utcnow
from media_pipeline.core.config import Settings
from media_pipeline.core.exceptions import (
    ForbiddenError,
    IncompleteUploadError,
    IntegrityMismatchError,
    InvalidInputError,
    InvalidStateError,
    MissingChunkError,
    NotFoundError,
    OutOfRangeError,
    StorageAreaMissingError,
)
from media_pipeline.core.locks import KeyedLocks
from media_pipeline.core.logging import log_info, log_warning
from media_pipeline.core.metrics import (
    UPLOAD_BYTES_RECEIVED,
    UPLOAD_CHUNKS_TOTAL,
    UPLOAD_SESSIONS_TOTAL,
)
from media_pipeline.modules.upload import integrity
from media_pipeline.modules.upload.chunk_store import ChunkStore
from media_pipeline.modules.upload.models import (
    ACTIVE_STATUSES,
    UploadSession,
    UploadStatus,
    progress_percent,
)
from media_pipeline.modules.upload.repository import UploadSessionRepository
from media_pipeline.modules.upload.schemas import (
    CancelUploadResponse,
    ChunkAcceptedResponse,
    CompleteUploadResponse,
    InitiateUploadResponse,
    UploadStatusResponse,
)

logger = logging.getLogger(__name__)


def expected_chunk_count(file_size: int, chunk_size: int) -> int:
    """Number of chunks a file of ``file_size`` bytes splits into."""
    return (file_size + chunk_size - 1) // chunk_size


def safe_file_name(file_name: str) -> str:
    """Strip any directory components from a client-supplied file name."""
    name = Path(file_name.replace("\\", "/")).name.strip()
    if name in ("", ".", ".."):
        return "upload"
    return name


class UploadSessionManager:
    """Service for resumable chunked uploads."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        chunk_store: ChunkStore,
        assembled_dir: str,
        chunk_size: int,
        max_file_size: int,
        allowed_mime_types: Iterable[str],
        session_ttl: timedelta,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_maker = session_maker
        self.chunk_store = chunk_store
        self.assembled_dir = Path(assembled_dir)
        self.chunk_size = chunk_size
        self.max_file_size = max_file_size
        self.allowed_mime_types = frozenset(allowed_mime_types)
        self.session_ttl = session_ttl
        self.locks = locks or KeyedLocks()
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_maker: async_sessionmaker[AsyncSession],
        chunk_store: ChunkStore,
        locks: Optional[KeyedLocks] = None,
    ) -> "UploadSessionManager":
        return cls(
            session_maker=session_maker,
            chunk_store=chunk_store,
            assembled_dir=settings.UPLOAD_ASSEMBLED_DIR,
            chunk_size=settings.UPLOAD_CHUNK_SIZE,
            max_file_size=settings.UPLOAD_MAX_FILE_SIZE,
            allowed_mime_types=settings.UPLOAD_ALLOWED_MIME_TYPES,
            session_ttl=timedelta(hours=settings.UPLOAD_SESSION_TTL_HOURS),
            locks=locks,
        )

    # ============================================
    # Operations
    # ============================================

    async def initiate(
        self,
        owner_id: str,
        file_name: str,
        file_size: int,
        mime_type: str,
        total_chunks: int,
        expected_chunk_hashes: list[str],
    ) -> InitiateUploadResponse:
        """Start a new upload session.

        Args:
            owner_id: Authenticated user id
            file_name: Original file name
            file_size: Total size in bytes
            mime_type: Declared MIME type
            total_chunks: Number of chunks the client will send
            expected_chunk_hashes: SHA-256 hex digest of every chunk, in order

        Returns:
            InitiateUploadResponse: Session id, server chunk size and expiry

        Raises:
            InvalidInputError: If the request violates upload policy
        """
        hashes = self._validate_initiate(
            file_name, file_size, mime_type, total_chunks, expected_chunk_hashes
        )
        now = self.clock()

        async with self.session_maker() as db:
            repo = UploadSessionRepository(db)
            upload = await repo.create(
                owner_id=owner_id,
                file_name=safe_file_name(file_name),
                file_size=file_size,
                mime_type=mime_type,
                chunk_size=self.chunk_size,
                total_chunks=total_chunks,
                expected_chunk_hashes=hashes,
                expires_at=now + self.session_ttl,
            )
            await asyncio.to_thread(self.chunk_store.allocate, upload.id)
            await db.commit()

        UPLOAD_SESSIONS_TOTAL.labels(outcome="initiated").inc()
        log_info(
            logger,
            "Upload session initiated",
            session_id=str(upload.id),
            owner_id=owner_id,
            file_size=file_size,
            total_chunks=total_chunks,
        )
        return InitiateUploadResponse(
            session_id=upload.id,
            chunk_size=self.chunk_size,
            total_chunks=total_chunks,
            expires_at=upload.expires_at,
        )

    async def submit_chunk(
        self,
        owner_id: str,
        session_id: uuid.UUID,
        chunk_index: int,
        data: bytes,
        claimed_hash: str,
    ) -> ChunkAcceptedResponse:
        """Store one chunk of an upload.

        The claimed hash and the actual bytes are both checked against the
        hash recorded at initiation before anything is written. Resubmitting
        an index overwrites its slot without changing the uploaded count.

        Raises:
            NotFoundError: Unknown session
            ForbiddenError: Session belongs to another user
            InvalidStateError: Session no longer accepts chunks
            OutOfRangeError: Index outside ``[0, total_chunks)``
            IntegrityMismatchError: Hash disagreement, chunk not stored
        """
        async with self.locks.hold(session_id):
            async with self.session_maker() as db:
                repo = UploadSessionRepository(db)
                upload = await self._load_owned(repo, owner_id, session_id)
                await self._expire_if_due(db, repo, upload)

                if upload.status not in ACTIVE_STATUSES:
                    UPLOAD_CHUNKS_TOTAL.labels(outcome="invalid_state").inc()
                    raise InvalidStateError(
                        f"Upload session is {upload.status}",
                        details={"status": upload.status},
                    )
                if chunk_index < 0 or chunk_index >= upload.total_chunks:
                    UPLOAD_CHUNKS_TOTAL.labels(outcome="out_of_range").inc()
                    raise OutOfRangeError(
                        f"Chunk index {chunk_index} is outside 0..{upload.total_chunks - 1}",
                        details={"chunk_index": chunk_index, "total_chunks": upload.total_chunks},
                    )
                if len(data) > upload.chunk_size:
                    UPLOAD_CHUNKS_TOTAL.labels(outcome="invalid_input").inc()
                    raise InvalidInputError(
                        f"Chunk exceeds the {upload.chunk_size} byte chunk size",
                        details={"chunk_index": chunk_index, "size": len(data)},
                    )

                actual_hash = await asyncio.to_thread(integrity.hash_bytes, data)
                expected = upload.expected_chunk_hashes[chunk_index]
                if not integrity.digests_match(claimed_hash, expected) or not integrity.digests_match(
                    actual_hash, expected
                ):
                    UPLOAD_CHUNKS_TOTAL.labels(outcome="integrity_mismatch").inc()
                    log_warning(
                        logger,
                        "Chunk rejected: hash mismatch",
                        session_id=str(session_id),
                        chunk_index=chunk_index,
                    )
                    raise IntegrityMismatchError(
                        f"Chunk {chunk_index} does not match its expected hash",
                        details={"chunk_index": chunk_index},
                    )

                try:
                    await asyncio.to_thread(self.chunk_store.put, session_id, chunk_index, data)
                except StorageAreaMissingError as e:
                    UPLOAD_CHUNKS_TOTAL.labels(outcome="invalid_state").inc()
                    raise InvalidStateError(
                        "Upload session storage has been released",
                        details={"chunk_index": chunk_index},
                    ) from e

                received = set(upload.received_chunks or [])
                received.add(chunk_index)
                if not await repo.record_chunks(session_id, sorted(received)):
                    # Status changed underneath us (expired or cancelled elsewhere)
                    await db.rollback()
                    await asyncio.to_thread(self.chunk_store.purge, session_id)
                    raise InvalidStateError("Upload session no longer accepts chunks")
                await db.commit()

        UPLOAD_CHUNKS_TOTAL.labels(outcome="accepted").inc()
        UPLOAD_BYTES_RECEIVED.inc(len(data))
        logger.debug(
            "Chunk stored",
            extra={"session_id": str(session_id), "chunk_index": chunk_index},
        )
        return ChunkAcceptedResponse(
            session_id=session_id,
            chunk_index=chunk_index,
            uploaded_count=len(received),
            total_chunks=upload.total_chunks,
            progress_percent=progress_percent(len(received), upload.total_chunks),
        )

    async def complete(
        self,
        owner_id: str,
        session_id: uuid.UUID,
        claimed_final_hash: str,
    ) -> CompleteUploadResponse:
        """Reassemble a fully uploaded session and verify the whole file.

        An incomplete session is left untouched so the client can resume.
        A missing chunk or a whole-file hash mismatch fails the session and
        releases its storage.

        Raises:
            IncompleteUploadError: Not every chunk index has been received
            IntegrityMismatchError: Reassembled file hash disagrees
            MissingChunkError: A recorded chunk is absent from storage
        """
        async with self.locks.hold(session_id):
            async with self.session_maker() as db:
                repo = UploadSessionRepository(db)
                upload = await self._load_owned(repo, owner_id, session_id)
                await self._expire_if_due(db, repo, upload)

                if upload.status not in ACTIVE_STATUSES:
                    raise InvalidStateError(
                        f"Upload session is {upload.status}",
                        details={"status": upload.status},
                    )

                received = set(upload.received_chunks or [])
                missing = sorted(set(range(upload.total_chunks)) - received)
                if missing:
                    raise IncompleteUploadError(
                        f"{len(missing)} of {upload.total_chunks} chunks have not been uploaded",
                        details={"missing_chunks": missing[:100]},
                    )

                destination = self.assembled_dir / str(session_id) / upload.file_name
                try:
                    await asyncio.to_thread(
                        self.chunk_store.merge,
                        session_id,
                        range(upload.total_chunks),
                        destination,
                    )
                except MissingChunkError as e:
                    await self._fail(db, repo, upload, str(e))
                    raise

                file_hash = await asyncio.to_thread(integrity.hash_file, destination)
                if not integrity.digests_match(file_hash, claimed_final_hash):
                    await self._fail(db, repo, upload, "Final file hash mismatch")
                    raise IntegrityMismatchError(
                        "Reassembled file does not match the final hash",
                        details={"actual_hash": file_hash},
                    )

                now = self.clock()
                completed = await repo.transition(
                    session_id,
                    ACTIVE_STATUSES,
                    UploadStatus.COMPLETED,
                    completed_at=now,
                    assembled_path=str(destination),
                )
                if not completed:
                    await db.rollback()
                    await asyncio.to_thread(self._remove_assembled, session_id)
                    raise InvalidStateError("Upload session changed state during completion")
                await db.commit()

            # Temp space only exists for in-progress sessions
            await asyncio.to_thread(self.chunk_store.purge, session_id)

        UPLOAD_SESSIONS_TOTAL.labels(outcome="completed").inc()
        log_info(
            logger,
            "Upload session completed",
            session_id=str(session_id),
            assembled_path=str(destination),
        )
        return CompleteUploadResponse(
            session_id=session_id,
            assembled_path=str(destination),
            file_name=upload.file_name,
            file_size=upload.file_size,
            mime_type=upload.mime_type,
            file_hash=file_hash,
        )

    async def status(self, owner_id: str, session_id: uuid.UUID) -> UploadStatusResponse:
        """Current state of a session.

        A session past its expiry is reported as EXPIRED even before the
        transition has been written.
        """
        async with self.session_maker() as db:
            repo = UploadSessionRepository(db)
            upload = await self._load_owned(repo, owner_id, session_id)

        status = UploadStatus(upload.status)
        if upload.is_expired(self.clock()):
            status = UploadStatus.EXPIRED

        return UploadStatusResponse(
            session_id=upload.id,
            status=status,
            file_name=upload.file_name,
            file_size=upload.file_size,
            mime_type=upload.mime_type,
            uploaded_count=upload.uploaded_chunk_count,
            total_chunks=upload.total_chunks,
            progress_percent=upload.progress_percent,
            received_chunks=sorted(upload.received_chunks or []),
            created_at=upload.created_at,
            expires_at=upload.expires_at,
            failure_reason=upload.failure_reason,
        )

    async def cancel(self, owner_id: str, session_id: uuid.UUID) -> CancelUploadResponse:
        """Abandon a session and release its storage.

        Raises:
            InvalidStateError: If the session already completed
        """
        async with self.locks.hold(session_id):
            async with self.session_maker() as db:
                repo = UploadSessionRepository(db)
                upload = await self._load_owned(repo, owner_id, session_id)

                if upload.status == UploadStatus.COMPLETED.value:
                    raise InvalidStateError("Completed uploads cannot be cancelled")

                if upload.is_expired(self.clock()):
                    await self._expire(db, repo, upload)
                    return CancelUploadResponse(session_id=session_id, status=UploadStatus.EXPIRED)

                if upload.status in ACTIVE_STATUSES:
                    await self._fail(db, repo, upload, "Cancelled by owner")
                    UPLOAD_SESSIONS_TOTAL.labels(outcome="cancelled").inc()
                    log_info(logger, "Upload session cancelled", session_id=str(session_id))
                    return CancelUploadResponse(session_id=session_id, status=UploadStatus.FAILED)

            # Already FAILED or EXPIRED: only make sure nothing is left on disk
            await asyncio.to_thread(self.chunk_store.purge, session_id)
            return CancelUploadResponse(session_id=session_id, status=UploadStatus(upload.status))

    # ============================================
    # Helpers
    # ============================================

    def _validate_initiate(
        self,
        file_name: str,
        file_size: int,
        mime_type: str,
        total_chunks: int,
        expected_chunk_hashes: list[str],
    ) -> list[str]:
        if not file_name or not file_name.strip():
            raise InvalidInputError("File name is required")
        if file_size <= 0:
            raise InvalidInputError("File size must be positive")
        if file_size > self.max_file_size:
            raise InvalidInputError(
                f"File size exceeds maximum allowed size of {self.max_file_size} bytes",
                details={"max_file_size": self.max_file_size},
            )
        if mime_type not in self.allowed_mime_types:
            raise InvalidInputError(
                f"File type {mime_type} is not allowed",
                details={"mime_type": mime_type},
            )

        expected = expected_chunk_count(file_size, self.chunk_size)
        if total_chunks != expected:
            raise InvalidInputError(
                f"Expected {expected} chunks of {self.chunk_size} bytes, got {total_chunks}",
                details={"expected_total_chunks": expected, "chunk_size": self.chunk_size},
            )
        if len(expected_chunk_hashes) != total_chunks:
            raise InvalidInputError(
                "One chunk hash is required per chunk",
                details={"expected": total_chunks, "received": len(expected_chunk_hashes)},
            )

        hashes = [integrity.normalize_digest(h) for h in expected_chunk_hashes]
        invalid = [i for i, h in enumerate(hashes) if not integrity.is_valid_digest(h)]
        if invalid:
            raise InvalidInputError(
                "Chunk hashes must be SHA-256 hex digests",
                details={"invalid_indices": invalid[:100]},
            )
        return hashes

    async def _load_owned(
        self,
        repo: UploadSessionRepository,
        owner_id: str,
        session_id: uuid.UUID,
    ) -> UploadSession:
        upload = await repo.get(session_id)
        if upload is None:
            raise NotFoundError("Upload session not found", details={"session_id": str(session_id)})
        if upload.owner_id != owner_id:
            raise ForbiddenError("Upload session belongs to another user")
        return upload

    async def _expire_if_due(
        self,
        db: AsyncSession,
        repo: UploadSessionRepository,
        upload: UploadSession,
    ) -> None:
        if upload.is_expired(self.clock()):
            await self._expire(db, repo, upload)
            raise InvalidStateError("Upload session has expired", details={"status": "expired"})

    async def _expire(
        self,
        db: AsyncSession,
        repo: UploadSessionRepository,
        upload: UploadSession,
    ) -> bool:
        """Commit EXPIRED, then purge. Purge is the last write."""
        expired = await repo.transition(upload.id, ACTIVE_STATUSES, UploadStatus.EXPIRED)
        await db.commit()
        await asyncio.to_thread(self.chunk_store.purge, upload.id)
        if expired:
            upload.status = UploadStatus.EXPIRED.value
            UPLOAD_SESSIONS_TOTAL.labels(outcome="expired").inc()
            log_info(logger, "Upload session expired", session_id=str(upload.id))
        return expired

    async def _fail(
        self,
        db: AsyncSession,
        repo: UploadSessionRepository,
        upload: UploadSession,
        reason: str,
    ) -> None:
        """Commit FAILED, then release temp and assembled storage."""
        await repo.transition(
            upload.id,
            ACTIVE_STATUSES,
            UploadStatus.FAILED,
            failed_at=self.clock(),
            failure_reason=reason,
        )
        await db.commit()
        upload.status = UploadStatus.FAILED.value
        await asyncio.to_thread(self._remove_assembled, upload.id)
        await asyncio.to_thread(self.chunk_store.purge, upload.id)
        UPLOAD_SESSIONS_TOTAL.labels(outcome="failed").inc()
        log_warning(logger, "Upload session failed", session_id=str(upload.id), reason=reason)

    def _remove_assembled(self, session_id: uuid.UUID) -> None:
        shutil.rmtree(self.assembled_dir / str(session_id), ignore_errors=True)
