"""Upload session repository.

Every status change goes through a guarded UPDATE (``WHERE status IN ...``)
so concurrent writers (request handlers, workers, the garbage collector)
never overwrite a transition made by someone else.
"""

import uuid
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from media_pipeline.core.clock import utcnow
from media_pipeline.modules.upload.models import (
    ACTIVE_STATUSES,
    UploadSession,
    UploadStatus,
)


class UploadSessionRepository:
    """Repository for UploadSession persistence."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        owner_id: str,
        file_name: str,
        file_size: int,
        mime_type: str,
        chunk_size: int,
        total_chunks: int,
        expected_chunk_hashes: list[str],
        expires_at: datetime,
    ) -> UploadSession:
        upload = UploadSession(
            owner_id=owner_id,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
            chunk_size=chunk_size,
            total_chunks=total_chunks,
            expected_chunk_hashes=expected_chunk_hashes,
            received_chunks=[],
            status=UploadStatus.PENDING.value,
            expires_at=expires_at,
        )
        self.session.add(upload)
        await self.session.flush()
        return upload

    async def get(self, session_id: uuid.UUID) -> Optional[UploadSession]:
        result = await self.session.execute(
            select(UploadSession)
            .where(UploadSession.id == session_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        session_id: uuid.UUID,
        from_statuses: Iterable[str],
        to_status: UploadStatus,
        **values: Any,
    ) -> bool:
        """Move a session to ``to_status`` if it is in one of ``from_statuses``.

        Args:
            session_id: Session to update
            from_statuses: Statuses the transition is valid from
            to_status: New status
            **values: Extra columns to set in the same statement

        Returns:
            True if the row was updated
        """
        result = await self.session.execute(
            update(UploadSession)
            .where(
                UploadSession.id == session_id,
                UploadSession.status.in_(list(from_statuses)),
            )
            .values(status=to_status.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_chunks(self, session_id: uuid.UUID, received: list[int]) -> bool:
        """Store the received index set and mark the session UPLOADING.

        Only applies while the session still accepts chunks.
        """
        return await self.transition(
            session_id,
            ACTIVE_STATUSES,
            UploadStatus.UPLOADING,
            received_chunks=sorted(received),
        )

    async def list_expired(self, now: datetime) -> list[UploadSession]:
        """Sessions past expiry that never completed."""
        result = await self.session.execute(
            select(UploadSession).where(
                UploadSession.status.in_(ACTIVE_STATUSES),
                UploadSession.expires_at < now,
            )
        )
        return list(result.scalars().all())

    async def list_failed_before(self, cutoff: datetime) -> list[UploadSession]:
        result = await self.session.execute(
            select(UploadSession).where(
                UploadSession.status == UploadStatus.FAILED.value,
                UploadSession.failed_at < cutoff,
            )
        )
        return list(result.scalars().all())

    async def get_status_map(self, session_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, str]:
        """Current status for each of ``session_ids`` that has a record."""
        ids = list(session_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(UploadSession.id, UploadSession.status).where(UploadSession.id.in_(ids))
        )
        return {row.id: row.status for row in result.all()}
