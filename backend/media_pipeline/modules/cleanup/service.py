"""Garbage collector for upload sessions, media items and their storage.

Every action is delete-if-exists or a status-guarded UPDATE, so a run is
idempotent and may overlap with request handlers, workers, or another run.
Each sweep, and each item inside a sweep, fails independently: the error is
logged and recorded in the report and the collector moves on.
"""

import asyncio
import logging
import shutil
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from media_pipeline.core.clock import utcnow
from media_pipeline.core.config import Settings
from media_pipeline.core.locks import KeyedLocks
from media_pipeline.core.logging import log_error, log_info, log_warning
from media_pipeline.core.metrics import GC_ACTIONS_TOTAL, GC_ERRORS_TOTAL, GC_LAST_RUN_TIMESTAMP
from media_pipeline.modules.media.models import MediaItem, ProcessingStatus
from media_pipeline.modules.media.repository import MediaItemRepository
from media_pipeline.modules.processing.jobs import ReprocessRequestedJob
from media_pipeline.modules.upload.chunk_store import ChunkStore
from media_pipeline.modules.upload.models import ACTIVE_STATUSES, UploadStatus
from media_pipeline.modules.upload.repository import UploadSessionRepository

logger = logging.getLogger(__name__)

# Temp directories younger than this are never treated as orphans, so a
# session whose record is not yet committed keeps its storage area.
DEFAULT_ORPHAN_GRACE = timedelta(minutes=10)


@dataclass
class CleanupReport:
    """What one garbage collection run did."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    expired_sessions: int = 0
    purged_failed_sessions: int = 0
    reset_media_items: int = 0
    removed_temp_dirs: int = 0
    removed_output_dirs: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total_actions(self) -> int:
        return (
            self.expired_sessions
            + self.purged_failed_sessions
            + self.reset_media_items
            + self.removed_temp_dirs
            + self.removed_output_dirs
        )

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "expired_sessions": self.expired_sessions,
            "purged_failed_sessions": self.purged_failed_sessions,
            "reset_media_items": self.reset_media_items,
            "removed_temp_dirs": self.removed_temp_dirs,
            "removed_output_dirs": self.removed_output_dirs,
            "errors": list(self.errors),
        }


def _parse_uuid(name: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(name)
    except ValueError:
        return None


def _remove_tree(path: Path) -> bool:
    """Delete a directory tree. Returns False if it was already gone."""
    if not path.exists():
        return False
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return False
    return True


class GarbageCollector:
    """Reclaims expired, failed and orphaned storage and resets stale failures."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        chunk_store: ChunkStore,
        output_root: Union[str, Path],
        assembled_root: Optional[Union[str, Path]] = None,
        locks: Optional[KeyedLocks] = None,
        dispatch: Optional[Callable[[ReprocessRequestedJob], Awaitable[bool]]] = None,
        failed_session_retention: timedelta = timedelta(hours=24),
        failed_media_cooldown: timedelta = timedelta(days=7),
        orphan_grace: timedelta = DEFAULT_ORPHAN_GRACE,
    ):
        self.session_maker = session_maker
        self.chunk_store = chunk_store
        self.output_root = Path(output_root)
        self.assembled_root = Path(assembled_root) if assembled_root else None
        self.locks = locks or KeyedLocks()
        self.dispatch = dispatch
        self.failed_session_retention = failed_session_retention
        self.failed_media_cooldown = failed_media_cooldown
        self.orphan_grace = orphan_grace
        self._run_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_maker: async_sessionmaker[AsyncSession],
        chunk_store: ChunkStore,
        locks: Optional[KeyedLocks] = None,
        dispatch: Optional[Callable[[ReprocessRequestedJob], Awaitable[bool]]] = None,
    ) -> "GarbageCollector":
        return cls(
            session_maker=session_maker,
            chunk_store=chunk_store,
            output_root=settings.VIDEO_OUTPUT_DIR,
            assembled_root=settings.UPLOAD_ASSEMBLED_DIR,
            locks=locks,
            dispatch=dispatch,
            failed_session_retention=timedelta(hours=settings.GC_FAILED_SESSION_RETENTION_HOURS),
            failed_media_cooldown=timedelta(days=settings.GC_FAILED_MEDIA_COOLDOWN_DAYS),
        )

    async def run(self, now: Optional[datetime] = None) -> CleanupReport:
        """Run every sweep once.

        Args:
            now: Reference time (naive UTC), defaults to the current time

        Returns:
            CleanupReport with counts of real deletions/transitions and errors
        """
        now = now or utcnow()
        report = CleanupReport(started_at=now)

        async with self._run_lock:
            sweeps = [
                ("expire_sessions", self.expire_sessions),
                ("purge_failed_sessions", self.purge_failed_sessions),
                ("reset_failed_media", self.reset_failed_media),
                ("orphaned_temp_dirs", self.sweep_orphaned_temp_dirs),
                ("orphaned_outputs", self.sweep_orphaned_outputs),
            ]
            for sweep_name, sweep in sweeps:
                try:
                    await sweep(now, report)
                except Exception as e:
                    self._record_error(report, sweep_name, "sweep failed", e)

        report.finished_at = utcnow()
        GC_LAST_RUN_TIMESTAMP.set(time.time())
        log_info(logger, "Garbage collection finished", **report.to_dict())
        return report

    # ============================================
    # Sweeps
    # ============================================

    async def expire_sessions(self, now: datetime, report: CleanupReport) -> None:
        """Expire sessions past ``expires_at`` that never completed."""
        async with self.session_maker() as db:
            expired = await UploadSessionRepository(db).list_expired(now)

        for upload in expired:
            try:
                async with self.locks.hold(upload.id):
                    async with self.session_maker() as db:
                        changed = await UploadSessionRepository(db).transition(
                            upload.id, ACTIVE_STATUSES, UploadStatus.EXPIRED
                        )
                        await db.commit()
                    # Purge is the last write for the session
                    await asyncio.to_thread(self.chunk_store.purge, upload.id)
                if changed:
                    report.expired_sessions += 1
                    GC_ACTIONS_TOTAL.labels(sweep="expire_sessions").inc()
            except Exception as e:
                self._record_error(report, "expire_sessions", f"session {upload.id}", e)

    async def purge_failed_sessions(self, now: datetime, report: CleanupReport) -> None:
        """Reclaim disk held by sessions FAILED longer than the retention window."""
        cutoff = now - self.failed_session_retention
        async with self.session_maker() as db:
            failed = await UploadSessionRepository(db).list_failed_before(cutoff)

        for upload in failed:
            try:
                removed = await asyncio.to_thread(self.chunk_store.purge, upload.id)
                if self.assembled_root is not None:
                    removed = await asyncio.to_thread(
                        _remove_tree, self.assembled_root / str(upload.id)
                    ) or removed
                if removed:
                    report.purged_failed_sessions += 1
                    GC_ACTIONS_TOTAL.labels(sweep="purge_failed_sessions").inc()
            except Exception as e:
                self._record_error(report, "purge_failed_sessions", f"session {upload.id}", e)

    async def reset_failed_media(self, now: datetime, report: CleanupReport) -> None:
        """Reset media items FAILED longer than the cooldown and queue them again.

        An item only stays PENDING once its job is queued. If the dispatch
        raises or is refused, the item goes back to FAILED with its original
        failure time so the next run retries it. Without a dispatcher the
        sweep does nothing.
        """
        if self.dispatch is None:
            logger.debug("No job dispatcher, failed media items left for a later run")
            return

        cutoff = now - self.failed_media_cooldown
        async with self.session_maker() as db:
            failed = await MediaItemRepository(db).list_failed_before(cutoff)

        for item in failed:
            try:
                await asyncio.to_thread(_remove_tree, self.output_root / str(item.id))
                async with self.session_maker() as db:
                    reset = await MediaItemRepository(db).reset_to_pending(
                        item.id, [ProcessingStatus.FAILED.value], failed_before=cutoff
                    )
                    await db.commit()
                if not reset:
                    continue

                try:
                    queued = await self.dispatch(
                        ReprocessRequestedJob(media_item_id=item.id, reason="cooldown")
                    )
                except Exception:
                    await self._restore_failed(item)
                    raise
                if not queued:
                    await self._restore_failed(item)
                    log_warning(
                        logger,
                        "Reprocess job not queued, media item left failed",
                        media_item_id=str(item.id),
                    )
                    continue

                report.reset_media_items += 1
                GC_ACTIONS_TOTAL.labels(sweep="reset_failed_media").inc()
                log_info(logger, "Failed media item reset for retry", media_item_id=str(item.id))
            except Exception as e:
                self._record_error(report, "reset_failed_media", f"media item {item.id}", e)

    async def sweep_orphaned_temp_dirs(self, now: datetime, report: CleanupReport) -> None:
        """Delete temp areas with no session record or whose session COMPLETED."""
        names = await asyncio.to_thread(self.chunk_store.list_session_dirs)
        ids = {name: _parse_uuid(name) for name in names}
        async with self.session_maker() as db:
            statuses = await UploadSessionRepository(db).get_status_map(
                i for i in ids.values() if i is not None
            )

        now_epoch = now.replace(tzinfo=timezone.utc).timestamp()
        for name, session_id in ids.items():
            status = statuses.get(session_id) if session_id else None
            if status is not None and status != UploadStatus.COMPLETED.value:
                continue
            path = self.chunk_store.root / name
            try:
                if status is None and now_epoch - path.stat().st_mtime < self.orphan_grace.total_seconds():
                    continue
                if await asyncio.to_thread(_remove_tree, path):
                    report.removed_temp_dirs += 1
                    GC_ACTIONS_TOTAL.labels(sweep="orphaned_temp_dirs").inc()
            except FileNotFoundError:
                continue
            except Exception as e:
                self._record_error(report, "orphaned_temp_dirs", f"directory {name}", e)

    async def sweep_orphaned_outputs(self, now: datetime, report: CleanupReport) -> None:
        """Delete output directories with no media item or whose item FAILED."""
        if not self.output_root.exists():
            return
        names = await asyncio.to_thread(
            lambda: sorted(p.name for p in self.output_root.iterdir() if p.is_dir())
        )
        ids = {name: _parse_uuid(name) for name in names}
        async with self.session_maker() as db:
            statuses = await MediaItemRepository(db).get_status_map(
                i for i in ids.values() if i is not None
            )

        for name, media_item_id in ids.items():
            status = statuses.get(media_item_id) if media_item_id else None
            if status is not None and status != ProcessingStatus.FAILED.value:
                continue
            try:
                if await asyncio.to_thread(_remove_tree, self.output_root / name):
                    report.removed_output_dirs += 1
                    GC_ACTIONS_TOTAL.labels(sweep="orphaned_outputs").inc()
            except Exception as e:
                self._record_error(report, "orphaned_outputs", f"directory {name}", e)

    async def _restore_failed(self, item: MediaItem) -> None:
        async with self.session_maker() as db:
            await MediaItemRepository(db).restore_failed(item.id, item.failed_at, item.error_message)
            await db.commit()

    def _record_error(
        self,
        report: CleanupReport,
        sweep: str,
        subject: str,
        error: Exception,
    ) -> None:
        report.errors.append(f"{sweep}: {subject}: {error}")
        GC_ERRORS_TOTAL.labels(sweep=sweep).inc()
        log_error(logger, "Garbage collection error", exception=error, sweep=sweep, subject=subject)
