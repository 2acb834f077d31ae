"""In-process periodic garbage collection for ``JOB_QUEUE_BACKEND=local``.

With Celery, beat triggers ``cleanup.run_garbage_collection`` instead.
"""

import asyncio
import logging
from typing import Optional

from media_pipeline.core.logging import bind_correlation_id, log_error
from media_pipeline.modules.cleanup.service import CleanupReport, GarbageCollector

logger = logging.getLogger(__name__)


class CleanupScheduler:
    """Runs a GarbageCollector every ``interval_seconds``."""

    def __init__(self, collector: GarbageCollector, interval_seconds: float):
        self.collector = collector
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[CleanupReport] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="garbage-collector")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            with bind_correlation_id():
                try:
                    self.last_report = await self.collector.run()
                except Exception as e:
                    log_error(logger, "Garbage collection run failed", exception=e)
