"""Bounded in-process work queue with a fixed pool of worker tasks.

The queue's lifetime is owned by whoever calls ``start``/``stop`` (the
FastAPI lifespan in the API process). A media item can have at most one job
queued or running at a time.
"""

import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable, Optional, Union

from media_pipeline.core.exceptions import QueueFullError
from media_pipeline.core.logging import bind_correlation_id, log_error, log_info
from media_pipeline.core.metrics import (
    QUEUE_DEPTH,
    TRANSCODE_JOB_DURATION_SECONDS,
    WORKERS_BUSY,
)
from media_pipeline.modules.processing.jobs import ReprocessRequestedJob, UploadCompletedJob

logger = logging.getLogger(__name__)

ProcessingJobType = Union[UploadCompletedJob, ReprocessRequestedJob]
JobHandler = Callable[[ProcessingJobType], Awaitable[object]]


class WorkQueue:
    """Bounded asyncio queue served by ``workers`` concurrent tasks."""

    def __init__(
        self,
        handler: JobHandler,
        workers: int = 2,
        maxsize: int = 100,
        name: str = "transcode",
    ):
        if workers < 1:
            raise ValueError("At least one worker is required")
        self.handler = handler
        self.worker_count = workers
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._in_flight: set[uuid.UUID] = set()
        self._workers: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def is_in_flight(self, media_item_id: uuid.UUID) -> bool:
        return media_item_id in self._in_flight

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self.worker_count)
        ]
        log_info(logger, "Work queue started", queue=self.name, workers=self.worker_count)

    async def stop(self, drain: bool = False, timeout: Optional[float] = None) -> None:
        """Stop the workers.

        Args:
            drain: Wait for queued jobs to finish first
            timeout: Upper bound on the drain wait, in seconds
        """
        if drain and self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout)
            except asyncio.TimeoutError:
                logger.warning("Work queue drain timed out", extra={"queue": self.name})

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        log_info(logger, "Work queue stopped", queue=self.name)

    async def submit(self, job: ProcessingJobType) -> bool:
        """Enqueue a job without waiting for it to run.

        Returns:
            False if a job for the same media item is already queued or running

        Raises:
            QueueFullError: If the queue is at capacity
        """
        if job.media_item_id in self._in_flight:
            logger.info(
                "Job already in flight, not enqueued",
                extra={"media_item_id": str(job.media_item_id), "job_kind": job.kind},
            )
            return False
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull as e:
            raise QueueFullError(
                "Processing queue is full",
                details={"queue": self.name, "capacity": self._queue.maxsize},
            ) from e
        self._in_flight.add(job.media_item_id)
        QUEUE_DEPTH.set(self._queue.qsize())
        return True

    async def join(self) -> None:
        """Wait until every queued job has been handled."""
        await self._queue.join()

    async def _worker(self, worker_id: int) -> None:
        while True:
            job = await self._queue.get()
            QUEUE_DEPTH.set(self._queue.qsize())
            WORKERS_BUSY.inc()
            started = time.perf_counter()
            try:
                with bind_correlation_id(f"job-{job.media_item_id}"):
                    await self.handler(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Not retried here; the garbage collector re-queues after a cooldown
                log_error(
                    logger,
                    "Processing job failed",
                    exception=e,
                    media_item_id=str(job.media_item_id),
                    job_kind=job.kind,
                    worker_id=worker_id,
                )
            finally:
                TRANSCODE_JOB_DURATION_SECONDS.labels(job_kind=job.kind).observe(
                    time.perf_counter() - started
                )
                WORKERS_BUSY.dec()
                self._in_flight.discard(job.media_item_id)
                self._queue.task_done()
