"""Celery integration for processing jobs.

With ``JOB_QUEUE_BACKEND=celery`` the API hands jobs to ``CeleryJobQueue``
and a Celery worker runs the same coordinator. Failed jobs are not retried
by Celery; retry belongs to the garbage collector's cooldown reset.
"""

import asyncio
import logging
from typing import Union

from media_pipeline.core.celery_app import celery_app
from media_pipeline.core.config import settings
from media_pipeline.core.database import create_engine, create_session_maker
from media_pipeline.core.logging import bind_correlation_id, log_error
from media_pipeline.modules.processing.jobs import (
    ReprocessRequestedJob,
    UploadCompletedJob,
    dump_job,
    parse_job,
)

logger = logging.getLogger(__name__)

ProcessingJobType = Union[UploadCompletedJob, ReprocessRequestedJob]


@celery_app.task(bind=True, name="processing.process_media", max_retries=0)
def process_media_task(self, payload: dict) -> dict:
    """Run one processing job in a Celery worker.

    Args:
        payload: Job serialized with ``dump_job``

    Returns:
        dict: Outcome with status and media item id
    """
    job = parse_job(payload)
    with bind_correlation_id(self.request.id or f"job-{job.media_item_id}"):
        return asyncio.run(_run_job(job))


async def _run_job(job: ProcessingJobType) -> dict:
    # Imported here so importing the task module stays cheap for producers
    from media_pipeline.pipeline import build_coordinator
    from media_pipeline.modules.processing.progress import ProgressBroker

    engine = create_engine(settings.DATABASE_URL)
    try:
        coordinator = build_coordinator(settings, create_session_maker(engine), ProgressBroker())
        try:
            published = await coordinator.handle(job)
        except Exception as e:
            log_error(logger, "Processing job failed", exception=e, media_item_id=str(job.media_item_id))
            return {"status": "failed", "media_item_id": str(job.media_item_id), "error": str(e)}
        if published is None:
            return {"status": "skipped", "media_item_id": str(job.media_item_id)}
        return {
            "status": "completed",
            "media_item_id": str(job.media_item_id),
            "manifest_url": published.manifest_url,
        }
    finally:
        await engine.dispose()


class CeleryJobQueue:
    """Dispatches jobs to Celery workers.

    Same ``submit`` contract as ``WorkQueue``; in-flight de-duplication is
    left to the coordinator's PENDING -> PROCESSING claim.
    """

    is_running = True

    async def start(self) -> None:
        return None

    async def stop(self, drain: bool = False, timeout=None) -> None:
        return None

    async def submit(self, job: ProcessingJobType) -> bool:
        await asyncio.to_thread(process_media_task.delay, dump_job(job))
        return True
