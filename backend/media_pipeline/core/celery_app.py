"""Celery application configuration.

Only used with ``JOB_QUEUE_BACKEND=celery``. Transcoding jobs go to their
own queue so long ffmpeg runs never delay the garbage collection beat.
"""

from celery import Celery

from media_pipeline.core.config import settings

celery_app = Celery(
    "media_pipeline",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    result_expires=86400,
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_routes={
        "processing.*": {"queue": settings.CELERY_TRANSCODE_QUEUE},
        "cleanup.*": {"queue": settings.CELERY_MAINTENANCE_QUEUE},
    },
    beat_schedule={
        "media-garbage-collection": {
            "task": "cleanup.run_garbage_collection",
            "schedule": float(settings.GC_INTERVAL_SECONDS),
        },
    },
)

celery_app.autodiscover_tasks(
    ["media_pipeline.modules.processing", "media_pipeline.modules.cleanup"]
)
