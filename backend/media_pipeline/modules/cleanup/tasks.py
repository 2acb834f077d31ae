"""Celery beat task for garbage collection."""

import asyncio

from media_pipeline.core.celery_app import celery_app
from media_pipeline.core.config import settings
from media_pipeline.core.database import create_engine, create_session_maker
from media_pipeline.core.logging import bind_correlation_id


@celery_app.task(name="cleanup.run_garbage_collection")
def run_garbage_collection() -> dict:
    """Run one garbage collection pass.

    Returns:
        dict: The run's CleanupReport
    """
    with bind_correlation_id():
        return asyncio.run(_run())


async def _run() -> dict:
    from media_pipeline.pipeline import build_garbage_collector

    engine = create_engine(settings.DATABASE_URL)
    try:
        collector = build_garbage_collector(settings, create_session_maker(engine))
        report = await collector.run()
        return report.to_dict()
    finally:
        await engine.dispose()
