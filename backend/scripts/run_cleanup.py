"""Run one garbage collection pass manually.

Usage:
    cd backend
    python -m scripts.run_cleanup
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from media_pipeline.core.config import settings
from media_pipeline.core.database import async_session_maker, engine
from media_pipeline.core.logging import setup_logging
from media_pipeline.pipeline import build_garbage_collector


async def main():
    """Run the garbage collector once and print its report."""
    setup_logging(level=settings.LOG_LEVEL, json_format=False)

    print("\n" + "=" * 60)
    print("Running Media Garbage Collection")
    print("=" * 60)

    collector = build_garbage_collector(settings, async_session_maker)
    try:
        report = await collector.run()
    finally:
        await engine.dispose()

    print(f"\nResults:")
    print(f"  Expired sessions: {report.expired_sessions}")
    print(f"  Purged failed sessions: {report.purged_failed_sessions}")
    print(f"  Media items reset: {report.reset_media_items}")
    print(f"  Orphaned temp dirs removed: {report.removed_temp_dirs}")
    print(f"  Orphaned output dirs removed: {report.removed_output_dirs}")
    for error in report.errors:
        print(f"  Error: {error}")
    print(f"  Run at: {report.started_at.isoformat()}")


if __name__ == "__main__":
    asyncio.run(main())
