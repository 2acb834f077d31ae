"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from media_pipeline.core.config import Settings
from media_pipeline.core.config import settings as default_settings
from media_pipeline.core.database import Base, create_engine, create_session_maker
from media_pipeline.core.exceptions import MediaPipelineError
from media_pipeline.core.logging import log_error, setup_logging
from media_pipeline.core.metrics import get_content_type, get_metrics, set_app_info
from media_pipeline.core.middleware import CorrelationIdMiddleware, MetricsMiddleware
from media_pipeline.modules.media.router import router as media_router
from media_pipeline.modules.upload.router import router as upload_router
from media_pipeline.pipeline import build_pipeline

# Register tables on Base.metadata
import media_pipeline.modules.media.models  # noqa: F401
import media_pipeline.modules.upload.models  # noqa: F401

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Settings to use, defaults to the environment-loaded ones
        session_maker: Session factory to use instead of one built from
            ``settings.DATABASE_URL``

    Returns:
        FastAPI: Configured application
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
            json_format=settings.LOG_JSON,
            include_stack_trace=True,
        )
        set_app_info(
            version=settings.VERSION,
            environment="development" if settings.DEBUG else "production",
        )

        engine = None
        maker = session_maker
        if maker is None:
            engine = create_engine(settings.DATABASE_URL)
            maker = create_session_maker(engine)
            if settings.DATABASE_AUTO_CREATE:
                async with engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)

        pipeline = build_pipeline(settings, maker)
        app.state.pipeline = pipeline
        await pipeline.start()
        logger.info(
            "Media pipeline started",
            extra={"job_queue_backend": settings.JOB_QUEUE_BACKEND},
        )
        try:
            yield
        finally:
            await pipeline.stop()
            if engine is not None:
                await engine.dispose()
            logger.info("Media pipeline stopped")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="Resumable chunked uploads and adaptive bitrate transcoding.",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health check endpoints"},
            {"name": "uploads", "description": "Resumable chunked upload sessions"},
            {"name": "media", "description": "Media registration, processing status and progress"},
        ],
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    @app.exception_handler(MediaPipelineError)
    async def media_pipeline_error_handler(request: Request, exc: MediaPipelineError) -> JSONResponse:
        if exc.status_code >= 500:
            log_error(logger, exc.message, exception=exc, path=request.url.path, code=exc.code)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "details": exc.details,
                }
            },
        )

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint.

        Returns:
            dict: Health status with "healthy" value
        """
        return {"status": "healthy"}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        """Prometheus scrape endpoint."""
        return Response(content=get_metrics(), media_type=get_content_type())

    app.include_router(upload_router, prefix=settings.API_V1_PREFIX)
    app.include_router(media_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
