"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


DEFAULT_ALLOWED_MIME_TYPES = [
    # Video
    "video/mp4",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
    # Documents
    "application/pdf",
    "application/zip",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Media Pipeline API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost/media_pipeline"
    DATABASE_AUTO_CREATE: bool = False

    # Redis / Celery
    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""
    CELERY_TRANSCODE_QUEUE: str = "transcoding"
    CELERY_MAINTENANCE_QUEUE: str = "maintenance"
    CELERY_TASK_TIME_LIMIT: int = 4 * 3600
    # JOB_QUEUE_BACKEND: local (in-process worker pool) or celery
    JOB_QUEUE_BACKEND: str = "local"

    # CORS
    CORS_ORIGINS: list[str] = []

    # Upload policy
    UPLOAD_TEMP_DIR: str = "./temp"
    UPLOAD_ASSEMBLED_DIR: str = "./uploads"
    UPLOAD_CHUNK_SIZE: int = 5 * 1024 * 1024
    UPLOAD_MAX_FILE_SIZE: int = 2 * 1024 * 1024 * 1024
    UPLOAD_ALLOWED_MIME_TYPES: list[str] = DEFAULT_ALLOWED_MIME_TYPES
    UPLOAD_SESSION_TTL_HOURS: int = 24

    # Transcoding
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    VIDEO_OUTPUT_DIR: str = "./output"
    TRANSCODE_SEGMENT_SECONDS: int = 10
    TRANSCODE_THUMBNAIL_OFFSET: float = 0.1
    TRANSCODE_THUMBNAIL_SIZE: str = "750x422"
    TRANSCODE_WORKERS: int = 2
    TRANSCODE_QUEUE_SIZE: int = 100
    TRANSCODE_PUBLISH_ORIGINAL: bool = True

    # Storage Configuration
    # STORAGE_BACKEND: local, s3, minio
    STORAGE_BACKEND: str = "local"

    # Local Storage (when STORAGE_BACKEND=local)
    LOCAL_STORAGE_PATH: str = "./storage"
    PUBLIC_BASE_URL: str = "/media"

    # S3/MinIO/Compatible Storage (when STORAGE_BACKEND=s3 or minio)
    STORAGE_BUCKET: str = ""
    STORAGE_REGION: str = ""
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None  # Required for MinIO
    STORAGE_KEY_PREFIX: str = "lectures"

    # CDN Configuration (optional, for any backend)
    CDN_DOMAIN: Optional[str] = None
    CDN_ENABLED: bool = False

    # Garbage collection
    GC_ENABLED: bool = True
    GC_INTERVAL_SECONDS: int = 3600
    GC_FAILED_SESSION_RETENTION_HOURS: int = 24
    GC_FAILED_MEDIA_COOLDOWN_DAYS: int = 7

    @property
    def celery_broker(self) -> str:
        return self.CELERY_BROKER_URL or self.REDIS_URL

    @property
    def celery_backend(self) -> str:
        return self.CELERY_RESULT_BACKEND or self.REDIS_URL

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
