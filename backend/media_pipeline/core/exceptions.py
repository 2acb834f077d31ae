"""Exception hierarchy shared by the upload and processing services.

Every error carries a stable machine-readable ``code`` and the HTTP status
the API layer renders it with.
"""

from typing import Any, Optional

from fastapi import status


class MediaPipelineError(Exception):
    """Base exception for media pipeline errors."""

    code = "MEDIA_PIPELINE_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidInputError(MediaPipelineError):
    """Raised when a request is malformed or violates upload policy."""

    code = "INVALID_INPUT"
    status_code = status.HTTP_400_BAD_REQUEST


class OutOfRangeError(MediaPipelineError):
    """Raised when a chunk index falls outside the session's chunk range."""

    code = "OUT_OF_RANGE"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(MediaPipelineError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(MediaPipelineError):
    code = "FORBIDDEN"
    status_code = status.HTTP_403_FORBIDDEN


class InvalidStateError(MediaPipelineError):
    """Raised when an operation is not valid for the current status."""

    code = "INVALID_STATE"
    status_code = status.HTTP_409_CONFLICT


class IncompleteUploadError(MediaPipelineError):
    """Raised when completion is attempted before every chunk is present."""

    code = "INCOMPLETE"
    status_code = status.HTTP_409_CONFLICT


class IntegrityMismatchError(MediaPipelineError):
    """Raised when a content hash disagrees with the expected hash."""

    code = "INTEGRITY_MISMATCH"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class MissingChunkError(MediaPipelineError):
    code = "MISSING_CHUNK"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class StorageAreaMissingError(MediaPipelineError):
    """Raised by the chunk store when a session's storage area is gone."""

    code = "STORAGE_AREA_MISSING"
    status_code = status.HTTP_409_CONFLICT


class ProcessingError(MediaPipelineError):
    """Base for errors raised while processing a media item.

    ``stage`` names the transcoder step the error originated in, when known.
    """

    code = "PROCESSING_ERROR"

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.stage = stage
        if stage:
            self.details.setdefault("stage", stage)


class UnreadableMediaError(ProcessingError):
    """Raised when the source media cannot be probed."""

    code = "UNREADABLE_MEDIA"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class TranscodeError(ProcessingError):
    code = "TRANSCODE_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class PublishError(ProcessingError):
    """Raised when an artifact cannot be written to durable storage."""

    code = "PUBLISH_ERROR"
    status_code = status.HTTP_502_BAD_GATEWAY


class QueueFullError(MediaPipelineError):
    code = "QUEUE_FULL"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
