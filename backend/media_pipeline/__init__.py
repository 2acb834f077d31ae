"""Media pipeline backend.

Resumable chunked uploads, asynchronous adaptive bitrate transcoding and
publication of the resulting artifacts to storage.

Modules:
    - core: Configuration, database, Celery, logging, metrics, storage
    - modules.upload: Upload sessions, chunk storage and integrity checks
    - modules.transcoding: FFmpeg transcoding, HLS manifests, publishing
    - modules.media: Media items and their processing status
    - modules.processing: Job queue, progress channel and coordinator
    - modules.cleanup: Garbage collection of expired and orphaned data
"""

__version__ = "0.1.0"
