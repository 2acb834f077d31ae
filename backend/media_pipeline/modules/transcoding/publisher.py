"""Publishing of transcoded artifacts to durable storage.

Keys are laid out per media item::

    <prefix>/<media_item_id>/original<ext>
    <prefix>/<media_item_id>/thumbnail.jpg
    <prefix>/<media_item_id>/<label>.mp4
    <prefix>/<media_item_id>/hls/playlist.m3u8
    <prefix>/<media_item_id>/hls/<label>.m3u8
    <prefix>/<media_item_id>/hls/<label>_NNN.ts
"""

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence, Union

from media_pipeline.core.exceptions import PublishError
from media_pipeline.core.logging import log_error, log_warning
from media_pipeline.core.metrics import PUBLISH_FAILURES_TOTAL
from media_pipeline.core.storage import StorageBackend
from media_pipeline.modules.transcoding.abr import AdaptiveManifest, Rendition

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".jpg": "image/jpeg",
}


def content_type_for(path: PathLike) -> str:
    return CONTENT_TYPES.get(Path(path).suffix.lower(), "application/octet-stream")


@dataclass
class PublishedArtifacts:
    """Durable URLs for a media item's published artifacts."""
    video_urls: dict[str, str]
    manifest_url: str
    thumbnail_url: str
    original_url: Optional[str] = None
    keys: list[str] = field(default_factory=list)

    @property
    def primary_video_url(self) -> str:
        """The original upload when published, otherwise the best rendition."""
        if self.original_url:
            return self.original_url
        return next(iter(self.video_urls.values()))


class ArtifactPublisher:
    """Uploads local artifacts and returns their stable URLs."""

    def __init__(self, storage: StorageBackend, key_prefix: str = "lectures"):
        self.storage = storage
        self.key_prefix = key_prefix.strip("/")

    def key_for(self, media_item_id: uuid.UUID, relative: str) -> str:
        return f"{self.key_prefix}/{media_item_id}/{relative}"

    def publish(self, local_path: PathLike, destination_key: str, content_type: str) -> str:
        """Upload one file.

        Fails fast: no retry, and the local file is left in place.

        Raises:
            PublishError: On any transport or storage failure
        """
        try:
            result = self.storage.upload(str(local_path), destination_key, content_type)
        except Exception as e:
            PUBLISH_FAILURES_TOTAL.inc()
            raise PublishError(
                f"Failed to publish {destination_key}: {e}",
                details={"key": destination_key},
            ) from e

        if not result.success:
            PUBLISH_FAILURES_TOTAL.inc()
            raise PublishError(
                f"Failed to publish {destination_key}: {result.error_message}",
                details={"key": destination_key},
            )
        return result.url

    def publish_all(
        self,
        renditions: Sequence[Rendition],
        thumbnail: PathLike,
        manifest: AdaptiveManifest,
        media_item_id: uuid.UUID,
        original: Optional[PathLike] = None,
    ) -> PublishedArtifacts:
        """Publish every artifact of a job, all or nothing.

        If any upload fails, the objects already uploaded in this attempt are
        deleted (best effort) and the PublishError is re-raised.

        Args:
            renditions: Transcoded renditions
            thumbnail: Thumbnail image
            manifest: Master playlist, sub-playlists and segments
            media_item_id: Owning media item
            original: Source upload to publish alongside the renditions

        Returns:
            PublishedArtifacts with every URL populated
        """
        published: list[str] = []

        def put(path: PathLike, relative: str) -> str:
            key = self.key_for(media_item_id, relative)
            url = self.publish(path, key, content_type_for(path))
            published.append(key)
            return url

        try:
            original_url = None
            if original is not None:
                original_url = put(original, f"original{Path(original).suffix.lower() or '.mp4'}")

            video_urls = {}
            for rendition in renditions:
                video_urls[rendition.label] = put(rendition.path, f"{rendition.label}.mp4")

            thumbnail_url = put(thumbnail, Path(thumbnail).name)

            # Segments first so a playlist never points at missing objects
            for rendition in renditions:
                for segment in manifest.segments.get(rendition.label, []):
                    put(segment, f"hls/{segment.name}")
                put(manifest.variant_playlists[rendition.label], f"hls/{rendition.playlist_name}")

            manifest_url = put(manifest.master_path, f"hls/{manifest.master_path.name}")
        except PublishError as e:
            log_error(
                logger,
                "Publishing failed, rolling back",
                exception=e,
                media_item_id=str(media_item_id),
                published_count=len(published),
            )
            self._rollback(published)
            raise

        return PublishedArtifacts(
            video_urls=video_urls,
            manifest_url=manifest_url,
            thumbnail_url=thumbnail_url,
            original_url=original_url,
            keys=published,
        )

    def unpublish(self, keys: Sequence[str]) -> int:
        """Delete published objects. Returns how many were deleted."""
        return self._rollback(keys)

    def _rollback(self, keys: Sequence[str]) -> int:
        deleted = 0
        for key in reversed(list(keys)):
            try:
                if self.storage.delete(key):
                    deleted += 1
            except Exception as e:
                log_warning(logger, "Rollback delete failed", key=key, error=str(e))
        return deleted
