"""Video transcoding job.

A job walks a fixed sequence of stages:

    pending -> extracting-metadata -> generating-thumbnail
            -> transcoding-renditions -> building-manifest -> done

Any stage failing moves the job to ``failed``; the error raised is the
originating one, tagged with the stage it came from. The transcoder is
synchronous and is meant to run in a worker thread.
"""

import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from media_pipeline.core.config import Settings
from media_pipeline.core.exceptions import ProcessingError, TranscodeError
from media_pipeline.modules.transcoding.abr import (
    AUDIO_BITRATE,
    MASTER_PLAYLIST_NAME,
    STANDARD_LADDER,
    AdaptiveManifest,
    Rendition,
    RenditionProfile,
    build_master_playlist,
    plan_renditions,
)
from media_pipeline.modules.transcoding.ffmpeg import FFmpegTranscoder, MediaMetadata

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

THUMBNAIL_NAME = "thumbnail.jpg"
HLS_DIR_NAME = "hls"


class TranscodeStage(str, Enum):
    """Stage of a transcoding job."""
    PENDING = "pending"
    EXTRACTING_METADATA = "extracting-metadata"
    GENERATING_THUMBNAIL = "generating-thumbnail"
    TRANSCODING_RENDITIONS = "transcoding-renditions"
    BUILDING_MANIFEST = "building-manifest"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TranscodeJobState:
    """Tracks where a job is and, once failed, why."""
    stage: TranscodeStage = TranscodeStage.PENDING
    failed_stage: Optional[TranscodeStage] = None
    error: Optional[ProcessingError] = None
    history: list[TranscodeStage] = field(default_factory=lambda: [TranscodeStage.PENDING])

    def advance(self, stage: TranscodeStage) -> None:
        if self.stage in (TranscodeStage.DONE, TranscodeStage.FAILED):
            raise RuntimeError(f"Job already finished in stage {self.stage.value}")
        self.stage = stage
        self.history.append(stage)

    def fail(self, error: ProcessingError) -> None:
        self.failed_stage = self.stage
        self.error = error
        self.stage = TranscodeStage.FAILED
        self.history.append(TranscodeStage.FAILED)


@dataclass
class TranscodeOutcome:
    """Everything a successful job produced."""
    metadata: MediaMetadata
    thumbnail_path: Path
    renditions: list[Rendition]
    manifest: AdaptiveManifest
    output_dir: Path


class VideoTranscoder:
    """Produces thumbnail, renditions and HLS manifest for a source video."""

    def __init__(
        self,
        ffmpeg: Optional[FFmpegTranscoder] = None,
        segment_seconds: int = 10,
        thumbnail_offset: float = 0.1,
        thumbnail_size: str = "750x422",
        ladder: Sequence[RenditionProfile] = STANDARD_LADDER,
    ):
        self.ffmpeg = ffmpeg or FFmpegTranscoder()
        self.segment_seconds = segment_seconds
        self.thumbnail_offset = thumbnail_offset
        self.thumbnail_size = thumbnail_size
        self.ladder = ladder

    @classmethod
    def from_settings(cls, settings: Settings) -> "VideoTranscoder":
        return cls(
            ffmpeg=FFmpegTranscoder(settings.FFMPEG_PATH, settings.FFPROBE_PATH),
            segment_seconds=settings.TRANSCODE_SEGMENT_SECONDS,
            thumbnail_offset=settings.TRANSCODE_THUMBNAIL_OFFSET,
            thumbnail_size=settings.TRANSCODE_THUMBNAIL_SIZE,
        )

    def extract_metadata(self, path: PathLike) -> MediaMetadata:
        """Probe the source.

        Raises:
            UnreadableMediaError: If the source cannot be probed
        """
        return self.ffmpeg.probe(path)

    def generate_thumbnail(
        self,
        path: PathLike,
        duration_seconds: float,
        output_dir: PathLike,
    ) -> Path:
        """Capture one frame at a fixed fraction of the duration."""
        output = Path(output_dir) / THUMBNAIL_NAME
        offset = duration_seconds * self.thumbnail_offset
        return self.ffmpeg.generate_thumbnail(path, output, offset, self.thumbnail_size)

    def transcode_renditions(
        self,
        path: PathLike,
        source_width: int,
        output_dir: PathLike,
        source_height: Optional[int] = None,
    ) -> list[Rendition]:
        """Transcode every ladder rung no wider than the source.

        The first rung that fails aborts the job; no partial set is returned.
        """
        renditions = []
        for profile in plan_renditions(source_width, source_height, self.ladder):
            output = Path(output_dir) / f"{profile.label}.mp4"
            self.ffmpeg.transcode_rendition(path, output, profile, self.segment_seconds)
            renditions.append(
                Rendition(
                    label=profile.label,
                    width=profile.width,
                    height=profile.height,
                    video_bitrate=profile.video_bitrate,
                    audio_bitrate=AUDIO_BITRATE,
                    path=output,
                )
            )
            logger.info(
                "Rendition transcoded",
                extra={"label": profile.label, "output_path": str(output)},
            )
        return renditions

    def build_adaptive_manifest(
        self,
        renditions: Sequence[Rendition],
        output_dir: PathLike,
    ) -> AdaptiveManifest:
        """Segment every rendition and write the master playlist."""
        if not renditions:
            raise TranscodeError("Cannot build a manifest without renditions")

        hls_dir = Path(output_dir) / HLS_DIR_NAME
        hls_dir.mkdir(parents=True, exist_ok=True)

        manifest = AdaptiveManifest(
            master_path=hls_dir / MASTER_PLAYLIST_NAME,
            master_text=build_master_playlist(renditions),
        )
        for rendition in renditions:
            playlist = hls_dir / rendition.playlist_name
            self.ffmpeg.segment_hls(
                rendition.path,
                playlist,
                hls_dir / rendition.segment_pattern,
                self.segment_seconds,
            )
            manifest.variant_playlists[rendition.label] = playlist
            manifest.segments[rendition.label] = sorted(hls_dir.glob(f"{rendition.label}_*.ts"))

        manifest.master_path.write_text(manifest.master_text, encoding="utf-8")
        return manifest

    def run(
        self,
        path: PathLike,
        output_dir: PathLike,
        state: Optional[TranscodeJobState] = None,
        on_stage: Optional[Callable[[TranscodeStage], None]] = None,
    ) -> TranscodeOutcome:
        """Run every stage for one source file.

        Args:
            path: Source video
            output_dir: Working directory for this job's artifacts
            state: Job state to update, a fresh one is used when omitted
            on_stage: Called with each stage as it starts

        Returns:
            TranscodeOutcome with local artifact paths

        Raises:
            ProcessingError: The originating error, tagged with its stage
        """
        state = state or TranscodeJobState()
        output_dir = Path(output_dir)

        def enter(stage: TranscodeStage) -> None:
            state.advance(stage)
            if on_stage is not None:
                on_stage(stage)

        try:
            output_dir.mkdir(parents=True, exist_ok=True)

            enter(TranscodeStage.EXTRACTING_METADATA)
            metadata = self.extract_metadata(path)

            enter(TranscodeStage.GENERATING_THUMBNAIL)
            thumbnail = self.generate_thumbnail(path, metadata.duration_seconds, output_dir)

            enter(TranscodeStage.TRANSCODING_RENDITIONS)
            renditions = self.transcode_renditions(
                path, metadata.width, output_dir, metadata.height
            )

            enter(TranscodeStage.BUILDING_MANIFEST)
            manifest = self.build_adaptive_manifest(renditions, output_dir)
        except ProcessingError as e:
            if e.stage is None:
                e.stage = state.stage.value
                e.details.setdefault("stage", e.stage)
            state.fail(e)
            raise
        except (OSError, ValueError) as e:
            error = TranscodeError(str(e), stage=state.stage.value)
            state.fail(error)
            raise error from e

        enter(TranscodeStage.DONE)
        return TranscodeOutcome(
            metadata=metadata,
            thumbnail_path=thumbnail,
            renditions=renditions,
            manifest=manifest,
            output_dir=output_dir,
        )

    @staticmethod
    def discard_outputs(output_dir: PathLike) -> bool:
        """Remove a job's working directory. Returns False if it did not exist."""
        path = Path(output_dir)
        if not path.exists():
            return False
        shutil.rmtree(path, ignore_errors=True)
        return True
