"""FFmpeg command building and execution.

Commands are built as argument lists (never shell strings) and run through
``FFmpegTranscoder._run`` so failures surface as pipeline exceptions.
"""

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from media_pipeline.core.exceptions import TranscodeError, UnreadableMediaError
from media_pipeline.modules.transcoding.abr import AUDIO_BITRATE, RenditionProfile

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_STDERR_TAIL = 2000


@dataclass
class MediaMetadata:
    """Probe result for a source file."""
    duration_seconds: float
    width: int
    height: int
    bitrate: int  # bps, 0 when the container does not report it


class FFmpegTranscoder:
    """Thin wrapper around the ffmpeg and ffprobe binaries."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        preset: str = "medium",
        timeout: Optional[float] = None,
    ):
        """Initialize transcoder.

        Args:
            ffmpeg_path: Path to ffmpeg binary
            ffprobe_path: Path to ffprobe binary
            preset: x264 preset for renditions
            timeout: Optional per-command timeout in seconds
        """
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.preset = preset
        self.timeout = timeout

    # ============================================
    # Probe
    # ============================================

    def build_probe_command(self, input_path: PathLike) -> list[str]:
        return [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(input_path),
        ]

    def probe(self, input_path: PathLike) -> MediaMetadata:
        """Read duration, dimensions and bitrate from a media file.

        Raises:
            UnreadableMediaError: If ffprobe cannot read the file or it has
                no video stream
        """
        try:
            result = subprocess.run(
                self.build_probe_command(input_path),
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
            info = json.loads(result.stdout or "{}")
        except subprocess.CalledProcessError as e:
            raise UnreadableMediaError(
                f"ffprobe could not read {Path(input_path).name}",
                details={"stderr": (e.stderr or "")[-_STDERR_TAIL:]},
            ) from e
        except json.JSONDecodeError as e:
            raise UnreadableMediaError("ffprobe returned invalid output") from e
        except FileNotFoundError as e:
            raise TranscodeError(f"ffprobe binary not found: {self.ffprobe_path}") from e
        except subprocess.TimeoutExpired as e:
            raise TranscodeError("ffprobe timed out") from e

        return parse_probe_output(info)

    # ============================================
    # Command builders
    # ============================================

    def build_thumbnail_command(
        self,
        input_path: PathLike,
        output_path: PathLike,
        offset_seconds: float,
        size: str = "750x422",
    ) -> list[str]:
        width, height = size.split("x")
        return [
            self.ffmpeg_path,
            "-y",
            "-ss", f"{max(0.0, offset_seconds):.3f}",
            "-i", str(input_path),
            "-frames:v", "1",
            "-vf", f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
                   f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2",
            "-q:v", "2",
            str(output_path),
        ]

    def build_rendition_command(
        self,
        input_path: PathLike,
        output_path: PathLike,
        profile: RenditionProfile,
        segment_seconds: int = 10,
        audio_bitrate: int = AUDIO_BITRATE,
    ) -> list[str]:
        """Build the H.264/AAC MP4 command for one ladder rung.

        Keyframes are forced on segment boundaries so the HLS step can split
        the rendition without re-encoding. The profile size is used as is,
        so it must already match the source aspect ratio.
        """
        w, h = profile.width, profile.height
        return [
            self.ffmpeg_path,
            "-y",
            "-i", str(input_path),
            # Video settings
            "-c:v", "libx264",
            "-preset", self.preset,
            "-profile:v", profile.profile,
            "-level", profile.level,
            "-b:v", str(profile.video_bitrate),
            "-maxrate", str(profile.max_bitrate),
            "-bufsize", str(profile.buffer_size),
            "-vf", f"scale={w}:{h},setsar=1",
            "-force_key_frames", f"expr:gte(t,n_forced*{segment_seconds})",
            "-pix_fmt", "yuv420p",
            # Audio settings
            "-c:a", "aac",
            "-b:a", str(audio_bitrate),
            "-ac", "2",
            # Output format
            "-movflags", "+faststart",
            "-f", "mp4",
            str(output_path),
        ]

    def build_hls_command(
        self,
        input_path: PathLike,
        playlist_path: PathLike,
        segment_pattern: PathLike,
        segment_seconds: int = 10,
    ) -> list[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-i", str(input_path),
            "-c", "copy",
            "-f", "hls",
            "-hls_time", str(segment_seconds),
            "-hls_list_size", "0",
            "-hls_playlist_type", "vod",
            "-hls_segment_filename", str(segment_pattern),
            str(playlist_path),
        ]

    # ============================================
    # Execution
    # ============================================

    def generate_thumbnail(
        self,
        input_path: PathLike,
        output_path: PathLike,
        offset_seconds: float,
        size: str = "750x422",
    ) -> Path:
        self._run(self.build_thumbnail_command(input_path, output_path, offset_seconds, size))
        return self._require_output(output_path)

    def transcode_rendition(
        self,
        input_path: PathLike,
        output_path: PathLike,
        profile: RenditionProfile,
        segment_seconds: int = 10,
    ) -> Path:
        self._run(
            self.build_rendition_command(input_path, output_path, profile, segment_seconds)
        )
        return self._require_output(output_path)

    def segment_hls(
        self,
        input_path: PathLike,
        playlist_path: PathLike,
        segment_pattern: PathLike,
        segment_seconds: int = 10,
    ) -> Path:
        self._run(
            self.build_hls_command(input_path, playlist_path, segment_pattern, segment_seconds)
        )
        return self._require_output(playlist_path)

    def _run(self, cmd: list[str]) -> None:
        logger.debug("Running ffmpeg", extra={"command": " ".join(cmd)})
        try:
            subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as e:
            raise TranscodeError(
                f"ffmpeg exited with status {e.returncode}",
                details={"stderr": (e.stderr or "")[-_STDERR_TAIL:]},
            ) from e
        except FileNotFoundError as e:
            raise TranscodeError(f"ffmpeg binary not found: {self.ffmpeg_path}") from e
        except subprocess.TimeoutExpired as e:
            raise TranscodeError("ffmpeg timed out") from e

    @staticmethod
    def _require_output(path: PathLike) -> Path:
        path = Path(path)
        if not path.exists() or path.stat().st_size == 0:
            raise TranscodeError(f"ffmpeg produced no output at {path.name}")
        return path


def parse_probe_output(info: dict) -> MediaMetadata:
    """Extract metadata from ffprobe's JSON output.

    Raises:
        UnreadableMediaError: If there is no video stream or no duration
    """
    video = next(
        (s for s in info.get("streams", []) if s.get("codec_type") == "video"),
        None,
    )
    if video is None:
        raise UnreadableMediaError("No video stream found")

    fmt = info.get("format", {})
    try:
        duration = float(fmt.get("duration") or video.get("duration") or 0)
        width = int(video.get("width") or 0)
        height = int(video.get("height") or 0)
        bitrate = int(fmt.get("bit_rate") or video.get("bit_rate") or 0)
    except (TypeError, ValueError) as e:
        raise UnreadableMediaError("Media metadata is malformed") from e

    if width <= 0 or height <= 0:
        raise UnreadableMediaError("Video stream has no dimensions")
    if duration <= 0:
        raise UnreadableMediaError("Media has no duration")

    return MediaMetadata(
        duration_seconds=duration,
        width=width,
        height=height,
        bitrate=bitrate,
    )
