"""Adaptive bitrate (ABR) ladder and HLS manifest building.

The ladder is fixed; which rungs a job produces depends only on the source
width, since renditions are never upscaled.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable, Optional, Sequence

AUDIO_BITRATE = 128_000  # bps, every rendition
MASTER_PLAYLIST_NAME = "playlist.m3u8"


@dataclass(frozen=True)
class RenditionProfile:
    """One rung of the ABR ladder."""
    label: str
    width: int
    height: int
    video_bitrate: int  # bps
    max_bitrate: int  # bps
    buffer_size: int  # bps
    profile: str = "main"
    level: str = "4.0"

    @property
    def bandwidth(self) -> int:
        """Peak bandwidth advertised in the master playlist."""
        return self.video_bitrate + AUDIO_BITRATE


STANDARD_LADDER: tuple[RenditionProfile, ...] = (
    RenditionProfile("1080p", 1920, 1080, 5_000_000, 5_350_000, 7_500_000, "high", "4.0"),
    RenditionProfile("720p", 1280, 720, 2_500_000, 2_675_000, 3_750_000, "main", "3.1"),
    RenditionProfile("480p", 854, 480, 1_000_000, 1_070_000, 1_500_000, "main", "3.0"),
    RenditionProfile("360p", 640, 360, 500_000, 535_000, 750_000, "baseline", "3.0"),
)


@dataclass
class Rendition:
    """A transcoded rendition on local disk, valid for one processing job."""
    label: str
    width: int
    height: int
    video_bitrate: int
    audio_bitrate: int
    path: Path

    @property
    def bandwidth(self) -> int:
        return self.video_bitrate + self.audio_bitrate

    @property
    def playlist_name(self) -> str:
        return f"{self.label}.m3u8"

    @property
    def segment_pattern(self) -> str:
        return f"{self.label}_%03d.ts"


@dataclass
class AdaptiveManifest:
    """Master playlist plus one segmented sub-playlist per rendition."""
    master_path: Path
    master_text: str
    variant_playlists: dict[str, Path] = field(default_factory=dict)
    segments: dict[str, list[Path]] = field(default_factory=dict)


def _even(value: int) -> int:
    """H.264 needs even frame dimensions."""
    return max(2, value - value % 2)


def fit_within(source_width: int, source_height: int, box_width: int, box_height: int) -> tuple[int, int]:
    """Largest even size inside the box that keeps the source aspect ratio.

    A 1920x1440 source in a 1920x1080 box comes out 1440x1080.
    """
    scale = min(box_width / source_width, box_height / source_height, 1.0)
    width = min(box_width, max(2, 2 * round(source_width * scale / 2)))
    height = min(box_height, max(2, 2 * round(source_height * scale / 2)))
    return width, height


def plan_renditions(
    source_width: int,
    source_height: Optional[int] = None,
    ladder: Sequence[RenditionProfile] = STANDARD_LADDER,
) -> list[RenditionProfile]:
    """Select the ladder rungs to produce for a source.

    Only rungs whose width is at most the source width are kept. When the
    source height is known each rung is resized to the source aspect ratio
    within the rung's box, so the advertised resolution is the encoded one.
    A source narrower than every rung gets a single rendition at its own
    size, using the lowest rung's bitrates.

    Args:
        source_width: Width of the source video in pixels
        source_height: Height of the source video, used to fit each rung to
            the source aspect ratio and to size the fallback rung
        ladder: Ladder to select from, ordered highest first

    Returns:
        Selected profiles, highest first
    """
    if source_width <= 0:
        raise ValueError("Source width must be positive")

    selected = [p for p in ladder if p.width <= source_width]
    if selected:
        if not source_height:
            return selected
        fitted = []
        for profile in selected:
            width, height = fit_within(source_width, source_height, profile.width, profile.height)
            fitted.append(replace(profile, width=width, height=height))
        return fitted

    lowest = min(ladder, key=lambda p: p.width)
    height = source_height or round(source_width * lowest.height / lowest.width)
    width, height = _even(source_width), _even(height)
    return [
        RenditionProfile(
            label=f"{height}p",
            width=width,
            height=height,
            video_bitrate=lowest.video_bitrate,
            max_bitrate=lowest.max_bitrate,
            buffer_size=lowest.buffer_size,
            profile=lowest.profile,
            level=lowest.level,
        )
    ]


def build_master_playlist(renditions: Iterable[Rendition]) -> str:
    """Render the HLS master playlist listing every rendition.

    Args:
        renditions: Renditions to advertise, in the order they should appear

    Returns:
        Playlist text
    """
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", ""]
    for rendition in renditions:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={rendition.bandwidth},"
            f"RESOLUTION={rendition.width}x{rendition.height}"
        )
        lines.append(rendition.playlist_name)
        lines.append("")
    return "\n".join(lines)


def validate_ladder(ladder: Sequence[RenditionProfile]) -> tuple[bool, list[str]]:
    """Check a ladder is usable.

    Returns:
        Tuple of (is_valid, error_messages)
    """
    errors = []
    if not ladder:
        errors.append("ABR ladder must have at least one rung")

    prev_width = None
    for profile in ladder:
        if profile.width % 2 or profile.height % 2:
            errors.append(f"{profile.label}: dimensions must be even")
        if profile.max_bitrate < profile.video_bitrate:
            errors.append(f"{profile.label}: max bitrate must be >= bitrate")
        if prev_width is not None and profile.width >= prev_width:
            errors.append("Rungs must be ordered by decreasing width")
        prev_width = profile.width

    labels = [p.label for p in ladder]
    if len(set(labels)) != len(labels):
        errors.append("Rung labels must be unique")

    return len(errors) == 0, errors
