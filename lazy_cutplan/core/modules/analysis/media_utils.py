"""
Media utilities for lazy_cutplan.

This module provides the media descriptor consumed by the planner:
- FFprobe operations for stream metadata
- Exact rational frame rate parsing
- Frame count and audio track detection
"""

import json
import subprocess
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import Any, Dict, Optional

from ....utils.logging import get_logger
from ..errors import InvalidFrameRange, OutputParseError, ToolFailed, ToolNotFound, ToolTimeout
from ..system.system_utils import run_command
from .timeline import parse_fps

logger = get_logger("media_utils")


@dataclass(frozen=True)
class MediaDescriptor:
    """What the probing step knows about one input."""
    path: Path
    fps: Fraction
    total_frames: int
    audio_tracks: int
    duration: float
    size_bytes: int = 0
    has_subtitles: bool = False

    @property
    def bytes_per_second(self) -> float:
        if self.duration <= 0:
            return 0.0
        return self.size_bytes / self.duration

    def identity(self) -> str:
        """Content identity used in cache fingerprints."""
        try:
            stat = self.path.stat()
            return f"{self.path.resolve()}:{stat.st_size}:{int(stat.st_mtime)}"
        except OSError:
            return f"{self.path}:{self.size_bytes}:{self.total_frames}"


def _video_stream(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for stream in data.get("streams", []):
        if stream.get("codec_type") != "video":
            continue
        # Cover art shows up as a one-frame video stream
        if stream.get("disposition", {}).get("attached_pic"):
            continue
        return stream
    return None


def frame_rate_of(stream: Dict[str, Any]) -> Fraction:
    """Exact frame rate from r_frame_rate, falling back to avg_frame_rate."""
    for key in ("r_frame_rate", "avg_frame_rate"):
        raw = stream.get(key)
        if raw and raw not in ("0/0", "0/1"):
            try:
                return parse_fps(raw)
            except InvalidFrameRange:
                continue
    raise InvalidFrameRange(f"no usable frame rate in stream {stream.get('index')}")


def descriptor_from_ffprobe(path: Path, data: Dict[str, Any]) -> MediaDescriptor:
    """Build a MediaDescriptor from `ffprobe -show_format -show_streams` JSON."""
    video = _video_stream(data)
    if video is None:
        raise OutputParseError(f"No video stream found in {path}", tool="ffprobe")

    fps = frame_rate_of(video)
    fmt = data.get("format", {})
    try:
        duration = float(fmt.get("duration") or video.get("duration") or 0.0)
    except ValueError:
        duration = 0.0

    nb_frames = video.get("nb_frames")
    if nb_frames and str(nb_frames).isdigit() and int(nb_frames) > 0:
        total_frames = int(nb_frames)
    else:
        # Matroska does not carry nb_frames; derive it from the exact rate
        total_frames = int(round(Fraction(str(duration)) * fps)) if duration > 0 else 0
    if total_frames <= 0:
        raise InvalidFrameRange(f"cannot determine frame count for {path}")

    streams = data.get("streams", [])
    audio_tracks = sum(1 for s in streams if s.get("codec_type") == "audio")
    has_subtitles = any(s.get("codec_type") == "subtitle" for s in streams)

    size_raw = fmt.get("size")
    if size_raw and str(size_raw).isdigit():
        size_bytes = int(size_raw)
    else:
        try:
            size_bytes = path.stat().st_size
        except OSError:
            size_bytes = 0

    return MediaDescriptor(
        path=path,
        fps=fps,
        total_frames=total_frames,
        audio_tracks=audio_tracks,
        duration=duration,
        size_bytes=size_bytes,
        has_subtitles=has_subtitles,
    )


def probe_media(path: Path, timeout: int = 60) -> MediaDescriptor:
    """Probe a media file with ffprobe."""
    cmd = [
        "ffprobe", "-v", "error",
        "-print_format", "json",
        "-show_format", "-show_streams",
        str(path),
    ]
    try:
        result = run_command(cmd, timeout=timeout)
    except FileNotFoundError as e:
        raise ToolNotFound("ffprobe not found on PATH", tool="ffprobe") from e
    except subprocess.TimeoutExpired as e:
        raise ToolTimeout(f"ffprobe timed out on {path}", tool="ffprobe", timeout=timeout) from e
    if result.returncode != 0:
        excerpt = " | ".join((result.stderr or "").strip().splitlines()[-3:])
        raise ToolFailed(f"ffprobe failed on {path}", tool="ffprobe",
                         exit_code=result.returncode, excerpt=excerpt)
    try:
        data = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as e:
        raise OutputParseError(f"ffprobe returned invalid JSON for {path}: {e}", tool="ffprobe") from e

    media = descriptor_from_ffprobe(path, data)
    logger.debug(f"{path.name}: {media.fps} fps, {media.total_frames} frames, "
                 f"{media.audio_tracks} audio tracks, {media.duration:.2f}s")
    return media
