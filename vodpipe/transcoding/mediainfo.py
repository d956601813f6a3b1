"""
Media probing via ffprobe.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from ..errors import TranscodeError
from .models import MediaInfo

logger = logging.getLogger(__name__)


def _parse_frame_rate(value: Optional[str]) -> float:
    """Parse ffprobe rates like '30000/1001' or '25'."""
    if not value:
        return 0.0
    try:
        if "/" in value:
            num, den = value.split("/", 1)
            den_f = float(den)
            return round(float(num) / den_f, 3) if den_f else 0.0
        return float(value)
    except (ValueError, TypeError):
        return 0.0


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def parse_ffprobe_output(data: Dict[str, Any]) -> MediaInfo:
    """Turn ffprobe's JSON (-show_format -show_streams) into MediaInfo."""
    streams = data.get("streams") or []
    fmt = data.get("format") or {}

    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

    info = MediaInfo()
    try:
        info.duration = float(fmt.get("duration") or (video or {}).get("duration") or 0)
    except (ValueError, TypeError):
        info.duration = 0.0
    info.bitrate = _to_int(fmt.get("bit_rate"))

    if video:
        info.width = _to_int(video.get("width")) or 0
        info.height = _to_int(video.get("height")) or 0
        info.fps = _parse_frame_rate(video.get("avg_frame_rate")) or _parse_frame_rate(video.get("r_frame_rate"))
        info.video_codec = video.get("codec_name")
        info.aspect_ratio = video.get("display_aspect_ratio")

    if audio:
        info.has_audio = True
        info.audio_codec = audio.get("codec_name")

    return info


class MediaInspector:
    """Runs ffprobe against local files."""

    def __init__(self, ffprobe_path: str, timeout: float = 30.0):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    async def get_media_info(self, source: str) -> MediaInfo:
        """Read stream properties of `source`; raises TranscodeError if it is unreadable or has no duration."""
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            source,
        ]

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodeError(f"Failed to start ffprobe: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TranscodeError(f"ffprobe timed out after {self.timeout:.0f}s", retryable=True)

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="ignore").strip()[-500:]
            raise TranscodeError(f"ffprobe failed (code {process.returncode}): {message}")

        try:
            data = json.loads(stdout.decode("utf-8", errors="ignore") or "{}")
        except json.JSONDecodeError as e:
            raise TranscodeError(f"ffprobe returned invalid JSON: {e}") from e

        info = parse_ffprobe_output(data)
        if info.duration <= 0:
            raise TranscodeError(f"Could not determine duration of {source}")
        if info.width <= 0 or info.height <= 0:
            raise TranscodeError(f"No video stream found in {source}")

        logger.info(
            f"[MediaInfo] {source}: {info.width}x{info.height} @ {info.fps}fps, "
            f"{info.duration:.1f}s, codec={info.video_codec}"
        )
        return info
