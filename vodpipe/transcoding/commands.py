"""
FFmpeg command building for HLS rung encodes and thumbnails.
"""

import logging
from pathlib import Path
from typing import List

from ..config import TranscodingConfig
from .constants import PLAYLIST_NAME, SEGMENT_PATTERN
from .models import MediaInfo, QualityRung

logger = logging.getLogger(__name__)


class CommandBuilder:
    """Builds FFmpeg commands for transcoding operations."""

    def __init__(self, ffmpeg_path: str, transcoding_config: TranscodingConfig):
        self.ffmpeg_path = ffmpeg_path
        self.transcoding_config = transcoding_config

    def _gop_size(self, media_info: MediaInfo) -> int:
        """Keyframe every 2 seconds so segments can cut cleanly."""
        return int(media_info.fps * 2) if media_info.fps > 0 else 60

    def build_rung_command(
        self,
        source: str,
        output_dir: Path,
        rung: QualityRung,
        media_info: MediaInfo,
    ) -> List[str]:
        """Build the FFmpeg command encoding one quality rung as a VOD HLS playlist."""
        segment_duration = self.transcoding_config.segment_duration
        gop = self._gop_size(media_info)

        # Use forward slashes for FFmpeg paths (works on all platforms)
        segment_path = str(output_dir / SEGMENT_PATTERN).replace("\\", "/")
        playlist_path = str(output_dir / PLAYLIST_NAME).replace("\\", "/")

        cmd = [self.ffmpeg_path, "-y", "-hide_banner", "-i", source]

        cmd.extend(["-map", "0:v:0"])
        if media_info.has_audio:
            cmd.extend(["-map", "0:a:0"])

        cmd.extend([
            "-vf", f"scale={rung.width}:{rung.height}:force_original_aspect_ratio=decrease,"
                   f"pad={rung.width}:{rung.height}:(ow-iw)/2:(oh-ih)/2,setsar=1",
            "-c:v", self.transcoding_config.video_codec,
            "-preset", self.transcoding_config.video_preset,
            "-profile:v", "main",
            "-pix_fmt", "yuv420p",
            "-b:v", rung.video_bitrate,
            "-maxrate", rung.video_bitrate,
            "-bufsize", rung.bufsize,
            "-g", str(gop),
            "-keyint_min", str(gop),
            "-sc_threshold", "0",
        ])

        if media_info.has_audio:
            cmd.extend(["-c:a", "aac", "-b:a", self.transcoding_config.audio_bitrate, "-ac", "2"])

        cmd.extend([
            "-f", "hls",
            "-hls_time", str(segment_duration),
            "-hls_playlist_type", "vod",
            "-hls_list_size", "0",
            "-start_number", "0",
            "-hls_segment_type", "mpegts",
            "-hls_segment_filename", segment_path,
            playlist_path,
        ])

        return cmd

    def build_thumbnail_command(
        self,
        source: str,
        output_path: Path,
        media_info: MediaInfo,
    ) -> List[str]:
        """Grab a single JPEG frame at the configured fraction of the duration."""
        position = max(0.0, media_info.duration * self.transcoding_config.thumbnail_position)
        width, height = self.transcoding_config.thumbnail_size.split("x", 1)

        return [
            self.ffmpeg_path, "-y", "-hide_banner",
            "-ss", f"{position:.3f}",
            "-i", source,
            "-frames:v", "1",
            "-vf", f"scale={width}:{height}:force_original_aspect_ratio=decrease",
            "-q:v", "2",
            str(output_path),
        ]
