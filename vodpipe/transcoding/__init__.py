"""
Transcoding package for VodPipe.
FFmpeg-driven HLS ladder encoding, thumbnails and master playlists.
"""

from .models import QualityRung, TranscodeProgress, MediaInfo
from .constants import (
    QUALITY_LADDER,
    LADDER_BY_QUALITY,
    PLAYLIST_NAME,
    MASTER_PLAYLIST_NAME,
    RETRY_DELAY,
    MIN_STALL_TIMEOUT,
    STALL_TIMEOUT_PER_SEGMENT,
    get_rung,
)
from .manifest import build_master_playlist, build_variant
from .mediainfo import MediaInspector, parse_ffprobe_output
from .commands import CommandBuilder
from .error_classifier import ErrorClassifier, get_error_classifier
from .engine import TranscodeEngine

__all__ = [
    # Models
    "QualityRung",
    "TranscodeProgress",
    "MediaInfo",
    # Constants
    "QUALITY_LADDER",
    "LADDER_BY_QUALITY",
    "PLAYLIST_NAME",
    "MASTER_PLAYLIST_NAME",
    "RETRY_DELAY",
    "MIN_STALL_TIMEOUT",
    "STALL_TIMEOUT_PER_SEGMENT",
    "get_rung",
    # Manifest
    "build_master_playlist",
    "build_variant",
    # Classes
    "MediaInspector",
    "parse_ffprobe_output",
    "CommandBuilder",
    "ErrorClassifier",
    "get_error_classifier",
    "TranscodeEngine",
]
