"""
Constants and presets for transcoding operations.
"""

from typing import Dict, List

from .models import QualityRung


# Fixed bitrate ladder, highest first. Never derived from the source.
QUALITY_LADDER: List[QualityRung] = [
    QualityRung("1080p", 1920, 1080, 5_000_000),
    QualityRung("720p", 1280, 720, 2_800_000),
    QualityRung("480p", 854, 480, 1_400_000),
    QualityRung("360p", 640, 360, 800_000),
]

LADDER_BY_QUALITY: Dict[str, QualityRung] = {rung.quality: rung for rung in QUALITY_LADDER}

# HLS packaging
PLAYLIST_NAME = "index.m3u8"
MASTER_PLAYLIST_NAME = "master.m3u8"
SEGMENT_PATTERN = "segment_%05d.ts"

# Retry configuration
RETRY_DELAY = 2  # seconds, multiplied by attempt number

# Stall detection
MIN_STALL_TIMEOUT = 60  # seconds
STALL_TIMEOUT_PER_SEGMENT = 3  # extra seconds per second of segment length


def get_rung(quality: str) -> QualityRung:
    """Look up a ladder rung by its quality label."""
    try:
        return LADDER_BY_QUALITY[quality]
    except KeyError:
        raise ValueError(f"Unknown quality: {quality}") from None
