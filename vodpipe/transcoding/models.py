"""
Data classes shared by the transcoding components.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class QualityRung:
    """One fixed resolution/bitrate step of the quality ladder."""
    quality: str
    width: int
    height: int
    bitrate_bps: int

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def video_bitrate(self) -> str:
        """FFmpeg-style bitrate, e.g. '2800k'."""
        return f"{self.bitrate_bps // 1000}k"

    @property
    def bufsize(self) -> str:
        return f"{self.bitrate_bps * 2 // 1000}k"


@dataclass
class MediaInfo:
    """Stream properties of a source file."""
    duration: float = 0.0
    width: int = 0
    height: int = 0
    fps: float = 0.0
    video_codec: Optional[str] = None
    bitrate: Optional[int] = None
    aspect_ratio: Optional[str] = None
    has_audio: bool = False
    audio_codec: Optional[str] = None


@dataclass
class TranscodeProgress:
    """Progress of a single FFmpeg run, parsed from its stats output."""
    frame: int = 0
    fps: float = 0.0
    bitrate: str = ""
    total_size: int = 0
    time: float = 0.0
    speed: float = 0.0
    percent: float = 0.0
    stage: str = "transcoding"
