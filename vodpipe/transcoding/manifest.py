"""
HLS master playlist generation.
"""

from typing import Iterable

from ..models import VariantPlaylist, VideoQuality
from .constants import PLAYLIST_NAME
from .models import QualityRung


def build_variant(rung: QualityRung, playlist_key: str) -> VariantPlaylist:
    """Describe an uploaded rung playlist for the manifest."""
    return VariantPlaylist(
        quality=VideoQuality(rung.quality),
        playlist_key=playlist_key,
        bandwidth=rung.bitrate_bps,
        resolution=rung.resolution,
    )


def build_master_playlist(variants: Iterable[VariantPlaylist]) -> str:
    """
    Render a master playlist with one stream entry per variant, in order.

    Variant URIs are relative (`<quality>/index.m3u8`) so the master can be
    served from next to the rung directories.
    """
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]

    for variant in variants:
        quality = getattr(variant.quality, "value", variant.quality)
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={variant.bandwidth},"
            f"RESOLUTION={variant.resolution}"
        )
        lines.append(f"{quality}/{PLAYLIST_NAME}")

    return "\n".join(lines) + "\n"
