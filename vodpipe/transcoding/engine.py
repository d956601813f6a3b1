"""
Transcoding engine: drives FFmpeg/ffprobe subprocesses for one job.
"""

import asyncio
import logging
import re
import shutil
import time
from collections import deque
from pathlib import Path
from typing import Callable, Deque, List, Optional, Tuple

from ..config import TranscodingConfig
from ..errors import TranscodeError
from .commands import CommandBuilder
from .constants import (
    MIN_STALL_TIMEOUT,
    PLAYLIST_NAME,
    RETRY_DELAY,
    STALL_TIMEOUT_PER_SEGMENT,
)
from .error_classifier import ErrorClassifier, get_error_classifier
from .models import MediaInfo, QualityRung, TranscodeProgress
from .mediainfo import MediaInspector

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TranscodeProgress], None]

_LINE_SPLIT = re.compile(r"[\r\n]")


class TranscodeEngine:
    """FFmpeg-based engine producing one HLS rendition per call."""

    def __init__(self, config: TranscodingConfig, error_classifier: Optional[ErrorClassifier] = None):
        self.config = config
        self.ffmpeg_path = self._find_binary("ffmpeg", config.ffmpeg_path)
        self.ffprobe_path = self._find_binary("ffprobe", config.ffprobe_path)
        self.inspector = MediaInspector(self.ffprobe_path, timeout=config.ffprobe_timeout)
        self.command_builder = CommandBuilder(self.ffmpeg_path, config)
        self.error_classifier = error_classifier or get_error_classifier()

    @staticmethod
    def _find_binary(name: str, configured: str) -> str:
        if configured != "auto":
            return configured
        found = shutil.which(name)
        if found:
            return found
        logger.warning(f"[Transcode] {name} not found on PATH, relying on bare '{name}'")
        return name

    async def inspect(self, source: Path) -> MediaInfo:
        return await self.inspector.get_media_info(str(source))

    def _calculate_stall_timeout(self, media_info: MediaInfo) -> float:
        """
        Calculate stall timeout based on content.

        Longer segments and higher resolutions need more time before FFmpeg
        emits its next stats line.
        """
        base_timeout = max(MIN_STALL_TIMEOUT, self.config.stall_timeout)
        segment_factor = STALL_TIMEOUT_PER_SEGMENT * self.config.segment_duration

        resolution_factor = 1.0
        if media_info.width >= 3840:
            resolution_factor = 2.0
        elif media_info.width >= 1920:
            resolution_factor = 1.5

        return base_timeout + (segment_factor * resolution_factor)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Stop FFmpeg: SIGTERM first, SIGKILL if it does not exit."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=5.0)
            return
        except (asyncio.TimeoutError, ProcessLookupError, OSError):
            pass
        try:
            process.kill()
            await process.wait()
            logger.warning("[Transcode] FFmpeg killed forcefully")
        except (ProcessLookupError, OSError):
            pass

    async def _run_ffmpeg(
        self,
        cmd: List[str],
        media_info: MediaInfo,
        progress_callback: Optional[ProgressCallback] = None,
        stage: str = "transcoding",
    ) -> Tuple[int, str]:
        """
        Run FFmpeg, parsing progress from stderr and watching for stalls.

        Returns:
            Tuple of (return_code, error_output). Return code is -1 if the
            process failed to start or never reported an exit status.
        """
        logger.info(f"[Transcode] Running FFmpeg: {' '.join(cmd[:10])}...")
        stall_timeout = self._calculate_stall_timeout(media_info)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"[Transcode] Failed to start FFmpeg: {e}")
            return -1, str(e)

        progress = TranscodeProgress(stage=stage)
        stderr_lines: Deque[str] = deque(maxlen=100)
        last_progress_time = time.monotonic()
        stalled = False

        def handle_line(line: str) -> None:
            nonlocal last_progress_time
            if not line.strip():
                return
            stderr_lines.append(line)
            if "time=" in line and ("frame=" in line or "size=" in line):
                last_progress_time = time.monotonic()
                self._parse_progress(line, progress, media_info)
                if progress_callback:
                    try:
                        progress_callback(progress)
                    except Exception as e:
                        logger.warning(f"[Transcode] Progress callback error: {e}")

        async def read_stderr():
            # FFmpeg terminates stats lines with \r, so split on both
            buffer = ""
            while True:
                chunk = await process.stderr.read(4096)
                if not chunk:
                    break
                buffer += chunk.decode("utf-8", errors="ignore")
                *lines, buffer = _LINE_SPLIT.split(buffer)
                for line in lines:
                    handle_line(line)
            handle_line(buffer)

        async def monitor_stall():
            nonlocal stalled
            while process.returncode is None:
                if time.monotonic() - last_progress_time > stall_timeout:
                    stalled = True
                    logger.error(f"[Transcode] FFmpeg stalled for {stall_timeout:.0f}s, terminating")
                    await self._terminate(process)
                    return
                await asyncio.sleep(1.0)

        reader = asyncio.create_task(read_stderr())
        monitor = asyncio.create_task(monitor_stall())

        try:
            await reader
            try:
                await asyncio.wait_for(process.wait(), timeout=10.0)
            except asyncio.TimeoutError:
                logger.error("[Transcode] FFmpeg did not exit, force killing")
                await self._terminate(process)
        finally:
            monitor.cancel()
            await asyncio.gather(monitor, return_exceptions=True)

        return_code = process.returncode if process.returncode is not None else -1

        error_output = "\n".join(stderr_lines)
        if stalled:
            error_output = f"[STALLED after {stall_timeout:.0f}s] " + error_output

        return return_code, error_output

    def _parse_progress(
        self,
        line: str,
        progress: TranscodeProgress,
        media_info: MediaInfo,
    ) -> None:
        """Parse an FFmpeg stats line into `progress`."""
        match = re.search(r"frame=\s*(\d+)", line)
        if match:
            progress.frame = int(match.group(1))

        match = re.search(r"fps=\s*([\d.]+|N/A)", line)
        if match and match.group(1) != "N/A":
            try:
                progress.fps = float(match.group(1))
            except ValueError:
                pass

        match = re.search(r"bitrate=\s*([\d.]+\s*[kMG]?bits/s|N/A)", line)
        if match and match.group(1) != "N/A":
            progress.bitrate = match.group(1).strip()

        match = re.search(r"size=\s*(\d+)\s*(KiB|kB|MiB|MB|B)?", line)
        if match:
            size_val = int(match.group(1))
            unit = match.group(2) or "kB"
            if unit in ("MB", "MiB"):
                progress.total_size = size_val * 1024 * 1024
            elif unit in ("kB", "KiB"):
                progress.total_size = size_val * 1024
            else:
                progress.total_size = size_val

        match = re.search(r"time=\s*(\d+):(\d+):(\d+\.?\d*)", line)
        if match:
            h, m, s = match.groups()
            progress.time = int(h) * 3600 + int(m) * 60 + float(s)

        match = re.search(r"speed=\s*([\d.]+)x", line)
        if match:
            try:
                progress.speed = float(match.group(1))
            except ValueError:
                pass

        if media_info.duration > 0 and progress.time > 0:
            progress.percent = min(99.9, (progress.time / media_info.duration) * 100)

    def _validate_hls_output(self, output_dir: Path) -> Tuple[bool, str]:
        """
        Validate a rung's HLS output: finished VOD playlist whose segments
        all exist and look like MPEG-TS.

        Returns:
            Tuple of (is_valid, error_message)
        """
        playlist = output_dir / PLAYLIST_NAME
        if not playlist.exists():
            return False, "Variant playlist not found"

        content = playlist.read_text()
        if not content.strip():
            return False, "Variant playlist is empty"
        if "#EXT-X-ENDLIST" not in content:
            return False, "Variant playlist is not finalized"

        segments = [
            line.strip() for line in content.splitlines()
            if line.strip() and not line.startswith("#")
        ]
        if not segments:
            return False, "Variant playlist references no segments"

        for name in segments:
            segment = output_dir / name
            if not segment.exists():
                return False, f"Segment {name} missing"
            if segment.stat().st_size == 0:
                return False, f"Segment {name} is empty"

        # MPEG-TS sync byte on the first segment
        with open(output_dir / segments[0], "rb") as f:
            if f.read(1) != b"\x47":
                return False, f"Segment {segments[0]} missing MPEG-TS sync byte"

        return True, ""

    @staticmethod
    def _clear_dir(dir_path: Path) -> None:
        for f in dir_path.glob("*"):
            if f.is_file():
                f.unlink(missing_ok=True)
            elif f.is_dir():
                shutil.rmtree(f, ignore_errors=True)

    @staticmethod
    def _last_line(error_output: str) -> str:
        lines = [line.strip() for line in error_output.splitlines() if line.strip()]
        return lines[-1] if lines else "Unknown error"

    async def transcode_rung(
        self,
        source: Path,
        output_dir: Path,
        rung: QualityRung,
        media_info: MediaInfo,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Path:
        """
        Encode one ladder rung into `output_dir` with in-place retries for
        transient failures.

        Returns the rung's playlist path; raises TranscodeError otherwise.
        """
        output_dir.mkdir(parents=True, exist_ok=True)
        cmd = self.command_builder.build_rung_command(str(source), output_dir, rung, media_info)
        retry_count = self.config.retry_count

        for attempt in range(retry_count + 1):
            if attempt:
                self._clear_dir(output_dir)
            logger.info(f"[Transcode] {rung.quality} attempt {attempt + 1}/{retry_count + 1}")

            return_code, error_output = await self._run_ffmpeg(
                cmd, media_info, progress_callback, stage=f"hls_{rung.quality}"
            )

            if return_code == 0:
                is_valid, validation_error = self._validate_hls_output(output_dir)
                if is_valid:
                    logger.info(f"[Transcode] {rung.quality} complete")
                    return output_dir / PLAYLIST_NAME
                logger.warning(f"[Transcode] FFmpeg returned success but validation failed: {validation_error}")
                error_output = f"Validation failed: {validation_error}\n" + error_output

            error_msg = error_output[-1000:] if error_output else "Unknown error"
            logger.warning(f"[Transcode] {rung.quality} failed (code {return_code}): {error_msg[-200:]}")

            if self.error_classifier.should_retry(error_msg, attempt, retry_count):
                delay = RETRY_DELAY * (attempt + 1)
                logger.info(f"[Transcode] Retrying {rung.quality} in {delay}s...")
                await asyncio.sleep(delay)
                continue

            raise TranscodeError(
                f"Transcoding {rung.quality} failed (exit code {return_code}): "
                f"{self._last_line(error_output)}",
                retryable=self.error_classifier.is_retryable(error_msg),
            )

        raise TranscodeError(f"Transcoding {rung.quality} failed: max retries exceeded")

    async def generate_thumbnail(self, source: Path, output_path: Path, media_info: MediaInfo) -> Path:
        """Extract a single JPEG frame; raises TranscodeError on failure."""
        cmd = self.command_builder.build_thumbnail_command(str(source), output_path, media_info)
        return_code, error_output = await self._run_ffmpeg(cmd, media_info, stage="thumbnail")

        if return_code != 0 or not output_path.exists() or output_path.stat().st_size == 0:
            raise TranscodeError(
                f"Thumbnail generation failed (exit code {return_code}): {self._last_line(error_output)}",
                retryable=self.error_classifier.is_retryable(error_output),
            )

        logger.info(f"[Transcode] Generated thumbnail {output_path.name}")
        return output_path
