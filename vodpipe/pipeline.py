"""
Transcode worker: takes an UPLOADED video through PROCESSING to READY or
ERROR.

    download source -> inspect -> thumbnail -> encode every ladder rung
    -> publish rung files -> publish master playlist

A READY video can also have a single rung rebuilt and merged back into its
manifest without leaving READY.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Set, Tuple

from . import events as ev
from .cleanup import scratch_dir
from .config import TranscodingConfig
from .errors import (
    ConcurrencyConflict,
    ExternalStorageError,
    InvalidStateTransition,
    NotFoundError,
    TranscodeError,
    VodPipeError,
)
from .events import EventPublisher
from .jobs import Job
from .models import (
    HLSManifest,
    MediaMetadata,
    ProcessVideoJob,
    RegenerateQualityJob,
    VariantPlaylist,
    VideoAsset,
    VideoStatus,
    utcnow,
)
from .state import can_transition, ensure_transition
from .storage import ObjectStore, StorageLayout, content_type_for
from .store import VideoStore
from .transcoding import (
    MASTER_PLAYLIST_NAME,
    PLAYLIST_NAME,
    QUALITY_LADDER,
    MediaInfo,
    QualityRung,
    TranscodeEngine,
    TranscodeProgress,
    build_master_playlist,
    build_variant,
    get_rung,
)

logger = logging.getLogger(__name__)

UPLOAD_CONCURRENCY = 4


def _describe(error: BaseException) -> str:
    if isinstance(error, VodPipeError):
        return error.message
    return str(error) or type(error).__name__


class ProgressReporter:
    """
    The only writer of a video's `progress` while it transcodes.

    Reports are serialized, never move backwards, and are only persisted and
    emitted once they advance by at least `min_step` percent.
    """

    def __init__(
        self,
        video_id: str,
        store: VideoStore,
        events: EventPublisher,
        rung_count: int,
        min_step: float = 1.0,
    ):
        self.video_id = video_id
        self.store = store
        self.events = events
        self.rung_count = max(1, rung_count)
        self.min_step = min_step
        self.last_percent = 0.0
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

    def overall(self, rung_index: int, fraction: float) -> float:
        fraction = min(max(fraction, 0.0), 1.0)
        return min(100.0, (rung_index + fraction) / self.rung_count * 100)

    async def report(self, percent: float, quality: Optional[str] = None) -> None:
        async with self._lock:
            if percent <= self.last_percent:
                return
            if percent - self.last_percent < self.min_step and percent < 100.0:
                return
            self.last_percent = percent
            value = round(percent, 2)

            def mutate(v: VideoAsset) -> None:
                if v.status == VideoStatus.PROCESSING and value > v.progress:
                    v.progress = value

            try:
                await self.store.update(self.video_id, mutate)
            except VodPipeError as e:
                logger.warning(f"[Transcode] Could not persist progress for {self.video_id}: {e}")
                return

            await self.events.emit(ev.PROCESSING_PROGRESS, {
                "video_id": self.video_id,
                "progress": value,
                "quality": quality,
            })

    def rung_callback(self, rung_index: int, quality: str):
        """Synchronous engine callback feeding this reporter."""
        def on_progress(progress: TranscodeProgress) -> None:
            percent = self.overall(rung_index, progress.percent / 100)
            task = asyncio.ensure_future(self.report(percent, quality))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return on_progress

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class TranscodeWorker:
    """Handler for `process-video` and `regenerate-quality` jobs."""

    def __init__(
        self,
        config: TranscodingConfig,
        store: VideoStore,
        object_store: ObjectStore,
        engine: TranscodeEngine,
        events: EventPublisher,
        layout: StorageLayout,
        ladder: Optional[List[QualityRung]] = None,
    ):
        self.config = config
        self.store = store
        self.object_store = object_store
        self.engine = engine
        self.events = events
        self.layout = layout
        self.ladder = list(ladder or QUALITY_LADDER)

    async def process(self, job: Job) -> None:
        """
        Process one job. Failures are recorded on the video and re-raised
        so the job queue can decide whether to retry.
        """
        payload = ProcessVideoJob(**job.payload)
        video = await self.store.get(payload.video_id)
        if video is None:
            raise NotFoundError(f"Video {payload.video_id} not found")
        if video.status != VideoStatus.UPLOADED:
            logger.warning(
                f"[Transcode] Dropping job {job.id}: video {video.id} is {video.status.value}, not uploaded"
            )
            return

        def start(v: VideoAsset) -> None:
            ensure_transition(v.status, VideoStatus.PROCESSING)
            v.status = VideoStatus.PROCESSING
            v.processing_job_id = job.id
            v.upload_session = None
            v.processing_error = None
            v.progress = 0.0

        try:
            video = await self.store.update(video.id, start, expected_version=video.version)
        except (ConcurrencyConflict, InvalidStateTransition) as e:
            logger.warning(f"[Transcode] Dropping job {job.id}: {e}")
            return

        logger.info(f"[Transcode] Processing video {video.id} (job {job.id})")
        await self.events.emit(ev.PROCESSING_STARTED, {
            "video_id": video.id,
            "category": video.category.value,
            "job_id": job.id,
        })

        try:
            manifest = await self._transcode(video, job.id)
            video = await self._mark_ready(video, manifest)
        except Exception as e:
            await self._fail(video, e)
            raise

        await self._announce_ready(video, manifest)

    async def _transcode(self, video: VideoAsset, job_id: str) -> HLSManifest:
        async with scratch_dir(self.config.temp_directory, job_id) as work:
            source, media_info = await self._fetch_source(video, work)
            await self._record_media_info(video.id, media_info)

            thumbnail_key = await self._publish_thumbnail(video, source, work, media_info)
            await self.store.update(video.id, lambda v: setattr(v, "thumbnail_key", thumbnail_key))

            reporter = ProgressReporter(video.id, self.store, self.events, len(self.ladder))
            try:
                for index, rung in enumerate(self.ladder):
                    logger.info(f"[Transcode] Video {video.id}: encoding {rung.quality} ({index + 1}/{len(self.ladder)})")
                    await self.engine.transcode_rung(
                        source,
                        work / rung.quality,
                        rung,
                        media_info,
                        progress_callback=reporter.rung_callback(index, rung.quality),
                    )
                    await reporter.flush()
                    await reporter.report(reporter.overall(index + 1, 0.0), rung.quality)
            finally:
                await reporter.flush()

            variants: List[VariantPlaylist] = []
            for rung in self.ladder:
                variants.append(await self._publish_rung(video, work / rung.quality, rung))

            master_key = self.layout.master_playlist_key(video.category, video.id)
            await self.object_store.put_object(
                master_key,
                build_master_playlist(variants).encode("utf-8"),
                content_type_for(MASTER_PLAYLIST_NAME),
            )
            logger.info(f"[Transcode] Video {video.id}: published {master_key}")

            return HLSManifest(master_playlist_key=master_key, variants=variants)

    async def _fetch_source(self, video: VideoAsset, work: Path) -> Tuple[Path, MediaInfo]:
        """Download the original into `work` and read its stream properties."""
        source = work / f"source{Path(video.source_object_key).suffix.lower()}"
        await self.object_store.download_file(video.source_object_key, source)

        media_info = await self.engine.inspect(source)
        if media_info.duration <= 0:
            raise TranscodeError(f"Could not determine duration of {video.original_file_name}")
        return source, media_info

    async def _record_media_info(self, video_id: str, media_info: MediaInfo) -> None:
        metadata = MediaMetadata(
            width=media_info.width,
            height=media_info.height,
            fps=media_info.fps,
            codec=media_info.video_codec,
            bitrate=media_info.bitrate,
            aspect_ratio=media_info.aspect_ratio,
            has_audio=media_info.has_audio,
        )

        def mutate(v: VideoAsset) -> None:
            v.duration_seconds = media_info.duration
            v.media_metadata = metadata

        await self.store.update(video_id, mutate)

    async def _publish_thumbnail(self, video: VideoAsset, source: Path, work: Path, media_info: MediaInfo) -> str:
        thumbnail = await self.engine.generate_thumbnail(source, work / "thumbnail.jpg", media_info)
        key = self.layout.thumbnail_key(video.category, video.id)
        await self.object_store.upload_file(thumbnail, key)
        return key

    async def _publish_rung(self, video: VideoAsset, rung_dir: Path, rung: QualityRung) -> VariantPlaylist:
        """Upload a rung's segments, then its playlist."""
        prefix = self.layout.variant_prefix(video.category, video.id, rung.quality)
        files = sorted(f for f in rung_dir.iterdir() if f.is_file() and f.name != PLAYLIST_NAME)
        semaphore = asyncio.Semaphore(UPLOAD_CONCURRENCY)

        async def upload(path: Path) -> None:
            async with semaphore:
                await self.object_store.upload_file(path, f"{prefix}/{path.name}")

        await asyncio.gather(*(upload(f) for f in files))

        playlist_key = self.layout.variant_playlist_key(video.category, video.id, rung.quality)
        await self.object_store.upload_file(rung_dir / PLAYLIST_NAME, playlist_key)
        logger.info(f"[Transcode] Video {video.id}: published {rung.quality} ({len(files)} segments)")

        return build_variant(rung, playlist_key)

    async def _mark_ready(self, video: VideoAsset, manifest: HLSManifest) -> VideoAsset:
        def mutate(v: VideoAsset) -> None:
            ensure_transition(v.status, VideoStatus.READY)
            v.status = VideoStatus.READY
            v.manifest = manifest
            v.processed_at = utcnow()
            v.progress = 100.0

        video = await self.store.update(video.id, mutate)
        logger.info(f"[Transcode] Video {video.id} ready: {manifest.master_playlist_key}")
        return video

    async def _announce_ready(self, video: VideoAsset, manifest: HLSManifest) -> None:
        await self.events.emit(ev.PROCESSING_COMPLETED, {
            "video_id": video.id,
            "category": video.category.value,
            "master_playlist_key": manifest.master_playlist_key,
            "available_qualities": [q.value for q in video.available_qualities],
            "thumbnail_key": video.thumbnail_key,
            "duration_seconds": video.duration_seconds,
        })
        self.events.notify_reviewer(
            f"Video ready: {video.title}",
            f"<p>A video finished processing and is ready for review.</p>"
            f"<p><b>Title:</b> {video.title}<br><b>Category:</b> {video.category.value}<br>"
            f"<b>Qualities:</b> {', '.join(q.value for q in video.available_qualities)}<br>"
            f"<b>Video ID:</b> {video.id}</p>",
        )

    async def _fail(self, video: VideoAsset, error: Exception) -> None:
        message = _describe(error)
        retryable = bool(getattr(error, "retryable", False))
        logger.error(f"[Transcode] Video {video.id} failed: {message}")

        def mutate(v: VideoAsset) -> None:
            if can_transition(v.status, VideoStatus.ERROR):
                v.status = VideoStatus.ERROR
                v.processing_error = message
                v.manifest = None

        try:
            await self.store.update(video.id, mutate)
        except VodPipeError as e:
            logger.error(f"[Transcode] Could not record failure on video {video.id}: {e}")

        await self.events.emit(ev.PROCESSING_FAILED, {
            "video_id": video.id,
            "category": video.category.value,
            "error": message,
            "retryable": retryable,
        })

    # -------------------------------------------------------------------------
    # Single rung regeneration
    # -------------------------------------------------------------------------

    async def regenerate_quality(self, job: Job) -> None:
        """
        Handler for `regenerate-quality` jobs: re-encode one rung of a READY
        video and merge it into the published manifest.

        The video stays READY throughout. A failure is reported as an event
        and re-raised for the job queue; the existing manifest is untouched.
        """
        payload = RegenerateQualityJob(**job.payload)
        quality = payload.quality.value
        rung = get_rung(quality)

        video = await self.store.get(payload.video_id)
        if video is None:
            raise NotFoundError(f"Video {payload.video_id} not found")
        if video.status != VideoStatus.READY or video.manifest is None:
            logger.warning(
                f"[Transcode] Dropping job {job.id}: video {video.id} is {video.status.value}, not ready"
            )
            return

        logger.info(f"[Transcode] Regenerating {quality} for video {video.id} (job {job.id})")
        try:
            variant = await self._encode_single_rung(video, rung, job.id)
            video = await self._merge_variant(video, variant)
        except Exception as e:
            message = _describe(e)
            logger.error(f"[Transcode] Regenerating {quality} for video {video.id} failed: {message}")
            await self.events.emit(ev.QUALITY_REGENERATION_FAILED, {
                "video_id": video.id,
                "quality": quality,
                "error": message,
                "retryable": bool(getattr(e, "retryable", False)),
            })
            raise

        await self.events.emit(ev.QUALITY_REGENERATED, {
            "video_id": video.id,
            "quality": quality,
            "master_playlist_key": video.manifest.master_playlist_key,
            "available_qualities": [q.value for q in video.available_qualities],
        })

    async def _encode_single_rung(self, video: VideoAsset, rung: QualityRung, job_id: str) -> VariantPlaylist:
        if await self.object_store.head_object(video.source_object_key) is None:
            raise ExternalStorageError(f"Source {video.source_object_key} of video {video.id} is missing")

        async with scratch_dir(self.config.temp_directory, job_id) as work:
            source, media_info = await self._fetch_source(video, work)
            await self.engine.transcode_rung(source, work / rung.quality, rung, media_info)
            return await self._publish_rung(video, work / rung.quality, rung)

    async def _merge_variant(self, video: VideoAsset, variant: VariantPlaylist) -> VideoAsset:
        """
        Publish a master playlist including `variant` and record the new
        manifest, conditional on the video not having changed since `video`
        was read.
        """
        variants = {v.quality.value: v for v in video.manifest.variants}
        variants[variant.quality.value] = variant
        ordered = [variants[r.quality] for r in QUALITY_LADDER if r.quality in variants]
        manifest = HLSManifest(master_playlist_key=video.manifest.master_playlist_key, variants=ordered)

        await self.object_store.put_object(
            manifest.master_playlist_key,
            build_master_playlist(manifest.variants).encode("utf-8"),
            content_type_for(MASTER_PLAYLIST_NAME),
        )

        def mutate(v: VideoAsset) -> None:
            if v.status != VideoStatus.READY:
                raise InvalidStateTransition(v.status.value, VideoStatus.READY.value, "video left ready")
            v.manifest = manifest

        video = await self.store.update(video.id, mutate, expected_version=video.version)
        logger.info(f"[Transcode] Video {video.id}: manifest now has {[v.quality.value for v in ordered]}")
        return video
