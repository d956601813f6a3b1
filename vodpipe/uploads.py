"""
Upload session management. The multipart upload lifecycle of a video
(UPLOADING -> UPLOADED) lives here, along with the operator requests that
send a video back to the workers and the signed links used to deliver it.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from . import events as ev
from .config import StorageConfig
from .errors import (
    ConcurrencyConflict,
    ExternalStorageError,
    InvalidStateTransition,
    NotFoundError,
    NotReadyError,
    ValidationError,
    VodPipeError,
)
from .events import EventPublisher
from .jobs import PROCESS_VIDEO, REGENERATE_QUALITY, Job, JobQueue
from .models import (
    ContentCategory,
    InitiateUploadResponse,
    ProcessVideoJob,
    RegenerateQualityJob,
    RegenerateQualityResponse,
    SignedUrlResponse,
    UploadPart,
    UploadSession,
    VideoAsset,
    VideoQuality,
    VideoStatus,
    utcnow,
)
from .state import UPLOAD_COMPLETED, can_transition, ensure_transition
from .storage import MAX_SIGNED_URL_TTL, ObjectStore, StorageLayout, content_type_for
from .store import VideoStore

logger = logging.getLogger(__name__)

MIN_PART_NUMBER = 1
MAX_PART_NUMBER = 10000
MAX_PAGE_SIZE = 100
ABORT_MESSAGE = "Upload aborted by user"


def _parse_category(category) -> ContentCategory:
    try:
        return ContentCategory(category)
    except ValueError:
        raise ValidationError(f"Unknown category: {category}") from None


def _check_part_number(part_number: int) -> None:
    if not isinstance(part_number, int) or not MIN_PART_NUMBER <= part_number <= MAX_PART_NUMBER:
        raise ValidationError(
            f"Part number must be between {MIN_PART_NUMBER} and {MAX_PART_NUMBER}, got {part_number}"
        )


def validate_parts(parts: Iterable[UploadPart]) -> List[UploadPart]:
    """Check a completion part list and return it sorted by part number."""
    parts = list(parts or [])
    if not parts:
        raise ValidationError("At least one part is required")

    seen = set()
    for part in parts:
        _check_part_number(part.part_number)
        if part.part_number in seen:
            raise ValidationError(f"Duplicate part number {part.part_number}")
        if not part.etag or not part.etag.strip():
            raise ValidationError(f"Part {part.part_number} has no ETag")
        seen.add(part.part_number)

    return sorted(parts, key=lambda p: p.part_number)


def _ensure_reprocessable(video: VideoAsset) -> None:
    ensure_transition(video.status, VideoStatus.UPLOADED, reprocess=True)
    if video.uploaded_at is None:
        # Aborted or failed-completion uploads have no source object
        raise InvalidStateTransition(video.status.value, VideoStatus.UPLOADED.value, "upload never completed")


def _reset_for_processing(video: VideoAsset) -> None:
    video.status = VideoStatus.UPLOADED
    video.manifest = None
    video.processing_error = None
    video.processing_job_id = None
    video.progress = 0.0


class UploadSessionManager:
    """
    Drives a video through its multipart upload and hands it to the
    transcode queue.

    Clients upload parts straight to the object store through signed URLs;
    this class only tracks the session and validates the final part list.
    """

    def __init__(
        self,
        config: StorageConfig,
        store: VideoStore,
        object_store: ObjectStore,
        queue: JobQueue,
        events: EventPublisher,
        layout: Optional[StorageLayout] = None,
    ):
        self.config = config
        self.store = store
        self.object_store = object_store
        self.queue = queue
        self.events = events
        self.layout = layout or StorageLayout(config)

    @property
    def part_url_ttl(self) -> int:
        return min(self.config.part_url_ttl_seconds, MAX_SIGNED_URL_TTL)

    async def _require(self, video_id: str) -> VideoAsset:
        video = await self.store.get(video_id)
        if video is None:
            raise NotFoundError(f"Video {video_id} not found")
        return video

    @staticmethod
    def _require_session(video: VideoAsset, upload_id: str) -> UploadSession:
        session = video.upload_session
        if session is None or session.upload_id != upload_id:
            raise NotFoundError(f"Upload {upload_id} not found for video {video.id}")
        return session

    async def _enqueue_processing(self, video: VideoAsset) -> str:
        job = ProcessVideoJob(
            video_id=video.id,
            source_key=video.source_object_key,
            category=video.category,
        )
        return await self.queue.enqueue(PROCESS_VIDEO, job.model_dump(mode="json"))

    async def _mark_error(self, video_id: str, message: str) -> None:
        def mutate(v: VideoAsset) -> None:
            if can_transition(v.status, VideoStatus.ERROR):
                v.status = VideoStatus.ERROR
                v.processing_error = message
                v.upload_session = None

        try:
            await self.store.update(video_id, mutate)
        except VodPipeError as e:
            logger.error(f"[Upload] Could not record error on video {video_id}: {e}")

    # -------------------------------------------------------------------------
    # Multipart lifecycle
    # -------------------------------------------------------------------------

    async def initiate(self, file_name: str, file_size_bytes: int, category) -> InitiateUploadResponse:
        """Start a multipart upload and create the video in UPLOADING."""
        if not file_name or not file_name.strip():
            raise ValidationError("File name is required")
        if not isinstance(file_size_bytes, int) or file_size_bytes <= 0:
            raise ValidationError("File size must be a positive number of bytes")
        max_bytes = self.config.max_file_size_gb * 1024 ** 3
        if file_size_bytes > max_bytes:
            raise ValidationError(f"File size exceeds the {self.config.max_file_size_gb}GB limit")
        category = _parse_category(category)

        file_name = file_name.strip()
        source_key = self.layout.source_key(category, file_name)
        upload_id = await self.object_store.create_multipart_upload(
            source_key,
            content_type_for(file_name),
            metadata={"category": category.value},
        )

        video = VideoAsset(
            category=category,
            status=VideoStatus.UPLOADING,
            title=Path(file_name).stem,
            original_file_name=file_name,
            source_object_key=source_key,
            source_bucket=self.object_store.bucket,
            file_size_bytes=file_size_bytes,
            upload_session=UploadSession(upload_id=upload_id, total_bytes=file_size_bytes),
        )
        try:
            video = await self.store.create(video)
        except VodPipeError:
            try:
                await self.object_store.abort_multipart_upload(source_key, upload_id)
            except ExternalStorageError as e:
                logger.warning(f"[Upload] Could not abort orphaned upload {upload_id}: {e}")
            raise

        logger.info(f"[Upload] Initiated upload for video {video.id}: {source_key}")
        await self.events.emit(ev.UPLOAD_INITIATED, {
            "video_id": video.id,
            "category": category.value,
            "file_name": file_name,
            "file_size_bytes": file_size_bytes,
        })

        return InitiateUploadResponse(
            video_id=video.id,
            upload_id=upload_id,
            source_key=source_key,
            part_url_ttl_seconds=self.part_url_ttl,
        )

    async def get_part_upload_url(self, video_id: str, upload_id: str, part_number: int) -> str:
        """Signed URL the client PUTs one part to."""
        _check_part_number(part_number)
        video = await self._require(video_id)
        self._require_session(video, upload_id)
        if video.status != VideoStatus.UPLOADING:
            raise InvalidStateTransition(
                video.status.value, VideoStatus.UPLOADING.value, "upload is no longer accepting parts"
            )

        return await self.object_store.sign_part_upload_url(
            video.source_object_key, upload_id, part_number, self.part_url_ttl
        )

    async def record_part(
        self,
        video_id: str,
        upload_id: str,
        part_number: int,
        etag: str,
        size_bytes: int = 0,
    ) -> VideoAsset:
        """Track a part the client finished uploading."""
        _check_part_number(part_number)
        if not etag or not etag.strip():
            raise ValidationError(f"Part {part_number} has no ETag")
        if size_bytes < 0:
            raise ValidationError("Part size cannot be negative")

        def mutate(v: VideoAsset) -> None:
            session = self._require_session(v, upload_id)
            if v.status != VideoStatus.UPLOADING:
                raise InvalidStateTransition(
                    v.status.value, VideoStatus.UPLOADING.value, "upload is no longer accepting parts"
                )
            parts = {p.part_number: p for p in session.parts}
            parts[part_number] = UploadPart(part_number=part_number, etag=etag, size_bytes=size_bytes)
            session.parts = sorted(parts.values(), key=lambda p: p.part_number)
            session.bytes_uploaded = sum(p.size_bytes for p in session.parts)

        video = await self.store.update(video_id, mutate)
        session = video.upload_session
        percent = round(session.bytes_uploaded / session.total_bytes * 100, 2) if session.total_bytes else 0.0

        await self.events.emit(ev.UPLOAD_PROGRESS, {
            "video_id": video.id,
            "part_number": part_number,
            "bytes_uploaded": session.bytes_uploaded,
            "total_bytes": session.total_bytes,
            "percent": min(percent, 100.0),
        })
        return video

    def _already_completed(self, video: VideoAsset, upload_id: str) -> bool:
        if video.status not in UPLOAD_COMPLETED:
            return False
        # Past UPLOADED the session is gone; only an UPLOADED video can be asked with a stale id
        session = video.upload_session
        if video.status == VideoStatus.UPLOADED and session is not None and session.upload_id != upload_id:
            raise NotFoundError(f"Upload {upload_id} not found for video {video.id}")
        return True

    async def complete_upload(self, video_id: str, upload_id: str, parts: Iterable[UploadPart]) -> VideoAsset:
        """
        Finish the multipart upload and queue the video for processing.

        Completing an upload that already completed returns the current video
        without queueing it again.
        """
        ordered = validate_parts(parts)
        video = await self._require(video_id)

        if self._already_completed(video, upload_id):
            logger.info(f"[Upload] Upload {upload_id} for video {video_id} already completed")
            return video

        ensure_transition(video.status, VideoStatus.UPLOADED)
        self._require_session(video, upload_id)

        try:
            await self.object_store.complete_multipart_upload(video.source_object_key, upload_id, ordered)
        except ExternalStorageError as e:
            current = await self._require(video_id)
            if self._already_completed(current, upload_id):
                return current
            await self._mark_error(video_id, f"Failed to complete upload: {e.message}")
            raise

        def mutate(v: VideoAsset) -> None:
            ensure_transition(v.status, VideoStatus.UPLOADED)
            session = self._require_session(v, upload_id)
            session.parts = ordered
            session.bytes_uploaded = v.file_size_bytes
            v.status = VideoStatus.UPLOADED
            v.uploaded_at = utcnow()

        try:
            video = await self.store.update(video_id, mutate, expected_version=video.version)
        except ConcurrencyConflict:
            current = await self._require(video_id)
            if self._already_completed(current, upload_id):
                return current
            raise

        job_id = await self._enqueue_processing(video)
        logger.info(f"[Upload] Completed upload for video {video_id} ({len(ordered)} parts), job {job_id}")

        await self.events.emit(ev.UPLOAD_COMPLETED, {
            "video_id": video.id,
            "category": video.category.value,
            "source_key": video.source_object_key,
            "job_id": job_id,
        })
        self.events.notify_reviewer(
            f"New video uploaded: {video.title}",
            f"<p>A new video was uploaded and queued for processing.</p>"
            f"<p><b>Title:</b> {video.title}<br><b>Category:</b> {video.category.value}<br>"
            f"<b>File:</b> {video.original_file_name}<br><b>Video ID:</b> {video.id}</p>",
        )
        return video

    async def abort_upload(self, video_id: str, upload_id: str) -> VideoAsset:
        """Abort the multipart upload and put the video in ERROR."""
        video = await self._require(video_id)
        self._require_session(video, upload_id)
        if video.status != VideoStatus.UPLOADING:
            raise InvalidStateTransition(video.status.value, VideoStatus.ERROR.value, "upload already completed")

        await self.object_store.abort_multipart_upload(video.source_object_key, upload_id)

        def mutate(v: VideoAsset) -> None:
            ensure_transition(v.status, VideoStatus.ERROR)
            v.status = VideoStatus.ERROR
            v.processing_error = ABORT_MESSAGE
            v.upload_session = None

        video = await self.store.update(video_id, mutate)
        logger.info(f"[Upload] Aborted upload {upload_id} for video {video_id}")

        await self.events.emit(ev.UPLOAD_ABORTED, {"video_id": video.id, "upload_id": upload_id})
        return video

    # -------------------------------------------------------------------------
    # Reprocessing
    # -------------------------------------------------------------------------

    async def reprocess(self, video_id: str, expected_version: Optional[int] = None) -> VideoAsset:
        """
        Send an UPLOADED, READY or ERROR video back through the transcoder.

        The write is conditional on the version read here, so of two racing
        calls exactly one queues a job and the other gets ConcurrencyConflict.
        """
        video = await self._require(video_id)
        if expected_version is not None and video.version != expected_version:
            raise ConcurrencyConflict(
                f"Video {video_id} changed (expected version {expected_version}, found {video.version})"
            )
        _ensure_reprocessable(video)

        def mutate(v: VideoAsset) -> None:
            _ensure_reprocessable(v)
            _reset_for_processing(v)

        video = await self.store.update(video_id, mutate, expected_version=video.version)
        job_id = await self._enqueue_processing(video)
        logger.info(f"[Upload] Reprocessing video {video_id}, job {job_id}")

        await self.events.emit(ev.REPROCESS_STARTED, {
            "video_id": video.id,
            "category": video.category.value,
            "job_id": job_id,
        })
        return video

    async def prepare_retry(self, job: Job, error: BaseException) -> bool:
        """
        Job queue retry hook: put a failed video back to UPLOADED so the
        retried job is accepted by the worker.
        """
        video_id = job.payload.get("video_id")

        def mutate(v: VideoAsset) -> None:
            if v.status != VideoStatus.ERROR:
                raise InvalidStateTransition(v.status.value, VideoStatus.UPLOADED.value, "video is not failed")
            _ensure_reprocessable(v)
            _reset_for_processing(v)

        try:
            video = await self.store.update(video_id, mutate)
        except (NotFoundError, InvalidStateTransition) as e:
            logger.info(f"[Upload] Not retrying video {video_id}: {e}")
            return False

        await self.events.emit(ev.REPROCESS_STARTED, {
            "video_id": video.id,
            "category": video.category.value,
            "job_id": job.id,
            "retry": True,
            "attempt": job.attempts + 1,
        })
        return True

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    @property
    def download_url_ttl(self) -> int:
        return min(self.config.download_url_ttl_seconds, MAX_SIGNED_URL_TTL)

    async def get_playback_url(self, video_id: str) -> SignedUrlResponse:
        """Signed GET for the master playlist of a READY video."""
        video = await self._require(video_id)
        if video.status != VideoStatus.READY or video.manifest is None:
            raise NotReadyError(f"Video {video_id} is {video.status.value}, not ready for playback")

        key = video.manifest.master_playlist_key
        url = await self.object_store.sign_download_url(key, self.download_url_ttl)
        return SignedUrlResponse(video_id=video.id, key=key, url=url, expires_in=self.download_url_ttl)

    async def get_download_url(self, video_id: str) -> SignedUrlResponse:
        """Signed GET for the original upload."""
        video = await self._require(video_id)
        if video.uploaded_at is None:
            raise NotFoundError(f"Video {video_id} has no uploaded source")

        key = video.source_object_key
        url = await self.object_store.sign_download_url(key, self.download_url_ttl)
        return SignedUrlResponse(video_id=video.id, key=key, url=url, expires_in=self.download_url_ttl)

    async def regenerate_quality(self, video_id: str, quality) -> RegenerateQualityResponse:
        """
        Queue a re-encode of one ladder rung of a READY video.

        The video stays READY while the rung is rebuilt; the worker merges the
        new variant into the manifest when it is published.
        """
        try:
            quality = VideoQuality(quality)
        except ValueError:
            raise ValidationError(f"Unknown quality: {quality}") from None

        video = await self._require(video_id)
        if video.status != VideoStatus.READY or video.manifest is None:
            raise NotReadyError(f"Video {video_id} is {video.status.value}, only ready videos can gain qualities")

        payload = RegenerateQualityJob(video_id=video.id, quality=quality)
        job_id = await self.queue.enqueue(REGENERATE_QUALITY, payload.model_dump(mode="json"))
        logger.info(f"[Upload] Regenerating {quality.value} for video {video_id}, job {job_id}")

        await self.events.emit(ev.QUALITY_REGENERATION_STARTED, {
            "video_id": video.id,
            "quality": quality.value,
            "job_id": job_id,
        })
        return RegenerateQualityResponse(video_id=video.id, quality=quality, job_id=job_id)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_video(self, video_id: str) -> VideoAsset:
        return await self._require(video_id)

    async def list_videos(
        self,
        category=None,
        status=None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[VideoAsset], int]:
        """Videos newest first, filtered by category and/or status."""
        if page < 1:
            raise ValidationError("Page must be 1 or greater")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")
        if category is not None:
            category = _parse_category(category)
        if status is not None:
            try:
                status = VideoStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown status: {status}") from None

        return await self.store.list(category=category, status=status, offset=(page - 1) * limit, limit=limit)
