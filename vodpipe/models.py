"""
Data models for VodPipe
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_video_id() -> str:
    return uuid.uuid4().hex


class ContentCategory(str, Enum):
    DAILY_CLASSES = "daily_classes"
    MASTER_CLASSES = "master_classes"
    PSICOTRADING = "psicotrading"
    STOCKS = "stocks"


class VideoStatus(str, Enum):
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"
    ARCHIVED = "archived"


class VideoQuality(str, Enum):
    HD_1080P = "1080p"
    HD_720P = "720p"
    SD_480P = "480p"
    SD_360P = "360p"


# =============================================================================
# VIDEO ASSET
# =============================================================================

class UploadPart(BaseModel):
    part_number: int
    etag: str
    size_bytes: int = 0


class UploadSession(BaseModel):
    """Multipart bookkeeping; only present while uploading/uploaded."""
    upload_id: str
    parts: List[UploadPart] = Field(default_factory=list)
    bytes_uploaded: int = 0
    total_bytes: int = 0


class MediaMetadata(BaseModel):
    width: int = 0
    height: int = 0
    fps: float = 0.0
    codec: Optional[str] = None
    bitrate: Optional[int] = None
    aspect_ratio: Optional[str] = None
    has_audio: bool = False


class VariantPlaylist(BaseModel):
    quality: VideoQuality
    playlist_key: str
    bandwidth: int
    resolution: str


class HLSManifest(BaseModel):
    master_playlist_key: str
    variants: List[VariantPlaylist] = Field(default_factory=list)


class VideoAsset(BaseModel):
    id: str = Field(default_factory=new_video_id)
    category: ContentCategory
    status: VideoStatus = VideoStatus.UPLOADING
    title: str = ""
    original_file_name: str = ""
    source_object_key: str
    source_bucket: str
    file_size_bytes: int = 0
    duration_seconds: Optional[float] = None
    media_metadata: Optional[MediaMetadata] = None
    thumbnail_key: Optional[str] = None
    upload_session: Optional[UploadSession] = None
    manifest: Optional[HLSManifest] = None
    processing_error: Optional[str] = None
    processing_job_id: Optional[str] = None
    progress: float = 0.0
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    uploaded_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @computed_field
    @property
    def available_qualities(self) -> List[VideoQuality]:
        """Always exactly the qualities listed in the manifest."""
        if self.manifest is None:
            return []
        return [variant.quality for variant in self.manifest.variants]


class ProcessVideoJob(BaseModel):
    """Payload of a queued `process-video` job."""
    video_id: str
    source_key: str
    category: ContentCategory


class RegenerateQualityJob(BaseModel):
    """Payload of a queued `regenerate-quality` job."""
    video_id: str
    quality: VideoQuality


# =============================================================================
# API REQUESTS / RESPONSES
# =============================================================================

class InitiateUploadRequest(BaseModel):
    file_name: str
    file_size_bytes: int
    category: ContentCategory


class InitiateUploadResponse(BaseModel):
    video_id: str
    upload_id: str
    source_key: str
    part_url_ttl_seconds: int


class PartUrlResponse(BaseModel):
    upload_url: str
    part_number: int
    expires_in: int


class RecordPartRequest(BaseModel):
    upload_id: str
    part_number: int
    etag: str
    size_bytes: int = 0


class CompleteUploadRequest(BaseModel):
    upload_id: str
    parts: List[UploadPart]


class AbortUploadRequest(BaseModel):
    upload_id: str


class ReprocessRequest(BaseModel):
    expected_version: Optional[int] = None


class SignedUrlResponse(BaseModel):
    video_id: str
    key: str
    url: str
    expires_in: int


class RegenerateQualityResponse(BaseModel):
    video_id: str
    quality: VideoQuality
    job_id: str


class VideoListResponse(BaseModel):
    items: List[VideoAsset]
    total: int
    page: int
    limit: int


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    active_jobs: int
    queued_jobs: int


class StatsResponse(BaseModel):
    total_jobs_processed: int
    successful_jobs: int
    failed_jobs: int
    retried_jobs: int
    current_queue_length: int
    active_jobs: int
    uptime_seconds: float


class EventMessage(BaseModel):
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
