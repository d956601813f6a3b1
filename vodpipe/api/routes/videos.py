"""
Video upload and lifecycle API routes for VodPipe
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from ...models import (
    AbortUploadRequest,
    CompleteUploadRequest,
    ContentCategory,
    InitiateUploadRequest,
    InitiateUploadResponse,
    PartUrlResponse,
    RecordPartRequest,
    RegenerateQualityResponse,
    ReprocessRequest,
    SignedUrlResponse,
    VideoAsset,
    VideoListResponse,
    VideoQuality,
    VideoStatus,
)
from ..dependencies import get_services

router = APIRouter(prefix="/api/videos", tags=["videos"])


@router.post("/uploads", response_model=InitiateUploadResponse, status_code=201)
async def initiate_upload(request: InitiateUploadRequest, services=Depends(get_services)):
    """Start a multipart upload for a new video."""
    return await services.uploads.initiate(
        request.file_name, request.file_size_bytes, request.category
    )


@router.get("/{video_id}/upload/parts/{part_number}", response_model=PartUrlResponse)
async def get_part_upload_url(
    video_id: str,
    part_number: int,
    upload_id: str = Query(...),
    services=Depends(get_services),
):
    """Signed URL for uploading one part directly to object storage."""
    url = await services.uploads.get_part_upload_url(video_id, upload_id, part_number)
    return PartUrlResponse(
        upload_url=url,
        part_number=part_number,
        expires_in=services.uploads.part_url_ttl,
    )


@router.post("/{video_id}/upload/parts", response_model=VideoAsset)
async def record_part(video_id: str, request: RecordPartRequest, services=Depends(get_services)):
    return await services.uploads.record_part(
        video_id, request.upload_id, request.part_number, request.etag, request.size_bytes
    )


@router.post("/{video_id}/upload/complete", response_model=VideoAsset)
async def complete_upload(video_id: str, request: CompleteUploadRequest, services=Depends(get_services)):
    """Complete the multipart upload and queue the video for transcoding."""
    return await services.uploads.complete_upload(video_id, request.upload_id, request.parts)


@router.post("/{video_id}/upload/abort", response_model=VideoAsset)
async def abort_upload(video_id: str, request: AbortUploadRequest, services=Depends(get_services)):
    return await services.uploads.abort_upload(video_id, request.upload_id)


@router.post("/{video_id}/reprocess", response_model=VideoAsset)
async def reprocess_video(
    video_id: str,
    request: Optional[ReprocessRequest] = Body(None),
    services=Depends(get_services),
):
    """Send a video back through transcoding."""
    expected_version = request.expected_version if request else None
    return await services.uploads.reprocess(video_id, expected_version=expected_version)


@router.post("/{video_id}/qualities/{quality}", response_model=RegenerateQualityResponse, status_code=202)
async def regenerate_quality(video_id: str, quality: VideoQuality, services=Depends(get_services)):
    """Re-encode one rung of a ready video and merge it into its manifest."""
    return await services.uploads.regenerate_quality(video_id, quality)


@router.get("/{video_id}/playback-url", response_model=SignedUrlResponse)
async def get_playback_url(video_id: str, services=Depends(get_services)):
    """Short-lived signed URL for the master playlist."""
    return await services.uploads.get_playback_url(video_id)


@router.get("/{video_id}/download-url", response_model=SignedUrlResponse)
async def get_download_url(video_id: str, services=Depends(get_services)):
    return await services.uploads.get_download_url(video_id)


@router.get("/{video_id}", response_model=VideoAsset)
async def get_video(video_id: str, services=Depends(get_services)):
    return await services.uploads.get_video(video_id)


@router.get("", response_model=VideoListResponse)
async def list_videos(
    category: Optional[ContentCategory] = None,
    status: Optional[VideoStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    services=Depends(get_services),
):
    """List videos, newest first."""
    items, total = await services.uploads.list_videos(
        category=category, status=status, page=page, limit=limit
    )
    return VideoListResponse(items=items, total=total, page=page, limit=limit)
