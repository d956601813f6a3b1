"""
Object storage for VodPipe - S3 multipart uploads, signed part URLs and
HLS output publishing.

Upload flow:
  1. Server creates a multipart upload and hands the client an upload id.
  2. Client asks for one signed URL per part and PUTs parts directly to S3.
  3. Client reports part ETags; server completes the multipart upload.
  4. Worker downloads the original, transcodes, and publishes HLS output
     under the category folder.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import StorageConfig
from .errors import ExternalStorageError
from .models import ContentCategory, UploadPart

logger = logging.getLogger(__name__)

# Signed URLs of any kind never outlive an hour
MAX_SIGNED_URL_TTL = 3600

CONTENT_TYPES: Dict[str, str] = {
    ".mov": "video/quicktime",
    ".mp4": "video/mp4",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
    ".m3u8": "application/x-mpegURL",
    ".ts": "video/MP2T",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}

_DOWNLOAD_CHUNK = 1024 * 1024


def content_type_for(name: str) -> str:
    return CONTENT_TYPES.get(Path(name).suffix.lower(), "application/octet-stream")


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class StorageLayout:
    """Key layout for originals, thumbnails and HLS renditions."""

    def __init__(self, config: StorageConfig):
        self.config = config

    def folder(self, category: ContentCategory) -> str:
        return self.config.folder_for(category)

    def source_key(self, category: ContentCategory, file_name: str, now: Optional[datetime] = None) -> str:
        ts = int((now or datetime.now(timezone.utc)).timestamp() * 1000)
        sanitized = re.sub(r"[^a-zA-Z0-9.-]", "_", file_name)
        slug = category.value.replace("_", "-")
        return f"{self.config.uploads_prefix}/{slug}/{ts}_{sanitized}"

    def thumbnail_key(self, category: ContentCategory, video_id: str) -> str:
        return f"{self.folder(category)}/thumbnails/{category.value}/{video_id}_thumbnail.jpg"

    def variant_prefix(self, category: ContentCategory, video_id: str, quality: str) -> str:
        return f"{self.folder(category)}/{video_id}/{quality}"

    def variant_playlist_key(self, category: ContentCategory, video_id: str, quality: str) -> str:
        return f"{self.variant_prefix(category, video_id, quality)}/index.m3u8"

    def master_playlist_key(self, category: ContentCategory, video_id: str) -> str:
        return f"{self.folder(category)}/{video_id}/master.m3u8"


class ObjectStore(ABC):
    """What the pipeline needs from an object store."""

    bucket: str

    @abstractmethod
    async def create_multipart_upload(self, key: str, content_type: str,
                                      metadata: Optional[Dict[str, str]] = None) -> str:
        ...

    @abstractmethod
    async def sign_part_upload_url(self, key: str, upload_id: str, part_number: int, ttl: int) -> str:
        ...

    @abstractmethod
    async def sign_download_url(self, key: str, ttl: int) -> str:
        """Presigned GET for one object."""

    @abstractmethod
    async def complete_multipart_upload(self, key: str, upload_id: str, parts: List[UploadPart]) -> None:
        ...

    @abstractmethod
    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """Abort an upload; an upload that no longer exists is not an error."""

    @abstractmethod
    async def put_object(self, key: str, body: bytes, content_type: str) -> None:
        ...

    @abstractmethod
    async def upload_file(self, path: Path, key: str) -> None:
        ...

    @abstractmethod
    async def download_file(self, key: str, path: Path) -> None:
        ...

    @abstractmethod
    async def head_object(self, key: str) -> Optional[Dict[str, Any]]:
        """Return object metadata, or None if the key does not exist."""


class S3ObjectStore(ObjectStore):
    """aioboto3-backed object store. One short-lived client per call."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self.bucket = config.bucket
        self._session = aioboto3.Session(
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name=config.region,
        )

    def _client(self):
        return self._session.client("s3", endpoint_url=self.config.endpoint_url)

    async def create_multipart_upload(self, key: str, content_type: str,
                                      metadata: Optional[Dict[str, str]] = None) -> str:
        try:
            async with self._client() as s3:
                response = await s3.create_multipart_upload(
                    Bucket=self.bucket,
                    Key=key,
                    ContentType=content_type,
                    Metadata=metadata or {},
                )
        except (BotoCoreError, ClientError) as exc:
            raise ExternalStorageError(f"Failed to initiate multipart upload for {key}: {exc}") from exc
        upload_id = response["UploadId"]
        logger.info(f"[Storage] Initiated multipart upload for {key}, upload_id={upload_id}")
        return upload_id

    async def sign_part_upload_url(self, key: str, upload_id: str, part_number: int, ttl: int) -> str:
        try:
            async with self._client() as s3:
                url: str = await s3.generate_presigned_url(
                    "upload_part",
                    Params={
                        "Bucket": self.bucket,
                        "Key": key,
                        "UploadId": upload_id,
                        "PartNumber": part_number,
                    },
                    ExpiresIn=min(ttl, MAX_SIGNED_URL_TTL),
                )
        except (BotoCoreError, ClientError) as exc:
            raise ExternalStorageError(f"Failed to sign part {part_number} for {key}: {exc}") from exc
        return url

    async def sign_download_url(self, key: str, ttl: int) -> str:
        try:
            async with self._client() as s3:
                url: str = await s3.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": self.bucket, "Key": key},
                    ExpiresIn=min(ttl, MAX_SIGNED_URL_TTL),
                )
        except (BotoCoreError, ClientError) as exc:
            raise ExternalStorageError(f"Failed to sign download of {key}: {exc}") from exc
        return url

    async def complete_multipart_upload(self, key: str, upload_id: str, parts: List[UploadPart]) -> None:
        ordered = sorted(parts, key=lambda p: p.part_number)
        try:
            async with self._client() as s3:
                await s3.complete_multipart_upload(
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    MultipartUpload={
                        "Parts": [{"PartNumber": p.part_number, "ETag": p.etag} for p in ordered],
                    },
                )
        except (BotoCoreError, ClientError) as exc:
            raise ExternalStorageError(f"Failed to complete multipart upload for {key}: {exc}") from exc
        logger.info(f"[Storage] Completed multipart upload for {key} ({len(ordered)} parts)")

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        try:
            async with self._client() as s3:
                await s3.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
        except ClientError as exc:
            if _error_code(exc) in ("NoSuchUpload", "404"):
                logger.info(f"[Storage] Multipart upload {upload_id} for {key} already gone")
                return
            raise ExternalStorageError(f"Failed to abort multipart upload for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise ExternalStorageError(f"Failed to abort multipart upload for {key}: {exc}") from exc
        logger.info(f"[Storage] Aborted multipart upload for {key}")

    async def put_object(self, key: str, body: bytes, content_type: str) -> None:
        try:
            async with self._client() as s3:
                await s3.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            raise ExternalStorageError(f"Failed to upload {key}: {exc}") from exc

    async def upload_file(self, path: Path, key: str) -> None:
        try:
            async with self._client() as s3:
                await s3.upload_file(
                    str(path), self.bucket, key,
                    ExtraArgs={"ContentType": content_type_for(path.name)},
                )
        except (BotoCoreError, ClientError) as exc:
            raise ExternalStorageError(f"Failed to upload {path.name} to {key}: {exc}") from exc
        logger.debug(f"[Storage] Uploaded {path} -> {key}")

    async def download_file(self, key: str, path: Path) -> None:
        try:
            async with self._client() as s3:
                response = await s3.get_object(Bucket=self.bucket, Key=key)
                async with response["Body"] as stream:
                    with open(path, "wb") as f:
                        while True:
                            chunk = await stream.read(_DOWNLOAD_CHUNK)
                            if not chunk:
                                break
                            f.write(chunk)
        except (BotoCoreError, ClientError) as exc:
            raise ExternalStorageError(f"Failed to download {key}: {exc}") from exc
        logger.info(f"[Storage] Downloaded {key} to {path}")

    async def head_object(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            async with self._client() as s3:
                response = await s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in ("404", "NoSuchKey", "NotFound"):
                return None
            raise ExternalStorageError(f"Failed to stat {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise ExternalStorageError(f"Failed to stat {key}: {exc}") from exc
        return {
            "content_length": int(response["ContentLength"]),
            "content_type": response.get("ContentType", ""),
            "last_modified": response.get("LastModified"),
            "metadata": response.get("Metadata", {}),
        }

