"""
Video persistence.

All writes go through `update`, an atomic read-modify-write with an optional
compare-and-set on `VideoAsset.version`. Readers always get copies, so a
mutation only becomes visible once the store commits it.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from .errors import ConcurrencyConflict, NotFoundError, PersistenceError
from .models import ContentCategory, VideoAsset, VideoStatus, utcnow

logger = logging.getLogger(__name__)

Mutator = Callable[[VideoAsset], None]


class VideoStore(ABC):
    """Persistence contract the pipeline relies on."""

    @abstractmethod
    async def create(self, video: VideoAsset) -> VideoAsset:
        ...

    @abstractmethod
    async def get(self, video_id: str) -> Optional[VideoAsset]:
        ...

    @abstractmethod
    async def update(
        self,
        video_id: str,
        mutator: Mutator,
        expected_version: Optional[int] = None,
    ) -> VideoAsset:
        """
        Apply `mutator` to the current record atomically.

        Raises NotFoundError for unknown ids, ConcurrencyConflict when
        `expected_version` no longer matches. Anything the mutator raises
        propagates and nothing is written.
        """

    @abstractmethod
    async def list(
        self,
        category: Optional[ContentCategory] = None,
        status: Optional[VideoStatus] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[VideoAsset], int]:
        ...

    @abstractmethod
    async def delete(self, video_id: str) -> bool:
        ...


class InMemoryVideoStore(VideoStore):
    """Process-local store guarded by a single asyncio lock."""

    def __init__(self):
        self._videos: Dict[str, VideoAsset] = {}
        self._lock = asyncio.Lock()

    async def create(self, video: VideoAsset) -> VideoAsset:
        async with self._lock:
            if video.id in self._videos:
                raise PersistenceError(f"Video {video.id} already exists")
            stored = video.model_copy(deep=True)
            stored.version = 1
            stored.updated_at = utcnow()
            self._videos[stored.id] = stored
            return stored.model_copy(deep=True)

    async def get(self, video_id: str) -> Optional[VideoAsset]:
        async with self._lock:
            video = self._videos.get(video_id)
            return video.model_copy(deep=True) if video else None

    async def update(
        self,
        video_id: str,
        mutator: Mutator,
        expected_version: Optional[int] = None,
    ) -> VideoAsset:
        async with self._lock:
            current = self._videos.get(video_id)
            if current is None:
                raise NotFoundError(f"Video {video_id} not found")
            if expected_version is not None and current.version != expected_version:
                raise ConcurrencyConflict(
                    f"Video {video_id} changed (expected version {expected_version}, "
                    f"found {current.version})"
                )

            working = current.model_copy(deep=True)
            mutator(working)
            working.id = current.id
            working.version = current.version + 1
            working.updated_at = utcnow()
            self._videos[video_id] = working
            return working.model_copy(deep=True)

    async def list(
        self,
        category: Optional[ContentCategory] = None,
        status: Optional[VideoStatus] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[VideoAsset], int]:
        async with self._lock:
            matches = [
                v for v in self._videos.values()
                if (category is None or v.category == category)
                and (status is None or v.status == status)
            ]
        matches.sort(key=lambda v: v.created_at, reverse=True)
        page = [v.model_copy(deep=True) for v in matches[offset:offset + limit]]
        return page, len(matches)

    async def delete(self, video_id: str) -> bool:
        async with self._lock:
            return self._videos.pop(video_id, None) is not None
