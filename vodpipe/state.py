"""
Video lifecycle state machine.

    UPLOADING -> UPLOADED -> PROCESSING -> READY -> ARCHIVED
         \           \            \
          +-----------+------------+--> ERROR

READY and ERROR (and an idle UPLOADED) go back to UPLOADED only through an
explicit reprocess.
"""

from typing import Dict, FrozenSet

from .errors import InvalidStateTransition
from .models import VideoStatus


TRANSITIONS: Dict[VideoStatus, FrozenSet[VideoStatus]] = {
    VideoStatus.UPLOADING: frozenset({VideoStatus.UPLOADED, VideoStatus.ERROR}),
    VideoStatus.UPLOADED: frozenset({VideoStatus.PROCESSING, VideoStatus.ERROR}),
    VideoStatus.PROCESSING: frozenset({VideoStatus.READY, VideoStatus.ERROR}),
    VideoStatus.READY: frozenset({VideoStatus.ARCHIVED}),
    VideoStatus.ERROR: frozenset(),
    VideoStatus.ARCHIVED: frozenset(),
}

REPROCESSABLE: FrozenSet[VideoStatus] = frozenset({
    VideoStatus.UPLOADED,
    VideoStatus.READY,
    VideoStatus.ERROR,
})

# Statuses at which a multipart upload counts as already completed
UPLOAD_COMPLETED: FrozenSet[VideoStatus] = frozenset({
    VideoStatus.UPLOADED,
    VideoStatus.PROCESSING,
    VideoStatus.READY,
})


def can_transition(current: VideoStatus, target: VideoStatus, reprocess: bool = False) -> bool:
    if reprocess:
        return current in REPROCESSABLE and target == VideoStatus.UPLOADED
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: VideoStatus, target: VideoStatus, reprocess: bool = False) -> None:
    """Raise InvalidStateTransition unless current -> target is allowed."""
    if not can_transition(current, target, reprocess=reprocess):
        raise InvalidStateTransition(current.value, target.value)
