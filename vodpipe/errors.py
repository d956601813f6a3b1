"""
Error taxonomy for the VodPipe pipeline.

Every error carries the HTTP status the API layer answers with, so callers
never pick status codes at the raise site.
"""

from typing import Optional


class VodPipeError(Exception):
    """Base class for all pipeline errors."""

    http_status: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(VodPipeError):
    """Malformed initiate/complete request: missing fields, bad sizes, bad parts."""

    http_status = 422


class NotFoundError(VodPipeError):
    """Unknown video id or stale upload id."""

    http_status = 404


class InvalidStateTransition(VodPipeError):
    """Requested operation is not valid for the video's current status."""

    http_status = 409

    def __init__(self, current: str, target: str, reason: Optional[str] = None):
        message = f"Cannot move video from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.target = target


class NotReadyError(VodPipeError):
    """Operation needs a READY video with a published manifest."""

    http_status = 409


class ConcurrencyConflict(VodPipeError):
    """Optimistic version check failed; another writer got there first."""

    http_status = 409


class ExternalStorageError(VodPipeError):
    """Object store call failed."""

    http_status = 502


class TranscodeError(VodPipeError):
    """FFmpeg/ffprobe failed, exited non-zero, or produced no usable output."""

    http_status = 500

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class PersistenceError(VodPipeError):
    """Video store write failed."""

    http_status = 500
