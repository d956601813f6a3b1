"""
FFmpeg error classification for retry decisions.

Determines whether a failed encode should be:
- Retried in place (transient errors)
- Retried later by the job queue (resource errors)
- Failed immediately (fatal errors)
"""

import logging
from dataclasses import dataclass
from typing import List, Tuple, Optional

logger = logging.getLogger(__name__)


@dataclass
class FFmpegError:
    """Represents a classified FFmpeg error."""
    pattern: str
    category: str  # 'transient', 'resource', 'fatal'
    retryable: bool
    description: str


FFMPEG_ERROR_MAP: List[FFmpegError] = [
    # Fatal errors - do not retry. Checked first: a corrupt input often
    # also mentions "end of file".
    FFmpegError("invalid data found", "fatal", False, "Invalid input data"),
    FFmpegError("moov atom not found", "fatal", False, "Invalid MP4 file"),
    FFmpegError("invalid argument", "fatal", False, "Invalid argument"),
    FFmpegError("no such file", "fatal", False, "File not found"),
    FFmpegError("permission denied", "fatal", False, "Permission denied"),
    FFmpegError("codec not found", "fatal", False, "Codec not found"),
    FFmpegError("encoder not found", "fatal", False, "Encoder not found"),
    FFmpegError("decoder not found", "fatal", False, "Decoder not found"),
    FFmpegError("filter not found", "fatal", False, "Filter not found"),
    FFmpegError("does not contain any stream", "fatal", False, "Input has no streams"),

    # Resource errors - may succeed after a delay
    FFmpegError("out of memory", "resource", True, "Out of memory"),
    FFmpegError("cannot allocate", "resource", True, "Memory allocation failed"),
    FFmpegError("too many open files", "resource", True, "File descriptor limit"),
    FFmpegError("no space left", "resource", False, "No disk space"),
    FFmpegError("disk quota", "resource", False, "Disk quota exceeded"),

    # Transient errors - retry with backoff
    FFmpegError("stalled", "transient", True, "FFmpeg stopped making progress"),
    FFmpegError("resource temporarily unavailable", "transient", True, "Resource temporarily unavailable"),
    FFmpegError("connection reset", "transient", True, "Connection reset"),
    FFmpegError("connection timed out", "transient", True, "Connection timeout"),
    FFmpegError("timeout", "transient", True, "Operation timeout"),
    FFmpegError("broken pipe", "transient", True, "Broken pipe"),
    FFmpegError("interrupted system call", "transient", True, "Interrupted system call"),
]


class ErrorClassifier:
    """Classifies FFmpeg errors for retry decisions."""

    def __init__(self, error_map: Optional[List[FFmpegError]] = None):
        self.error_map = error_map or FFMPEG_ERROR_MAP

    def classify(self, error_msg: str) -> Tuple[Optional[FFmpegError], str]:
        """
        Classify FFmpeg error output.

        Returns:
            Tuple of (matched_error, category). Category is 'unknown' if no match.
        """
        error_lower = error_msg.lower()

        for error in self.error_map:
            if error.pattern in error_lower:
                return error, error.category

        return None, "unknown"

    def is_retryable(self, error_msg: str) -> bool:
        """Whether a job that failed with this output is worth queueing again."""
        error, _ = self.classify(error_msg)
        return bool(error and error.retryable)

    def should_retry(self, error_msg: str, attempt: int, max_retries: int) -> bool:
        """
        Determine if an encode should be retried in place.

        Args:
            error_msg: The error output
            attempt: Current attempt number (0-indexed)
            max_retries: Maximum number of retries allowed
        """
        error, category = self.classify(error_msg)

        if category == "fatal":
            return False

        if category == "transient" and error and error.retryable:
            return attempt < max_retries

        # Resource errors are left to the job queue's backoff
        if category == "resource":
            return False

        # Unknown errors get at most one retry
        if category == "unknown":
            return attempt < min(max_retries, 1)

        return False


# Global classifier instance
_classifier: Optional[ErrorClassifier] = None


def get_error_classifier() -> ErrorClassifier:
    """Get or create the global error classifier."""
    global _classifier
    if _classifier is None:
        _classifier = ErrorClassifier()
    return _classifier
