"""
Error types and utilities for sanitizing error messages.

The exception classes form the failure taxonomy of the segmentation pipeline
and the streaming layer. The helpers keep internal details (paths, ffmpeg
output) out of API responses and failure events while the full text still
goes to the log.
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)


class VsegError(Exception):
    """Base class for all application errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ProbeError(VsegError):
    """Duration of a source file could not be determined."""


class SegmentationError(VsegError):
    """Too many segments failed; the whole job is aborted."""


class NotFoundError(VsegError):
    """Unknown video or segment id, or the referenced file is gone."""


class ConflictError(VsegError):
    """Operation not allowed in the video's current processing state."""


class UploadValidationError(VsegError):
    """Upload rejected before a video record is created."""

    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class SegmentFailure:
    """A recovered per-segment failure. The index is left out of the result."""

    index: int
    reason: str


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r'/home/\w+/',
    r'/mnt/\w+/',
    r'/tmp/\w+',
    r'/var/\w+/',
    r'line \d+',
    r'File "[^"]+\.py"',
    r'ffmpeg:.*\.mp4',
    r'ffprobe:.*\.mp4',
    r'Permission denied',
    r'No such file or directory',
]

# Generic user-friendly messages for common error types
ERROR_MESSAGES = {
    "ffprobe": "Could not read video file. The file may be corrupted or in an unsupported format.",
    "duration": "Could not determine video duration. The file may be corrupted.",
    "source_not_found": "Source file not found. Please re-upload the video.",
    "segmentation": "Too many segments failed to process. Please try again.",
    "transcode_failed": "Video segmentation failed. Please try uploading again.",
    "permission": "A file access error occurred. Please contact support.",
    "general": "An error occurred while processing your request. Please try again.",
}


def truncate_error(error: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """Clamp an error message to max_length characters, marking the cut with '...'."""
    if error is None:
        return None
    if len(error) <= max_length:
        return error
    if max_length <= 3:
        return error[:max_length]
    return error[: max_length - 3] + "..."


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = "",
) -> Optional[str]:
    """
    Sanitize an error message for safe display to API clients.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "video_id=abc")

    Returns:
        A sanitized, user-friendly error message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.debug(log_msg)

    error_lower = error.lower()

    # Pipeline errors carry their own wording; keep it when it is path-free
    if "too many segment" in error_lower:
        return ERROR_MESSAGES["segmentation"]

    if "ffprobe" in error_lower:
        return ERROR_MESSAGES["ffprobe"]

    if "duration" in error_lower:
        return ERROR_MESSAGES["duration"]

    if "does not exist" in error_lower or "not found" in error_lower:
        return ERROR_MESSAGES["source_not_found"]

    if "ffmpeg" in error_lower:
        return ERROR_MESSAGES["transcode_failed"]

    if "permission" in error_lower:
        return ERROR_MESSAGES["permission"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]
