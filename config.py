import logging
import math
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def get_int_env(
    name: str,
    default: int,
    min_val: Optional[int] = None,
    max_val: Optional[int] = None,
) -> int:
    """Get an integer from environment variable with error handling and validation.

    Args:
        name: Environment variable name
        default: Default value if env var is missing or invalid
        min_val: Optional minimum value (inclusive)
        max_val: Optional maximum value (inclusive)

    Returns:
        Parsed integer value, or default if parsing fails or value is out of range
    """
    value = os.getenv(name)
    if value is None:
        return default

    try:
        result = int(value)
    except ValueError:
        logger.warning(f"Invalid {name}='{value}', using default {default}")
        return default

    if min_val is not None and result < min_val:
        logger.warning(f"{name}={result} is below minimum {min_val}, using default {default}")
        return default
    if max_val is not None and result > max_val:
        logger.warning(f"{name}={result} is above maximum {max_val}, using default {default}")
        return default

    return result


def get_float_env(
    name: str,
    default: float,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
) -> float:
    """Get a float from environment variable with error handling and validation.

    Special values (inf, nan) are rejected the same way as unparseable input.
    """
    value = os.getenv(name)
    if value is None:
        return default

    try:
        result = float(value)
    except ValueError:
        logger.warning(f"Invalid {name}='{value}', using default {default}")
        return default

    if math.isinf(result) or math.isnan(result):
        logger.warning(f"Invalid {name}='{value}' (special float), using default {default}")
        return default

    if min_val is not None and result < min_val:
        logger.warning(f"{name}={result} is below minimum {min_val}, using default {default}")
        return default
    if max_val is not None and result > max_val:
        logger.warning(f"{name}={result} is above maximum {max_val}, using default {default}")
        return default

    return result


def get_list_env(name: str, default: str = "") -> list:
    """Parse a comma-separated environment variable into a list of stripped items."""
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# Paths - configurable via environment variables
BASE_DIR = Path(__file__).parent
STORAGE_ROOT = Path(os.getenv("VSEG_STORAGE_PATH", str(BASE_DIR / "uploads")))
# Original uploads live flat in this directory as <video_id><ext>
ORIGINALS_DIR = STORAGE_ROOT / os.getenv("VSEG_ORIGINALS_SUBDIR", "temp")
# One subdirectory per video id holds that video's segment files
SEGMENTS_DIR = STORAGE_ROOT / os.getenv("VSEG_SEGMENTS_SUBDIR", "segments")

# Ensure directories exist (skip in test/CI environments)
if not os.environ.get("VSEG_TEST_MODE"):
    try:
        ORIGINALS_DIR.mkdir(parents=True, exist_ok=True)
        SEGMENTS_DIR.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        pass  # read-only checkout, directories are created by the deployment

# Server
PORT = get_int_env("VSEG_PORT", 5000, min_val=1, max_val=65535)
HOST = os.getenv("VSEG_HOST", "0.0.0.0")

# Segmentation - fixed by design, not configurable
SEGMENT_DURATION = 15
MAX_SEGMENT_ERRORS = 3
SEGMENT_FILE_EXTENSION = ".mp4"

# Media type declared for every streamed source and segment
STREAM_MEDIA_TYPE = "video/mp4"

# External engines
FFMPEG_PATH = os.getenv("VSEG_FFMPEG_PATH", "ffmpeg")
FFPROBE_PATH = os.getenv("VSEG_FFPROBE_PATH", "ffprobe")
AUDIO_BITRATE = os.getenv("VSEG_AUDIO_BITRATE", "128k")

# Upload limits (default 500 MB)
MAX_UPLOAD_SIZE = get_int_env("VSEG_MAX_UPLOAD_SIZE", 500 * 1024 * 1024, min_val=1)
UPLOAD_CHUNK_SIZE = get_int_env("VSEG_UPLOAD_CHUNK_SIZE", 1024 * 1024, min_val=1024)  # 1 MB chunks
ALLOWED_UPLOAD_MIME_PREFIX = "video/"

# Streaming chunk size for range responses
STREAM_CHUNK_SIZE = get_int_env("VSEG_STREAM_CHUNK_SIZE", 256 * 1024, min_val=1024)

# CORS Configuration
# Defaults to the two local dev UI origins
CORS_ALLOWED_ORIGINS = get_list_env("VSEG_CORS_ORIGINS", "http://localhost:5173,http://localhost:5174")

# Rate Limiting Configuration
# Set to "0" or "false" to disable rate limiting entirely
RATE_LIMIT_ENABLED = os.getenv("VSEG_RATE_LIMIT_ENABLED", "true").lower() not in ("false", "0", "no")
RATE_LIMIT_DEFAULT = os.getenv("VSEG_RATE_LIMIT_DEFAULT", "300/minute")
RATE_LIMIT_UPLOAD = os.getenv("VSEG_RATE_LIMIT_UPLOAD", "20/hour")
RATE_LIMIT_PROCESS = os.getenv("VSEG_RATE_LIMIT_PROCESS", "60/minute")
RATE_LIMIT_STORAGE_URL = os.getenv("VSEG_RATE_LIMIT_STORAGE_URL", "memory://")

# SSE (Server-Sent Events) Settings
SSE_HEARTBEAT_INTERVAL = get_int_env("VSEG_SSE_HEARTBEAT_INTERVAL", 15, min_val=1)
SSE_RECONNECT_TIMEOUT_MS = get_int_env("VSEG_SSE_RECONNECT_TIMEOUT_MS", 3000, min_val=100)
# Per-subscriber buffer; a subscriber that falls this far behind loses the oldest events
EVENT_QUEUE_SIZE = get_int_env("VSEG_EVENT_QUEUE_SIZE", 1000, min_val=10)

# Error Message Truncation Limits
ERROR_SUMMARY_MAX_LENGTH = get_int_env("VSEG_ERROR_SUMMARY_MAX_LENGTH", 100, min_val=10)
ERROR_DETAIL_MAX_LENGTH = get_int_env("VSEG_ERROR_DETAIL_MAX_LENGTH", 500, min_val=10)

# Logging
LOG_LEVEL = os.getenv("VSEG_LOG_LEVEL", "INFO").upper()

# Progress event rate limiting (seconds between intra-segment updates)
PROGRESS_UPDATE_INTERVAL = get_float_env("VSEG_PROGRESS_UPDATE_INTERVAL", 0.25, min_val=0.0)
