"""
Duration probe - ask ffprobe for the total length of a source file.
"""

import asyncio
import json
import logging
import math
from pathlib import Path
from typing import Any

from api.errors import ProbeError
from config import FFPROBE_PATH

logger = logging.getLogger(__name__)

# Maximum video duration allowed (1 week in seconds)
MAX_DURATION_SECONDS = 7 * 24 * 60 * 60


def validate_duration(duration: Any) -> float:
    """
    Validate and normalize video duration from ffprobe.

    Args:
        duration: Duration value from ffprobe (accepts any input type)

    Returns:
        Validated duration as float

    Raises:
        ValueError: If duration is invalid, missing, or out of acceptable range
    """
    if duration is None:
        raise ValueError("Could not determine video duration")

    if not isinstance(duration, (int, float)):
        try:
            duration = float(duration)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Could not convert duration to float: {type(duration).__name__}") from e

    if math.isnan(duration) or math.isinf(duration):
        raise ValueError(f"Invalid duration value: {duration}")

    if duration <= 0:
        raise ValueError(f"Invalid duration: {duration} seconds (must be positive)")

    if duration > MAX_DURATION_SECONDS:
        raise ValueError(f"Duration too long: {duration} seconds (max {MAX_DURATION_SECONDS})")

    return float(duration)


def build_probe_command(input_path: Path) -> list:
    return [
        FFPROBE_PATH,
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        str(input_path),
    ]


async def get_video_duration(input_path: Path) -> float:
    """Get total duration in seconds using ffprobe.

    The call blocks only this coroutine; ffprobe runs as a child process so
    the event loop keeps serving requests. No timeout is applied.

    Args:
        input_path: Path to the video file

    Returns:
        Duration in (fractional) seconds

    Raises:
        ProbeError: If the file is missing or unreadable, ffprobe fails, or
            no usable duration is reported (corrupt container, zero-length media)
    """
    input_path = Path(input_path)
    logger.info(f"Getting duration for video: {input_path}")

    if not input_path.is_file():
        raise ProbeError(f"Video file does not exist: {input_path}")

    try:
        process = await asyncio.create_subprocess_exec(
            *build_probe_command(input_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ProbeError(f"Could not start ffprobe: {e}") from e

    stdout, stderr = await process.communicate()

    if process.returncode != 0:
        detail = stderr.decode("utf-8", errors="ignore").strip()
        raise ProbeError(f"ffprobe failed (exit {process.returncode}): {detail}")

    try:
        data = json.loads(stdout.decode("utf-8", errors="ignore") or "{}")
    except json.JSONDecodeError as e:
        raise ProbeError(f"ffprobe returned invalid JSON: {e}") from e

    raw_duration = (data.get("format") or {}).get("duration")
    try:
        duration = validate_duration(raw_duration)
    except ValueError as e:
        raise ProbeError(str(e)) from e

    logger.info(f"Video duration: {duration} seconds")
    return duration
