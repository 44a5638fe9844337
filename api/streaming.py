"""
Range-aware file streaming for source videos and segments.

Players seek by asking for byte ranges. A request with a Range header gets
206 Partial Content for exactly the requested bytes; one without gets the
whole file with 200. Either way the body is read in chunks and never held in
memory as a whole.
"""

import logging
import re
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Tuple

import aiofiles
from fastapi.responses import StreamingResponse

from api.errors import NotFoundError
from api.metrics import STREAM_BYTES_TOTAL, STREAM_REQUESTS_TOTAL
from config import STREAM_CHUNK_SIZE, STREAM_MEDIA_TYPE

logger = logging.getLogger(__name__)

_RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")


class RangeNotSatisfiableError(Exception):
    """The Range header cannot be served for a file of this size."""

    def __init__(self, size: int, header: str):
        self.size = size
        self.header = header
        super().__init__(f"Range not satisfiable: {header!r} for {size} bytes")


def parse_range_header(range_header: Optional[str], file_size: int) -> Optional[Tuple[int, int]]:
    """
    Parse a single-range ``Range`` header into inclusive (start, end) offsets.

    Supported forms are ``bytes=start-end``, ``bytes=start-`` and the suffix
    form ``bytes=-n``. end is clamped to the last byte of the file.

    Returns:
        None when no Range header was sent, otherwise (start, end).

    Raises:
        RangeNotSatisfiableError: Malformed header, start past the end of the
            file, or start > end.
    """
    if range_header is None or not range_header.strip():
        return None

    match = _RANGE_PATTERN.match(range_header.strip().replace(" ", ""))
    if not match:
        raise RangeNotSatisfiableError(file_size, range_header)

    start_text, end_text = match.groups()
    if not start_text and not end_text:
        raise RangeNotSatisfiableError(file_size, range_header)

    last_byte = file_size - 1
    if not start_text:
        # Suffix form: the last n bytes
        suffix_length = int(end_text)
        if suffix_length == 0 or file_size == 0:
            raise RangeNotSatisfiableError(file_size, range_header)
        start = max(0, file_size - suffix_length)
        end = last_byte
    else:
        start = int(start_text)
        end = int(end_text) if end_text else last_byte
        end = min(end, last_byte)

    if start > last_byte or start > end:
        raise RangeNotSatisfiableError(file_size, range_header)
    return start, end


async def iter_file_range(
    path: Path,
    start: int,
    end: int,
    chunk_size: int = STREAM_CHUNK_SIZE,
    kind: str = "video",
) -> AsyncIterator[bytes]:
    """Yield bytes start..end (inclusive) of path in chunks of at most chunk_size."""
    remaining = end - start + 1
    async with aiofiles.open(path, "rb") as f:
        await f.seek(start)
        while remaining > 0:
            chunk = await f.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            STREAM_BYTES_TOTAL.labels(kind=kind).inc(len(chunk))
            yield chunk


def build_stream_response(
    path: Path,
    range_header: Optional[str],
    kind: str = "video",
    extra_headers: Optional[Dict[str, str]] = None,
) -> StreamingResponse:
    """
    Build a 200 or 206 streaming response for path.

    Raises:
        RangeNotSatisfiableError: The Range header cannot be served.
        NotFoundError: path vanished between resolution and stat.
    """
    try:
        file_size = path.stat().st_size
    except FileNotFoundError:
        logger.warning(f"File for {kind} disappeared before streaming: {path.name}")
        raise NotFoundError(f"{kind.capitalize()} file not found")
    headers = {"Accept-Ranges": "bytes"}
    if extra_headers:
        headers.update(extra_headers)

    try:
        byte_range = parse_range_header(range_header, file_size)
    except RangeNotSatisfiableError:
        STREAM_REQUESTS_TOTAL.labels(kind=kind, response="416").inc()
        raise

    if byte_range is None:
        STREAM_REQUESTS_TOTAL.labels(kind=kind, response="full").inc()
        headers["Content-Length"] = str(file_size)
        logger.debug(f"Streaming full {kind} {path.name} ({file_size} bytes)")
        return StreamingResponse(
            iter_file_range(path, 0, file_size - 1, kind=kind),
            status_code=200,
            media_type=STREAM_MEDIA_TYPE,
            headers=headers,
        )

    start, end = byte_range
    chunk_length = end - start + 1
    headers["Content-Range"] = f"bytes {start}-{end}/{file_size}"
    headers["Content-Length"] = str(chunk_length)
    STREAM_REQUESTS_TOTAL.labels(kind=kind, response="partial").inc()
    logger.debug(f"Streaming {kind} {path.name} bytes {start}-{end}/{file_size}")
    return StreamingResponse(
        iter_file_range(path, start, end, kind=kind),
        status_code=206,
        media_type=STREAM_MEDIA_TYPE,
        headers=headers,
    )
