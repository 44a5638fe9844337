"""
Common utilities for the HTTP layer: id validation, middleware, health checks.
"""

import asyncio
import logging
import os
import re
import uuid
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from config import ORIGINALS_DIR, SEGMENTS_DIR

logger = logging.getLogger(__name__)

# Video ids are generated as UUIDs; anything else that reaches the filesystem
# layer must still be a single safe path component
_VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")

REQUEST_ID_HEADER = "X-Request-ID"
STORAGE_CHECK_TIMEOUT = 2  # seconds


def validate_video_id(video_id: Optional[str]) -> bool:
    """Return True if video_id is safe to use as a directory or file name component."""
    return bool(video_id) and bool(_VIDEO_ID_PATTERN.match(video_id))


def get_real_ip(request: Request) -> str:
    """Client address used as the rate limiting key."""
    return get_remote_address(request)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach an X-Request-ID to every response, reusing the client's if it sent one."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        # Prevent MIME-type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Permissions policy (disable unnecessary browser features)
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        return response


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle rate limit exceeded errors with a proper JSON response."""
    return JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded",
            "error": str(exc.detail),
        },
    )


def _check_storage_sync() -> bool:
    """
    Synchronous storage check that verifies both existence and writability.

    Runs in a thread pool to avoid blocking the event loop.
    """
    if os.environ.get("VSEG_TEST_MODE"):
        return True

    try:
        if not ORIGINALS_DIR.exists() or not SEGMENTS_DIR.exists():
            return False

        test_file = ORIGINALS_DIR / f".health_check_{uuid.uuid4().hex}"
        test_file.write_text("health check")
        test_file.unlink()
        return True
    except OSError:
        return False


async def check_storage() -> bool:
    """Check storage accessibility with a timeout so a hung mount cannot hang the request."""
    try:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, _check_storage_sync),
            timeout=STORAGE_CHECK_TIMEOUT,
        )
    except asyncio.TimeoutError:
        logger.warning("Storage health check timed out")
        return False
