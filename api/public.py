"""
Public API - upload, segmentation control, metadata and range streaming.
Runs on port 5000.
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from sse_starlette.sse import EventSourceResponse

from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_storage,
    get_real_ip,
    rate_limit_exceeded_handler,
)
from api.enums import ProcessingState
from api.errors import ConflictError, NotFoundError, UploadValidationError
from api.metrics import VIDEO_UPLOADS_TOTAL, VIDEOS_REGISTERED, get_metrics, init_app_info
from api.pubsub import get_broker
from api.registry import get_registry
from api.schemas import (
    DeleteResponse,
    ProcessResponse,
    SegmentListResponse,
    SegmentResponse,
    UploadResponse,
    VideoListResponse,
    VideoResponse,
)
from api.streaming import RangeNotSatisfiableError, build_stream_response
from config import (
    ALLOWED_UPLOAD_MIME_PREFIX,
    CORS_ALLOWED_ORIGINS,
    HOST,
    LOG_LEVEL,
    MAX_UPLOAD_SIZE,
    ORIGINALS_DIR,
    PORT,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_PROCESS,
    RATE_LIMIT_STORAGE_URL,
    RATE_LIMIT_UPLOAD,
    SEGMENT_FILE_EXTENSION,
    SSE_HEARTBEAT_INTERVAL,
    SSE_RECONNECT_TIMEOUT_MS,
    STREAM_MEDIA_TYPE,
    UPLOAD_CHUNK_SIZE,
)
from worker.orchestrator import get_orchestrator

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

# Initialize rate limiter
# Uses in-memory storage by default, can be configured to use Redis
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For deployments with multiple instances, configure Redis: "
            "VSEG_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    init_app_info(APP_VERSION)
    yield
    await get_orchestrator().shutdown()


app = FastAPI(title="vseg", description="Video segmentation and streaming service", lifespan=lifespan)

# Register rate limiter with the app
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": exc.message})


@app.exception_handler(UploadValidationError)
async def upload_validation_handler(request: Request, exc: UploadValidationError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RangeNotSatisfiableError)
async def range_not_satisfiable_handler(request: Request, exc: RangeNotSatisfiableError):
    return Response(status_code=416, headers={"Content-Range": f"bytes */{exc.size}", "Accept-Ranges": "bytes"})


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)

# Players on the dev UI origins need the range headers exposed to read them
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS if CORS_ALLOWED_ORIGINS else [],
    allow_credentials=bool(CORS_ALLOWED_ORIGINS),
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Range"],
    expose_headers=["Content-Length", "Content-Range", "Accept-Ranges", "X-Request-ID"],
)


# ============================================================================
# Health and metrics
# ============================================================================


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns 503 if the storage directories are not writable.
    """
    storage_ok = await check_storage()
    registry = get_registry()
    return JSONResponse(
        status_code=200 if storage_ok else 503,
        content={
            "status": "healthy" if storage_ok else "unhealthy",
            "checks": {"storage": storage_ok},
            "videos": registry.count_by_state(),
            "active_jobs": get_orchestrator().active_jobs,
        },
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics in text exposition format."""
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


# ============================================================================
# Upload
# ============================================================================


async def save_upload_with_size_limit(file: UploadFile, upload_path: Path, max_size: int = MAX_UPLOAD_SIZE) -> int:
    """
    Stream upload to disk with size validation.
    Returns the total bytes written.
    Raises UploadValidationError if the file exceeds max_size.
    """
    total_size = 0
    try:
        with open(upload_path, "wb") as f:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > max_size:
                    # Clean up partial file
                    f.close()
                    upload_path.unlink(missing_ok=True)
                    max_size_mb = max_size / (1024 * 1024)
                    raise UploadValidationError(
                        f"File too large. Maximum upload size is {max_size_mb:.0f} MB", status_code=413
                    )
                f.write(chunk)
    except UploadValidationError:
        raise
    except OSError as e:
        upload_path.unlink(missing_ok=True)
        logger.warning(f"Storage error during upload to {upload_path}: {e}")
        raise HTTPException(
            status_code=503,
            detail="Video storage temporarily unavailable. Please try again later.",
            headers={"Retry-After": "30"},
        )

    return total_size


@app.post("/api/videos/upload", response_model=UploadResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
async def upload_video(request: Request, video: Optional[UploadFile] = File(None)):
    """Accept a video file and register it. Processing is started separately."""
    if video is None:
        VIDEO_UPLOADS_TOTAL.labels(result="rejected").inc()
        raise UploadValidationError("No video file uploaded")

    content_type = video.content_type or ""
    if not content_type.startswith(ALLOWED_UPLOAD_MIME_PREFIX):
        VIDEO_UPLOADS_TOTAL.labels(result="rejected").inc()
        raise UploadValidationError("Only video files are allowed")

    video_id = str(uuid.uuid4())
    file_ext = Path(video.filename).suffix.lower() if video.filename else ""
    upload_path = ORIGINALS_DIR / f"{video_id}{file_ext or SEGMENT_FILE_EXTENSION}"
    ORIGINALS_DIR.mkdir(parents=True, exist_ok=True)

    try:
        size = await save_upload_with_size_limit(video, upload_path, MAX_UPLOAD_SIZE)
    except UploadValidationError:
        VIDEO_UPLOADS_TOTAL.labels(result="rejected").inc()
        raise

    if size == 0:
        upload_path.unlink(missing_ok=True)
        VIDEO_UPLOADS_TOTAL.labels(result="rejected").inc()
        raise UploadValidationError("Uploaded file is empty")

    registry = get_registry()
    registry.create(video.filename or upload_path.name, upload_path, size, video_id=video_id)
    VIDEO_UPLOADS_TOTAL.labels(result="accepted").inc()
    VIDEOS_REGISTERED.set(len(registry))
    logger.info(f"Upload received: {video.filename} -> {upload_path.name} ({size} bytes)")

    return UploadResponse(video_id=video_id, message="Video uploaded successfully")


# ============================================================================
# Videos
# ============================================================================


@app.get("/api/videos", response_model=VideoListResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_videos(request: Request):
    orchestrator = get_orchestrator()
    videos = [VideoResponse.from_record(r, orchestrator.get_progress(r.id)) for r in get_registry().list_all()]
    return VideoListResponse(videos=videos, total=len(videos))


@app.get("/api/videos/{video_id}", response_model=VideoResponse)
async def get_video(video_id: str):
    record = get_registry().get(video_id)
    return VideoResponse.from_record(record, get_orchestrator().get_progress(video_id))


@app.get("/api/videos/{video_id}/segments", response_model=SegmentListResponse)
async def get_video_segments(video_id: str):
    record = get_registry().get(video_id)
    if record.processing_state != ProcessingState.COMPLETED:
        raise HTTPException(status_code=400, detail="Video has not been processed yet")
    return SegmentListResponse(
        video_id=video_id,
        segments=[SegmentResponse.from_record(s) for s in record.segments],
    )


@app.post("/api/videos/{video_id}/process", response_model=ProcessResponse)
@limiter.limit(RATE_LIMIT_PROCESS)
async def process_video(request: Request, video_id: str):
    """
    Start segmentation. Returns immediately; watch /api/events for progress.

    Already-processed videos are not re-processed.
    """
    result = await get_orchestrator().start(video_id)
    if result.started:
        return ProcessResponse(message="Video processing started", video_id=video_id)
    return ProcessResponse(
        message="Video already processed",
        video_id=video_id,
        segments=[SegmentResponse.from_record(s) for s in result.segments],
    )


@app.delete("/api/videos/{video_id}", response_model=DeleteResponse)
async def delete_video(video_id: str):
    await get_orchestrator().delete(video_id)
    return DeleteResponse(message="Video deleted", video_id=video_id)


# ============================================================================
# Events
# ============================================================================


@app.get("/api/events")
async def sse_events(request: Request, video_id: Optional[str] = Query(None)):
    """
    Server-Sent Events stream of progress, completed and failed events.

    Pass video_id to receive events for one video only.
    """
    broker = get_broker()
    subscriber = broker.subscribe([video_id] if video_id else None)

    async def event_generator():
        # Send retry interval for client reconnection
        yield {"event": "retry", "data": str(SSE_RECONNECT_TIMEOUT_MS)}
        try:
            while not await request.is_disconnected():
                message = await subscriber.get(timeout=SSE_HEARTBEAT_INTERVAL)
                if message is None:
                    yield {
                        "event": "heartbeat",
                        "data": json.dumps({"timestamp": datetime.now(timezone.utc).isoformat()}),
                    }
                    continue
                yield {"event": message.get("type", "update"), "data": json.dumps(message)}
        except asyncio.CancelledError:
            logger.debug("SSE client disconnected")
            raise
        finally:
            broker.unsubscribe(subscriber)

    return EventSourceResponse(event_generator())


# ============================================================================
# Streaming and download
# ============================================================================


@app.get("/stream/video/{video_id}")
async def stream_video(request: Request, video_id: str):
    path = get_registry().resolve_video_path(video_id)
    return build_stream_response(path, request.headers.get("range"), kind="video")


@app.get("/stream/segment/{segment_id}")
async def stream_segment(request: Request, segment_id: str):
    path = get_registry().resolve_segment_path(segment_id)
    return build_stream_response(path, request.headers.get("range"), kind="segment")


@app.get("/download/segment/{segment_id}")
async def download_segment(segment_id: str):
    registry = get_registry()
    _, segment = registry.find_segment(segment_id)
    path = registry.resolve_segment_path(segment_id)
    return FileResponse(
        path,
        media_type=STREAM_MEDIA_TYPE,
        filename=f"segment_{segment.index}{SEGMENT_FILE_EXTENSION}",
    )


def run() -> None:
    """Run the server with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    run()
