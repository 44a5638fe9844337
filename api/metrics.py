"""
Prometheus metrics for the segmentation service.

Metrics are exposed at the /metrics endpoint in Prometheus text format.
"""

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest

APP_INFO = Info("vseg", "Video segmentation service information")

# =============================================================================
# Upload Metrics
# =============================================================================

VIDEO_UPLOADS_TOTAL = Counter(
    "vseg_video_uploads_total",
    "Total video uploads",
    ["result"],  # accepted, rejected
)

VIDEOS_REGISTERED = Gauge(
    "vseg_videos_registered",
    "Number of videos currently held in the registry",
)

# =============================================================================
# Segmentation Metrics
# =============================================================================

SEGMENTATION_JOBS_TOTAL = Counter(
    "vseg_segmentation_jobs_total",
    "Total segmentation jobs",
    ["status"],  # started, completed, failed
)

SEGMENTATION_JOBS_ACTIVE = Gauge(
    "vseg_segmentation_jobs_active",
    "Number of segmentation jobs currently running",
)

SEGMENTATION_JOB_DURATION_SECONDS = Histogram(
    "vseg_segmentation_job_duration_seconds",
    "Wall-clock duration of a whole segmentation job",
    buckets=[5, 15, 30, 60, 120, 300, 600, 1200, 3600],
)

SEGMENTS_TOTAL = Counter(
    "vseg_segments_total",
    "Segment encode attempts by outcome",
    ["result"],  # completed, failed, missing_output
)

SEGMENT_ENCODE_DURATION_SECONDS = Histogram(
    "vseg_segment_encode_duration_seconds",
    "Duration of a single segment encode",
    buckets=[0.5, 1, 2.5, 5, 10, 20, 40, 80],
)

# =============================================================================
# Streaming Metrics
# =============================================================================

STREAM_REQUESTS_TOTAL = Counter(
    "vseg_stream_requests_total",
    "Streaming requests by kind and response type",
    ["kind", "response"],  # kind: video, segment. response: full, partial, 416
)

STREAM_BYTES_TOTAL = Counter(
    "vseg_stream_bytes_total",
    "Bytes streamed to clients",
    ["kind"],
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "vseg"})
