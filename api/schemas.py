from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator

from api.enums import ProcessingState
from api.errors import sanitize_error_message
from api.registry import SegmentRecord, VideoRecord


def segment_stream_url(segment_id: str) -> str:
    return f"/stream/segment/{segment_id}"


def segment_download_url(segment_id: str) -> str:
    return f"/download/segment/{segment_id}"


def video_stream_url(video_id: str) -> str:
    return f"/stream/video/{video_id}"


class SegmentResponse(BaseModel):
    id: str
    index: int
    start_time: float
    duration: float
    url: str
    download_url: str

    @classmethod
    def from_record(cls, segment: SegmentRecord) -> "SegmentResponse":
        return cls(
            id=segment.id,
            index=segment.index,
            start_time=segment.start_time,
            duration=segment.duration,
            url=segment_stream_url(segment.id),
            download_url=segment_download_url(segment.id),
        )


class VideoResponse(BaseModel):
    id: str
    original_name: str
    size: int
    url: str
    created_at: datetime
    processing_state: ProcessingState
    is_processed: bool
    segments: List[SegmentResponse] = []
    last_error: Optional[str] = None
    progress: Optional[int] = None  # overall percent while a job is running

    @field_validator("last_error", mode="before")
    @classmethod
    def sanitize_last_error(cls, v):
        return sanitize_error_message(v, log_original=False)

    @classmethod
    def from_record(cls, record: VideoRecord, progress: Optional[int] = None) -> "VideoResponse":
        return cls(
            id=record.id,
            original_name=record.original_name,
            size=record.size,
            url=video_stream_url(record.id),
            created_at=record.created_at,
            processing_state=record.processing_state,
            is_processed=record.is_processed,
            segments=[SegmentResponse.from_record(s) for s in record.segments],
            last_error=record.last_error,
            progress=progress,
        )


class VideoListResponse(BaseModel):
    videos: List[VideoResponse]
    total: int


class SegmentListResponse(BaseModel):
    video_id: str
    segments: List[SegmentResponse]


class UploadResponse(BaseModel):
    video_id: str
    message: str


class ProcessResponse(BaseModel):
    message: str
    video_id: str
    segments: List[SegmentResponse] = []


class DeleteResponse(BaseModel):
    message: str
    video_id: str


def segment_to_dict(segment: SegmentRecord) -> Dict[str, Any]:
    """JSON-ready dict for one segment, as carried in completion events."""
    return SegmentResponse.from_record(segment).model_dump(mode="json")
