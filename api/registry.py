"""
Media Registry - the process-wide, in-memory store of uploaded videos.

Lifecycle of an entry:
    - created by the upload layer once a file is fully written (state IDLE)
    - mutated only by the job orchestrator for that video id
    - removed only by an explicit delete request

Nothing is persisted; the registry lives exactly as long as the process.

All access goes through a single re-entrant lock. Readers receive copies of
the stored records, so a streaming request never observes a record halfway
through an update and never shares mutable state with the writer.
"""

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from api.enums import ProcessingState
from api.errors import ConflictError, NotFoundError, truncate_error
from api.job_state import state_machine

logger = logging.getLogger(__name__)


def segment_id_for(video_id: str, index: int) -> str:
    """Segment ids are derived from the parent id and the 1-based index."""
    return f"{video_id}_segment_{index}"


@dataclass
class SegmentRecord:
    """One fixed-duration slice of a video."""

    id: str
    index: int
    start_time: float
    duration: float
    path: Path


@dataclass
class VideoRecord:
    """One uploaded source file and its processing outcome."""

    id: str
    original_name: str
    path: Path
    size: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processing_state: ProcessingState = ProcessingState.IDLE
    segments: List[SegmentRecord] = field(default_factory=list)
    last_error: Optional[str] = None

    @property
    def file_name(self) -> str:
        return self.path.name

    @property
    def is_processed(self) -> bool:
        return self.processing_state == ProcessingState.COMPLETED


class MediaRegistry:
    """Thread-safe mapping from video id to VideoRecord."""

    def __init__(self) -> None:
        self._videos: Dict[str, VideoRecord] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._videos)

    def __contains__(self, video_id: str) -> bool:
        with self._lock:
            return video_id in self._videos

    # =========================================================================
    # Reads
    # =========================================================================

    def find(self, video_id: str) -> Optional[VideoRecord]:
        """Return a snapshot of the record, or None if unknown."""
        with self._lock:
            record = self._videos.get(video_id)
            return copy.deepcopy(record) if record else None

    def get(self, video_id: str) -> VideoRecord:
        record = self.find(video_id)
        if record is None:
            raise NotFoundError("Video not found")
        return record

    def list_all(self) -> List[VideoRecord]:
        """All records, newest first."""
        with self._lock:
            records = [copy.deepcopy(r) for r in self._videos.values()]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def count_by_state(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in ProcessingState}
        with self._lock:
            for record in self._videos.values():
                counts[record.processing_state.value] += 1
        return counts

    def resolve_video_path(self, video_id: str) -> Path:
        """
        Resolve a streaming id to the stored original file.

        Accepts either the exact video id or the stored file name
        (``<id><ext>``), which is what the public ``url`` of a video uses.

        Raises:
            NotFoundError: If no record matches or its file is gone.
        """
        with self._lock:
            record = self._videos.get(video_id)
            if record is None and video_id:
                for candidate in self._videos.values():
                    if candidate.file_name.startswith(video_id):
                        record = candidate
                        break
            path = record.path if record else None

        if path is None or not path.is_file():
            raise NotFoundError("Video not found")
        return path

    def find_segment(self, segment_id: str) -> Tuple[VideoRecord, SegmentRecord]:
        """
        Find a segment by scanning each record's segment list.

        Raises:
            NotFoundError: If no record owns a segment with this id.
        """
        with self._lock:
            for record in self._videos.values():
                for segment in record.segments:
                    if segment.id == segment_id:
                        return copy.deepcopy(record), copy.deepcopy(segment)
        raise NotFoundError("Segment not found")

    def resolve_segment_path(self, segment_id: str) -> Path:
        _, segment = self.find_segment(segment_id)
        if not segment.path.is_file():
            raise NotFoundError("Segment not found")
        return segment.path

    # =========================================================================
    # Writes
    # =========================================================================

    def create(
        self,
        original_name: str,
        path: Path,
        size: int,
        video_id: Optional[str] = None,
    ) -> VideoRecord:
        """Register a fully-written upload. The new record starts IDLE."""
        video_id = video_id or str(uuid.uuid4())
        record = VideoRecord(id=video_id, original_name=original_name, path=Path(path), size=size)
        with self._lock:
            if video_id in self._videos:
                raise ConflictError(f"Video id already registered: {video_id}")
            self._videos[video_id] = record
        logger.info(f"Registered video {video_id} ({original_name}, {size} bytes)")
        return copy.deepcopy(record)

    def begin_processing(self, video_id: str) -> Optional[VideoRecord]:
        """
        Atomically move a video into PROCESSING.

        Returns:
            Snapshot of the record now in PROCESSING, or None if the video is
            already COMPLETED (nothing to do).

        Raises:
            NotFoundError: Unknown id.
            ConflictError: A job is already running for this id.
        """
        with self._lock:
            record = self._videos.get(video_id)
            if record is None:
                raise NotFoundError("Video not found")
            if not state_machine.check_can_start(record.processing_state):
                return None
            state_machine.validate_transition(record.processing_state, ProcessingState.PROCESSING)
            record.processing_state = ProcessingState.PROCESSING
            record.last_error = None
            record.segments = []
            return copy.deepcopy(record)

    def mark_completed(self, video_id: str, segments: List[SegmentRecord]) -> VideoRecord:
        with self._lock:
            record = self._require(video_id)
            state_machine.validate_transition(record.processing_state, ProcessingState.COMPLETED)
            record.segments = sorted(copy.deepcopy(segments), key=lambda s: s.index)
            record.processing_state = ProcessingState.COMPLETED
            record.last_error = None
            return copy.deepcopy(record)

    def mark_failed(self, video_id: str, error: str) -> VideoRecord:
        with self._lock:
            record = self._require(video_id)
            state_machine.validate_transition(record.processing_state, ProcessingState.FAILED)
            record.processing_state = ProcessingState.FAILED
            record.segments = []
            record.last_error = truncate_error(error)
            return copy.deepcopy(record)

    def remove(self, video_id: str) -> VideoRecord:
        """Remove an entry. File cleanup is the caller's job."""
        with self._lock:
            record = self._require(video_id)
            state_machine.check_can_delete(record.processing_state)
            del self._videos[video_id]
        logger.info(f"Removed video {video_id} from registry")
        return record

    def clear(self) -> None:
        with self._lock:
            self._videos.clear()

    def _require(self, video_id: str) -> VideoRecord:
        record = self._videos.get(video_id)
        if record is None:
            raise NotFoundError("Video not found")
        return record


_default_registry = MediaRegistry()


def get_registry() -> MediaRegistry:
    """Get the process-wide registry."""
    return _default_registry
