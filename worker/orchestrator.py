"""
Job orchestrator - owns the processing lifecycle of each video.

start() flips the video to PROCESSING under the registry lock and schedules
the job as an asyncio task, returning before any work is done. The task
probes the duration, runs the segment job runner, writes the outcome back to
the registry and publishes exactly one terminal event (completed or failed).

Single flight: the state check-and-set happens atomically inside the
registry, and the orchestrator additionally tracks the in-flight task per
video id, so two overlapping jobs for one video can never exist.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from api.enums import StartOutcome
from api.errors import ConflictError, VsegError, sanitize_error_message, truncate_error
from api.metrics import (
    SEGMENTATION_JOB_DURATION_SECONDS,
    SEGMENTATION_JOBS_ACTIVE,
    SEGMENTATION_JOBS_TOTAL,
    VIDEOS_REGISTERED,
)
from api.pubsub import Publisher, get_publisher
from api.registry import MediaRegistry, SegmentRecord, VideoRecord, get_registry
from api.schemas import segment_to_dict
from worker.probe import get_video_duration
from worker.progress import ProgressAggregator
from worker.segmenter import SegmentJobRunner, cleanup_partial_output

logger = logging.getLogger(__name__)

DurationProbe = Callable[[Path], Awaitable[float]]


@dataclass
class StartResult:
    """What a start request achieved."""

    outcome: StartOutcome
    video_id: str
    segments: List[SegmentRecord] = field(default_factory=list)

    @property
    def started(self) -> bool:
        return self.outcome == StartOutcome.STARTED


class JobOrchestrator:
    """Schedules segmentation jobs and applies their outcome to the registry."""

    def __init__(
        self,
        registry: Optional[MediaRegistry] = None,
        publisher: Optional[Publisher] = None,
        runner: Optional[SegmentJobRunner] = None,
        probe: Optional[DurationProbe] = None,
    ):
        self.registry = registry or get_registry()
        self.publisher = publisher or get_publisher()
        self.runner = runner or SegmentJobRunner()
        self.probe = probe or get_video_duration
        self._jobs: Dict[str, asyncio.Task] = {}
        self._progress: Dict[str, ProgressAggregator] = {}

    # =========================================================================
    # Queries
    # =========================================================================

    def is_running(self, video_id: str) -> bool:
        task = self._jobs.get(video_id)
        return task is not None and not task.done()

    @property
    def active_jobs(self) -> int:
        return sum(1 for task in self._jobs.values() if not task.done())

    def get_progress(self, video_id: str) -> Optional[int]:
        """Current overall percent of a running job, or None if none is running."""
        progress = self._progress.get(video_id)
        return progress.percent if progress else None

    # =========================================================================
    # Commands
    # =========================================================================

    async def start(self, video_id: str) -> StartResult:
        """
        Request processing of a video. Returns immediately.

        Raises:
            NotFoundError: Unknown video id.
            ConflictError: A job is already running for this video.
        """
        if self.is_running(video_id):
            raise ConflictError("Video is already being processed")

        record = self.registry.begin_processing(video_id)
        if record is None:
            existing = self.registry.get(video_id)
            logger.info(f"Video {video_id} already processed, {len(existing.segments)} segments")
            return StartResult(StartOutcome.ALREADY_PROCESSED, video_id, existing.segments)

        SEGMENTATION_JOBS_TOTAL.labels(status="started").inc()
        task = asyncio.create_task(self._run_job(record), name=f"segment-{video_id}")
        self._jobs[video_id] = task
        task.add_done_callback(lambda t, vid=video_id: self._forget(vid, t))
        logger.info(f"Processing started for video {video_id}")
        return StartResult(StartOutcome.STARTED, video_id)

    async def wait(self, video_id: str) -> None:
        """Wait for the in-flight job of a video, if any, to finish."""
        task = self._jobs.get(video_id)
        if task is not None:
            await asyncio.shield(task)

    async def delete(self, video_id: str) -> VideoRecord:
        """
        Remove a video from the registry and delete its original and segment files.

        Raises:
            NotFoundError: Unknown video id.
            ConflictError: The video is being processed.
        """
        if self.is_running(video_id):
            raise ConflictError("Cannot delete a video while it is being processed")
        record = self.registry.remove(video_id)
        VIDEOS_REGISTERED.set(len(self.registry))
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._delete_files, record)
        logger.info(f"Deleted video {video_id} and its files")
        return record

    async def shutdown(self) -> None:
        """Cancel running jobs; their videos end up FAILED with their output removed."""
        tasks = [task for task in self._jobs.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} running job(s) on shutdown")

    # =========================================================================
    # Job body
    # =========================================================================

    def _forget(self, video_id: str, task: asyncio.Task) -> None:
        if self._jobs.get(video_id) is task:
            del self._jobs[video_id]

    def _delete_files(self, record: VideoRecord) -> None:
        record.path.unlink(missing_ok=True)
        cleanup_partial_output(record.id, root=self.runner.segments_root)

    async def _run_job(self, record: VideoRecord) -> None:
        video_id = record.id
        progress = ProgressAggregator(video_id, self.publisher)
        self._progress[video_id] = progress
        SEGMENTATION_JOBS_ACTIVE.inc()
        started = time.monotonic()
        try:
            logger.info(f"Starting video segmentation for: {record.path}")
            duration = await self.probe(record.path)
            result = await self.runner.run(video_id, record.path, duration, progress)
        except asyncio.CancelledError:
            await asyncio.shield(self._abort(video_id))
            raise
        except VsegError as e:
            await self._publish_failure(video_id, e.message)
        except Exception as e:
            logger.exception(f"Unexpected error processing video {video_id}: {e}")
            await self._publish_failure(video_id, str(e) or type(e).__name__)
        else:
            self.registry.mark_completed(video_id, result.segments)
            SEGMENTATION_JOBS_TOTAL.labels(status="completed").inc()
            logger.info(f"Processing complete for video {video_id}, created {len(result.segments)} segments")
            await self.publisher.publish_completed(video_id, [segment_to_dict(s) for s in result.segments])
            await progress.finish()
        finally:
            SEGMENTATION_JOBS_ACTIVE.dec()
            SEGMENTATION_JOB_DURATION_SECONDS.observe(time.monotonic() - started)
            self._progress.pop(video_id, None)

    def _fail(self, video_id: str, error: str) -> None:
        self.registry.mark_failed(video_id, error)
        SEGMENTATION_JOBS_TOTAL.labels(status="failed").inc()
        logger.error(f"Error processing video {video_id}: {error}")

    async def _publish_failure(self, video_id: str, error: str) -> None:
        self._fail(video_id, error)
        public_error = sanitize_error_message(error, context=f"video_id={video_id}")
        await self.publisher.publish_failed(video_id, truncate_error(public_error))

    async def _abort(self, video_id: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, cleanup_partial_output, video_id, self.runner.segments_root)
        await self._publish_failure(video_id, "Processing was interrupted")


_default_orchestrator: Optional[JobOrchestrator] = None


def get_orchestrator() -> JobOrchestrator:
    """Get the process-wide orchestrator, creating it on first use."""
    global _default_orchestrator
    if _default_orchestrator is None:
        _default_orchestrator = JobOrchestrator()
    return _default_orchestrator


def set_orchestrator(orchestrator: Optional[JobOrchestrator]) -> None:
    """Replace the process-wide orchestrator (useful for testing)."""
    global _default_orchestrator
    _default_orchestrator = orchestrator
