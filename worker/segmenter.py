"""
Segment job runner - cut one source video into fixed-length MP4 segments.

Segments are encoded strictly one after another (one ffmpeg process per
video at a time). A segment that fails, or that "succeeds" without leaving a
non-empty output file, is dropped from the result. Once MAX_SEGMENT_ERRORS
segments have failed the whole run is abandoned and its output deleted.
"""

import asyncio
import logging
import math
import shutil
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Deque, List, Optional, Protocol, Tuple

from api.common import validate_video_id
from api.enums import SegmentResult
from api.errors import SegmentationError, SegmentFailure
from api.metrics import SEGMENT_ENCODE_DURATION_SECONDS, SEGMENTS_TOTAL
from api.registry import SegmentRecord, segment_id_for
from config import (
    AUDIO_BITRATE,
    FFMPEG_PATH,
    MAX_SEGMENT_ERRORS,
    SEGMENT_DURATION,
    SEGMENT_FILE_EXTENSION,
    SEGMENTS_DIR,
)
from worker.progress import ProgressAggregator

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], Awaitable[None]]

# Lines of ffmpeg stderr kept for error reporting
STDERR_TAIL_LINES = 20


@dataclass(frozen=True)
class SegmentPlan:
    """Planned slice [start_time, start_time + SEGMENT_DURATION) of the source."""

    index: int
    start_time: float
    duration: float

    @property
    def is_first(self) -> bool:
        return self.index == 1


@dataclass
class SegmentationResult:
    """Outcome of a run that did not hit the failure threshold."""

    planned: int
    segments: List[SegmentRecord] = field(default_factory=list)
    failures: List[SegmentFailure] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.failures


def plan_segments(total_duration: float, segment_duration: int = SEGMENT_DURATION) -> List[SegmentPlan]:
    """
    Split total_duration into ceil(total_duration / segment_duration) slices.

    Segment i starts at (i - 1) * segment_duration. Its planned duration is
    min(segment_duration, total_duration - start); only the last one can be
    shorter, and it is never padded.
    """
    if total_duration <= 0:
        return []
    count = math.ceil(total_duration / segment_duration)
    plans = []
    for index in range(1, count + 1):
        start = (index - 1) * segment_duration
        plans.append(
            SegmentPlan(
                index=index,
                start_time=float(start),
                duration=float(min(segment_duration, total_duration - start)),
            )
        )
    return plans


def segment_output_dir(video_id: str, root: Path = SEGMENTS_DIR) -> Path:
    return root / video_id


def segment_output_path(video_id: str, index: int, root: Path = SEGMENTS_DIR) -> Path:
    return segment_output_dir(video_id, root) / f"{segment_id_for(video_id, index)}{SEGMENT_FILE_EXTENSION}"


def _format_seconds(value: float) -> str:
    return f"{value:g}"


def build_segment_command(
    input_path: Path,
    output_path: Path,
    plan: SegmentPlan,
    segment_duration: int = SEGMENT_DURATION,
) -> List[str]:
    """
    Build the ffmpeg command for one segment.

    The first segment reads from the start of the input without any seek;
    later segments seek the input to their start time before decoding.
    Both video and audio are re-encoded so cuts are frame accurate, with the
    fastest x264 preset and the moov atom moved up front for streaming.
    """
    cmd = [FFMPEG_PATH, "-hide_banner", "-nostdin", "-y"]
    if not plan.is_first:
        cmd.extend(["-ss", _format_seconds(plan.start_time)])
    cmd.extend(["-i", str(input_path)])
    cmd.extend(["-t", _format_seconds(segment_duration)])
    cmd.extend([
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-tune", "fastdecode",
        "-c:a", "aac",
        "-b:a", AUDIO_BITRATE,
        "-movflags", "+faststart",
        "-threads", "0",
        "-progress", "pipe:1",
        "-nostats",
        str(output_path),
    ])
    return cmd


def parse_progress_line(line: str, duration: float) -> Optional[float]:
    """
    Convert one line of ffmpeg ``-progress`` output to a segment percent.

    Returns None for lines that carry no position. ``out_time_us`` and
    ``out_time_ms`` are both microseconds in ffmpeg's output.
    """
    if duration <= 0:
        return None
    if not (line.startswith("out_time_us=") or line.startswith("out_time_ms=")):
        return None
    try:
        micros = int(line.split("=", 1)[1])
    except (ValueError, IndexError):
        return None
    if micros < 0:
        return None
    return min(100.0, (micros / 1_000_000.0) / duration * 100)


async def cleanup_ffmpeg_process(process: asyncio.subprocess.Process, context: str = "FFmpeg") -> None:
    """
    Kill an ffmpeg subprocess if it is still running, tolerating the race
    where it exits between the returncode check and kill().
    """
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


async def run_ffmpeg_with_progress(
    cmd: List[str],
    duration: float,
    progress_callback: Optional[ProgressCallback] = None,
    context: str = "FFmpeg",
) -> Tuple[bool, Optional[str]]:
    """
    Run an ffmpeg command, forwarding progress from its ``-progress pipe:1`` output.

    No timeout is applied: a stalled ffmpeg stalls the caller.

    Returns:
        Tuple[bool, Optional[str]]: (success, error_message)
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    async def read_progress():
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            percent = parse_progress_line(line.decode("utf-8", errors="ignore").strip(), duration)
            if percent is not None and progress_callback:
                await progress_callback(percent)

    async def drain_stderr():
        # stderr must be drained or a chatty ffmpeg blocks on a full pipe
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            stderr_tail.append(line.decode("utf-8", errors="ignore").rstrip())

    try:
        await asyncio.gather(read_progress(), drain_stderr())
        await process.wait()
    finally:
        await cleanup_ffmpeg_process(process, context)

    if process.returncode != 0:
        detail = stderr_tail[-1] if stderr_tail else "no output"
        return False, f"{context} exited with code {process.returncode}: {detail}"

    return True, None


class SegmentEncoder(Protocol):
    """Produces one segment file. Raises on failure."""

    async def encode(
        self,
        input_path: Path,
        output_path: Path,
        plan: SegmentPlan,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        ...


class FFmpegSegmentEncoder:
    """SegmentEncoder backed by the ffmpeg binary."""

    def __init__(self, segment_duration: int = SEGMENT_DURATION):
        self.segment_duration = segment_duration

    async def encode(
        self,
        input_path: Path,
        output_path: Path,
        plan: SegmentPlan,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        cmd = build_segment_command(input_path, output_path, plan, self.segment_duration)
        logger.debug(f"FFmpeg command for segment {plan.index}: {' '.join(cmd)}")
        success, error = await run_ffmpeg_with_progress(
            cmd,
            duration=plan.duration,
            progress_callback=progress_callback,
            context=f"ffmpeg segment {plan.index}",
        )
        if not success:
            raise RuntimeError(error)


def output_is_valid(path: Path) -> bool:
    """A segment only counts if its file exists and is non-empty."""
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


def cleanup_partial_output(video_id: str, root: Path = SEGMENTS_DIR) -> None:
    """Delete every segment file written for a video."""
    if not validate_video_id(video_id):
        logger.error(f"Invalid video id in cleanup_partial_output: {video_id}")
        return
    output_dir = segment_output_dir(video_id, root)
    if output_dir.exists():
        shutil.rmtree(output_dir, ignore_errors=True)


class SegmentJobRunner:
    """
    Plan and execute the segment encodes for one video.

    One runner instance may serve many videos; it holds no per-job state.
    """

    def __init__(
        self,
        encoder: Optional[SegmentEncoder] = None,
        segments_root: Path = SEGMENTS_DIR,
        segment_duration: int = SEGMENT_DURATION,
        max_errors: int = MAX_SEGMENT_ERRORS,
    ):
        self.encoder = encoder or FFmpegSegmentEncoder(segment_duration)
        self.segments_root = Path(segments_root)
        self.segment_duration = segment_duration
        self.max_errors = max_errors

    async def run(
        self,
        video_id: str,
        source_path: Path,
        total_duration: float,
        progress: Optional[ProgressAggregator] = None,
    ) -> SegmentationResult:
        """
        Encode every planned segment in index order.

        Raises:
            SegmentationError: Once failures reach max_errors. Segments
                already produced by this run are deleted.
        """
        if not validate_video_id(video_id):
            raise SegmentationError(f"Invalid video id: {video_id}")

        plans = plan_segments(total_duration, self.segment_duration)
        result = SegmentationResult(planned=len(plans))
        logger.info(f"Creating {len(plans)} segments of {self.segment_duration} seconds each for {video_id}")

        output_dir = segment_output_dir(video_id, self.segments_root)
        output_dir.mkdir(parents=True, exist_ok=True)

        if progress:
            await progress.begin(len(plans))

        for attempts_done, plan in enumerate(plans):
            failure = await self._run_one(video_id, Path(source_path), plan, len(plans), progress, result)
            if failure:
                result.failures.append(failure)
                if len(result.failures) >= self.max_errors:
                    cleanup_partial_output(video_id, self.segments_root)
                    raise SegmentationError(
                        f"Too many segment creation failures ({len(result.failures)}): {failure.reason}"
                    )
            if progress:
                await progress.segment_finished(attempts_done + 1)

        if result.failures:
            logger.warning(
                f"Completed {len(result.segments)} segments with {len(result.failures)} errors for {video_id}"
            )
        else:
            logger.info(f"All {len(plans)} segments created successfully for {video_id}")
        return result

    async def _run_one(
        self,
        video_id: str,
        source_path: Path,
        plan: SegmentPlan,
        total: int,
        progress: Optional[ProgressAggregator],
        result: SegmentationResult,
    ) -> Optional[SegmentFailure]:
        output_path = segment_output_path(video_id, plan.index, self.segments_root)
        # A leftover file from an earlier run must not pass the output check
        output_path.unlink(missing_ok=True)

        logger.info(
            f"Starting segment {plan.index}/{total} - from {plan.start_time:g}s for {self.segment_duration}s"
        )
        if progress:
            await progress.segment_started(plan.index)

        async def on_progress(percent: float) -> None:
            if progress:
                await progress.segment_progress(plan.index, percent)

        started = time.monotonic()
        try:
            await self.encoder.encode(source_path, output_path, plan, on_progress)
        except Exception as e:
            SEGMENTS_TOTAL.labels(result=SegmentResult.FAILED.value).inc()
            logger.error(f"Error creating segment {plan.index} of {video_id}: {e}")
            return SegmentFailure(index=plan.index, reason=str(e))
        finally:
            SEGMENT_ENCODE_DURATION_SECONDS.observe(time.monotonic() - started)

        if not output_is_valid(output_path):
            SEGMENTS_TOTAL.labels(result=SegmentResult.MISSING_OUTPUT.value).inc()
            logger.error(f"Segment file not found after processing: {output_path}")
            return SegmentFailure(index=plan.index, reason="segment output missing or empty")

        SEGMENTS_TOTAL.labels(result=SegmentResult.COMPLETED.value).inc()
        result.segments.append(
            SegmentRecord(
                id=segment_id_for(video_id, plan.index),
                index=plan.index,
                start_time=plan.start_time,
                duration=plan.duration,
                path=output_path,
            )
        )
        logger.info(f"Created segment {plan.index}/{total} at {output_path}")
        return None
