"""
Progress aggregation across the segments of one job.

Each ffmpeg run reports percent-complete for its own segment only. The
aggregator folds those into one overall percent for the video:

    overall = floor(((i - 1) / n) * 100 + segment_percent / n)

and publishes it as a progress event. Published values never decrease, and
100 is held back until the job has actually finished.
"""

import logging
import math
import time
from typing import Optional

from api.pubsub import Publisher
from config import PROGRESS_UPDATE_INTERVAL

logger = logging.getLogger(__name__)


def overall_percent(segment_index: int, total_segments: int, segment_percent: float) -> int:
    """
    Overall job percent while segment ``segment_index`` (1-based) is encoding.

    segment_percent is clamped to 0-100 so a misbehaving progress report can
    never push the overall value past the segment's share.
    """
    if total_segments <= 0:
        return 0
    segment_percent = max(0.0, min(100.0, float(segment_percent or 0)))
    value = ((segment_index - 1) / total_segments) * 100 + (segment_percent / total_segments)
    return max(0, min(100, math.floor(value)))


class ProgressAggregator:
    """
    Rate-limited, monotonic progress publisher for one video's job.

    Intra-segment updates are throttled to one every ``min_interval`` seconds;
    segment boundaries and the final 100 always go out.
    """

    def __init__(
        self,
        video_id: str,
        publisher: Publisher,
        total_segments: int = 0,
        min_interval: float = PROGRESS_UPDATE_INTERVAL,
    ):
        self.video_id = video_id
        self.publisher = publisher
        self.total_segments = total_segments
        self.min_interval = min_interval
        self.percent: int = 0
        self.current_segment: int = 0
        self._last_update_time: float = 0
        self._finished = False

    async def _emit(self, current_segment: int, percent: int, segment_progress: Optional[int] = None) -> None:
        self.percent = percent
        self._last_update_time = time.monotonic()
        await self.publisher.publish_progress(
            video_id=self.video_id,
            current_segment=current_segment,
            total_segments=self.total_segments,
            percent=percent,
            segment_progress=segment_progress,
        )

    async def begin(self, total_segments: int) -> None:
        """Set the plan size once the duration is known and announce 0%."""
        self.total_segments = total_segments
        await self._emit(0, 0)

    async def segment_started(self, index: int) -> None:
        self.current_segment = index

    async def segment_progress(self, index: int, segment_percent: float) -> bool:
        """
        Record a raw progress report for segment ``index``.

        Returns True if a progress event was published.
        """
        if self._finished:
            return False
        self.current_segment = index
        # 100 is reserved for the finished job
        percent = min(99, overall_percent(index, self.total_segments, segment_percent))
        if percent <= self.percent:
            return False
        if time.monotonic() - self._last_update_time < self.min_interval:
            return False
        await self._emit(index, percent, segment_progress=int(max(0, min(100, segment_percent))))
        return True

    async def segment_finished(self, attempts_done: int) -> bool:
        """
        Record that ``attempts_done`` segments have been attempted (succeeded or failed).

        Always publishes when the value moves forward, regardless of throttling.
        """
        if self._finished:
            return False
        percent = min(99, overall_percent(attempts_done + 1, self.total_segments, 0))
        if percent <= self.percent:
            return False
        await self._emit(attempts_done, percent)
        return True

    async def finish(self) -> None:
        """Publish the final 100 once the job has completed."""
        if self._finished:
            return
        self._finished = True
        await self._emit(self.total_segments, 100)
        logger.debug(f"Progress for {self.video_id} finished at 100%")
