"""
Tests for the job orchestrator.

Covers the Idle -> Processing -> Completed/Failed lifecycle, single-flight
behaviour, terminal events and file cleanup on delete.
"""

import asyncio

import pytest
from conftest import FakeEncoder, make_probe

from api.enums import ProcessingState, StartOutcome
from api.errors import ConflictError, NotFoundError, ProbeError
from worker.orchestrator import JobOrchestrator
from worker.segmenter import SegmentJobRunner, segment_output_path


class BlockingEncoder(FakeEncoder):
    """FakeEncoder that waits on an event before encoding segments from block_from on."""

    def __init__(self, block_from: int = 1):
        super().__init__()
        self.block_from = block_from
        self.release = asyncio.Event()
        self.blocked = asyncio.Event()

    async def encode(self, input_path, output_path, plan, progress_callback=None):
        if plan.index >= self.block_from:
            self.blocked.set()
            await self.release.wait()
        await super().encode(input_path, output_path, plan, progress_callback)


def _register(registry, source_video):
    return registry.create("clip.mp4", source_video, source_video.stat().st_size)


@pytest.mark.asyncio
class TestJobLifecycle:
    """Tests for a job running to completion or failure."""

    async def test_start_returns_before_work(self, orchestrator, registry, source_video, fake_encoder):
        """start() hands back STARTED while the record is PROCESSING."""
        record = _register(registry, source_video)

        result = await orchestrator.start(record.id)

        assert result.outcome == StartOutcome.STARTED
        assert registry.get(record.id).processing_state == ProcessingState.PROCESSING
        await orchestrator.wait(record.id)

    async def test_completed_job(self, orchestrator, registry, source_video, sink):
        """A 37 s video ends COMPLETED with three ordered segments."""
        record = _register(registry, source_video)

        await orchestrator.start(record.id)
        await orchestrator.wait(record.id)

        stored = registry.get(record.id)
        assert stored.processing_state == ProcessingState.COMPLETED
        assert stored.is_processed
        assert [s.index for s in stored.segments] == [1, 2, 3]
        assert [s.duration for s in stored.segments] == [15.0, 15.0, 7.0]
        assert stored.last_error is None

        completed = sink.of_type("completed")
        assert len(completed) == 1
        assert [s["id"] for s in completed[0]["segments"]] == [s.id for s in stored.segments]
        assert completed[0]["segments"][0]["url"] == f"/stream/segment/{record.id}_segment_1"
        assert sink.of_type("failed") == []

    async def test_progress_ends_at_100_after_completion(self, orchestrator, registry, source_video, sink):
        record = _register(registry, source_video)

        await orchestrator.start(record.id)
        await orchestrator.wait(record.id)

        types = [m["type"] for m in sink.messages]
        assert types.index("completed") < len(types) - 1
        assert sink.messages[-1]["type"] == "progress"
        assert sink.messages[-1]["percent"] == 100
        percents = [m["percent"] for m in sink.of_type("progress")]
        assert percents == sorted(percents)
        assert percents[0] == 0

    async def test_partial_failure_still_completes(self, registry, publisher, sink, segments_dir, source_video):
        """Two failed segments leave a gap but the job is COMPLETED."""
        runner = SegmentJobRunner(encoder=FakeEncoder(fail_on={2}), segments_root=segments_dir)
        orchestrator = JobOrchestrator(registry, publisher, runner, probe=make_probe(37.0))
        record = _register(registry, source_video)

        await orchestrator.start(record.id)
        await orchestrator.wait(record.id)

        stored = registry.get(record.id)
        assert stored.processing_state == ProcessingState.COMPLETED
        assert [s.index for s in stored.segments] == [1, 3]

    async def test_too_many_failures_fails_job(self, registry, publisher, sink, segments_dir, source_video):
        """Three failures end FAILED with no segments and one failed event."""
        runner = SegmentJobRunner(encoder=FakeEncoder(fail_on={1, 2, 3}), segments_root=segments_dir)
        orchestrator = JobOrchestrator(registry, publisher, runner, probe=make_probe(60.0))
        record = _register(registry, source_video)

        await orchestrator.start(record.id)
        await orchestrator.wait(record.id)

        stored = registry.get(record.id)
        assert stored.processing_state == ProcessingState.FAILED
        assert stored.segments == []
        assert "Too many segment creation failures" in stored.last_error
        assert len(sink.of_type("failed")) == 1
        assert sink.of_type("completed") == []
        assert not (segments_dir / record.id).exists()

    async def test_probe_failure_fails_job(self, registry, publisher, sink, segments_dir, source_video):
        runner = SegmentJobRunner(encoder=FakeEncoder(), segments_root=segments_dir)
        orchestrator = JobOrchestrator(
            registry, publisher, runner, probe=make_probe(error=ProbeError("Could not determine video duration"))
        )
        record = _register(registry, source_video)

        await orchestrator.start(record.id)
        await orchestrator.wait(record.id)

        stored = registry.get(record.id)
        assert stored.processing_state == ProcessingState.FAILED
        assert stored.last_error == "Could not determine video duration"
        failed = sink.of_type("failed")
        assert failed[0]["error"] == "Could not determine video duration. The file may be corrupted."

    async def test_failed_event_hides_storage_paths(self, registry, publisher, sink, segments_dir, source_video):
        """The failed event carries a client-safe message; the registry keeps the raw one."""
        raw = "Video file does not exist: /home/alice/uploads/temp/x.mp4"
        runner = SegmentJobRunner(encoder=FakeEncoder(), segments_root=segments_dir)
        orchestrator = JobOrchestrator(registry, publisher, runner, probe=make_probe(error=ProbeError(raw)))
        record = _register(registry, source_video)

        await orchestrator.start(record.id)
        await orchestrator.wait(record.id)

        assert registry.get(record.id).last_error == raw
        failed = sink.of_type("failed")
        assert len(failed) == 1
        assert "/home/alice" not in failed[0]["error"]
        assert failed[0]["error"] == "Source file not found. Please re-upload the video."

    async def test_unexpected_error_does_not_escape(self, registry, publisher, sink, segments_dir, source_video):
        """A bug in the pipeline still ends in FAILED rather than a dead task."""
        runner = SegmentJobRunner(encoder=FakeEncoder(), segments_root=segments_dir)
        orchestrator = JobOrchestrator(registry, publisher, runner, probe=make_probe(error=KeyError("format")))
        record = _register(registry, source_video)

        await orchestrator.start(record.id)
        await orchestrator.wait(record.id)

        assert registry.get(record.id).processing_state == ProcessingState.FAILED
        assert len(sink.of_type("failed")) == 1

    async def test_failed_video_can_be_retried(self, registry, publisher, sink, segments_dir, source_video):
        encoder = FakeEncoder(fail_on={1, 2, 3})
        runner = SegmentJobRunner(encoder=encoder, segments_root=segments_dir)
        orchestrator = JobOrchestrator(registry, publisher, runner, probe=make_probe(45.0))
        record = _register(registry, source_video)
        await orchestrator.start(record.id)
        await orchestrator.wait(record.id)

        encoder.fail_on.clear()
        result = await orchestrator.start(record.id)
        await orchestrator.wait(record.id)

        assert result.outcome == StartOutcome.STARTED
        stored = registry.get(record.id)
        assert stored.processing_state == ProcessingState.COMPLETED
        assert stored.last_error is None


@pytest.mark.asyncio
class TestSingleFlight:
    """Tests for start requests overlapping a running job."""

    async def test_second_start_conflicts(self, registry, publisher, segments_dir, source_video):
        encoder = BlockingEncoder()
        runner = SegmentJobRunner(encoder=encoder, segments_root=segments_dir)
        orchestrator = JobOrchestrator(registry, publisher, runner, probe=make_probe(30.0))
        record = _register(registry, source_video)

        await orchestrator.start(record.id)
        assert orchestrator.is_running(record.id)
        with pytest.raises(ConflictError):
            await orchestrator.start(record.id)

        encoder.release.set()
        await orchestrator.wait(record.id)
        # Only one job's worth of encodes happened
        assert len(encoder.calls) == 2

    async def test_concurrent_starts_run_one_job(self, registry, publisher, segments_dir, source_video):
        """Two starts racing for the same video: one job runs, the other conflicts."""
        encoder = FakeEncoder()
        runner = SegmentJobRunner(encoder=encoder, segments_root=segments_dir)
        orchestrator = JobOrchestrator(registry, publisher, runner, probe=make_probe(30.0))
        record = _register(registry, source_video)

        results = await asyncio.gather(
            orchestrator.start(record.id), orchestrator.start(record.id), return_exceptions=True
        )
        await orchestrator.wait(record.id)

        started = [r for r in results if not isinstance(r, Exception) and r.started]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(started) == 1
        assert len(conflicts) == 1
        assert len(encoder.calls) == 2
        assert registry.get(record.id).processing_state == ProcessingState.COMPLETED

    async def test_completed_video_not_reprocessed(self, orchestrator, registry, source_video, fake_encoder):
        record = _register(registry, source_video)
        await orchestrator.start(record.id)
        await orchestrator.wait(record.id)
        calls_after_first = len(fake_encoder.calls)

        result = await orchestrator.start(record.id)

        assert result.outcome == StartOutcome.ALREADY_PROCESSED
        assert [s.index for s in result.segments] == [1, 2, 3]
        assert len(fake_encoder.calls) == calls_after_first

    async def test_unknown_video(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.start("does-not-exist")

    async def test_progress_visible_while_running(self, registry, publisher, segments_dir, source_video):
        encoder = BlockingEncoder()
        runner = SegmentJobRunner(encoder=encoder, segments_root=segments_dir)
        orchestrator = JobOrchestrator(registry, publisher, runner, probe=make_probe(30.0))
        record = _register(registry, source_video)

        await orchestrator.start(record.id)
        await asyncio.sleep(0)
        assert orchestrator.get_progress(record.id) == 0

        encoder.release.set()
        await orchestrator.wait(record.id)
        assert orchestrator.get_progress(record.id) is None


@pytest.mark.asyncio
class TestDeleteAndShutdown:
    """Tests for explicit deletion and shutdown."""

    async def test_delete_removes_record_and_files(self, orchestrator, registry, source_video, segments_dir):
        record = _register(registry, source_video)
        await orchestrator.start(record.id)
        await orchestrator.wait(record.id)
        assert (segments_dir / record.id).exists()

        await orchestrator.delete(record.id)

        assert record.id not in registry
        assert not source_video.exists()
        assert not (segments_dir / record.id).exists()

    async def test_delete_while_processing_conflicts(self, registry, publisher, segments_dir, source_video):
        encoder = BlockingEncoder()
        runner = SegmentJobRunner(encoder=encoder, segments_root=segments_dir)
        orchestrator = JobOrchestrator(registry, publisher, runner, probe=make_probe(15.0))
        record = _register(registry, source_video)
        await orchestrator.start(record.id)

        with pytest.raises(ConflictError):
            await orchestrator.delete(record.id)

        encoder.release.set()
        await orchestrator.wait(record.id)

    async def test_shutdown_marks_running_jobs_failed(self, registry, publisher, sink, segments_dir, source_video):
        """A job cancelled mid-run is FAILED, announced once, and its written segments removed."""
        encoder = BlockingEncoder(block_from=2)
        runner = SegmentJobRunner(encoder=encoder, segments_root=segments_dir)
        orchestrator = JobOrchestrator(registry, publisher, runner, probe=make_probe(45.0))
        record = _register(registry, source_video)
        await orchestrator.start(record.id)
        await asyncio.wait_for(encoder.blocked.wait(), timeout=5)
        assert segment_output_path(record.id, 1, root=segments_dir).exists()

        await orchestrator.shutdown()

        stored = registry.get(record.id)
        assert stored.processing_state == ProcessingState.FAILED
        assert stored.last_error == "Processing was interrupted"
        assert stored.segments == []
        assert orchestrator.active_jobs == 0
        failed = sink.of_type("failed")
        assert len(failed) == 1
        assert failed[0]["error"] == "Processing was interrupted"
        assert sink.of_type("completed") == []
        assert not (segments_dir / record.id).exists()
