"""Tests for the in-memory media registry."""

import threading
from pathlib import Path

import pytest

from api.enums import ProcessingState
from api.errors import ConflictError, NotFoundError
from api.registry import MediaRegistry, SegmentRecord, segment_id_for


@pytest.fixture
def reg():
    return MediaRegistry()


def _segment(video_id: str, index: int, path: Path) -> SegmentRecord:
    return SegmentRecord(
        id=segment_id_for(video_id, index),
        index=index,
        start_time=(index - 1) * 15.0,
        duration=15.0,
        path=path,
    )


class TestCreateAndLookup:
    """Tests for registering and finding videos."""

    def test_create_starts_idle(self, reg, source_video):
        record = reg.create("clip.mp4", source_video, 100)
        assert record.processing_state == ProcessingState.IDLE
        assert record.segments == []
        assert record.id in reg
        assert len(reg) == 1

    def test_explicit_id(self, reg, source_video):
        record = reg.create("clip.mp4", source_video, 100, video_id="fixed-id")
        assert record.id == "fixed-id"

    def test_duplicate_id_conflicts(self, reg, source_video):
        reg.create("clip.mp4", source_video, 100, video_id="dup")
        with pytest.raises(ConflictError):
            reg.create("clip.mp4", source_video, 100, video_id="dup")

    def test_get_unknown(self, reg):
        with pytest.raises(NotFoundError):
            reg.get("nope")
        assert reg.find("nope") is None

    def test_snapshots_are_isolated(self, reg, source_video):
        """Mutating a returned record does not change the stored one."""
        record = reg.create("clip.mp4", source_video, 100)
        snapshot = reg.get(record.id)
        snapshot.processing_state = ProcessingState.COMPLETED
        assert reg.get(record.id).processing_state == ProcessingState.IDLE

    def test_list_newest_first(self, reg, source_video):
        first = reg.create("a.mp4", source_video, 1)
        second = reg.create("b.mp4", source_video, 1)
        ids = [r.id for r in reg.list_all()]
        assert set(ids) == {first.id, second.id}
        created = [r.created_at for r in reg.list_all()]
        assert created == sorted(created, reverse=True)

    def test_count_by_state(self, reg, source_video):
        record = reg.create("a.mp4", source_video, 1)
        reg.create("b.mp4", source_video, 1)
        reg.begin_processing(record.id)
        counts = reg.count_by_state()
        assert counts == {"idle": 1, "processing": 1, "completed": 0, "failed": 0}


class TestResolvePaths:
    """Tests for resolving streaming ids to files."""

    def test_resolve_by_id(self, reg, source_video):
        record = reg.create("clip.mp4", source_video, 1)
        assert reg.resolve_video_path(record.id) == source_video

    def test_resolve_by_file_name_prefix(self, reg, storage_dir):
        path = storage_dir / "temp" / "abc123.mp4"
        path.write_bytes(b"x")
        reg.create("clip.mp4", path, 1, video_id="abc123")
        assert reg.resolve_video_path("abc123.mp4") == path

    def test_resolve_missing_file(self, reg, tmp_path):
        reg.create("clip.mp4", tmp_path / "gone.mp4", 1, video_id="gone")
        with pytest.raises(NotFoundError):
            reg.resolve_video_path("gone")

    def test_resolve_unknown(self, reg):
        with pytest.raises(NotFoundError):
            reg.resolve_video_path("unknown")

    def test_resolve_empty_id(self, reg, source_video):
        reg.create("clip.mp4", source_video, 1)
        with pytest.raises(NotFoundError):
            reg.resolve_video_path("")

    def test_find_segment(self, reg, source_video, tmp_path):
        record = reg.create("clip.mp4", source_video, 1, video_id="vid")
        seg_path = tmp_path / "vid_segment_1.mp4"
        seg_path.write_bytes(b"x")
        reg.begin_processing("vid")
        reg.mark_completed("vid", [_segment("vid", 1, seg_path)])

        owner, segment = reg.find_segment("vid_segment_1")
        assert owner.id == record.id
        assert segment.index == 1
        assert reg.resolve_segment_path("vid_segment_1") == seg_path

    def test_unknown_segment(self, reg):
        with pytest.raises(NotFoundError, match="Segment not found"):
            reg.find_segment("vid_segment_9")


class TestStateChanges:
    """Tests for lifecycle updates."""

    def test_begin_processing(self, reg, source_video):
        record = reg.create("clip.mp4", source_video, 1)
        snapshot = reg.begin_processing(record.id)
        assert snapshot.processing_state == ProcessingState.PROCESSING

    def test_begin_processing_twice_conflicts(self, reg, source_video):
        record = reg.create("clip.mp4", source_video, 1)
        reg.begin_processing(record.id)
        with pytest.raises(ConflictError):
            reg.begin_processing(record.id)

    def test_begin_processing_completed_returns_none(self, reg, source_video):
        record = reg.create("clip.mp4", source_video, 1)
        reg.begin_processing(record.id)
        reg.mark_completed(record.id, [])
        assert reg.begin_processing(record.id) is None

    def test_mark_completed_sorts_segments(self, reg, source_video, tmp_path):
        record = reg.create("clip.mp4", source_video, 1, video_id="vid")
        reg.begin_processing(record.id)
        reg.mark_completed("vid", [_segment("vid", 3, tmp_path), _segment("vid", 1, tmp_path)])
        assert [s.index for s in reg.get("vid").segments] == [1, 3]

    def test_mark_failed_clears_segments(self, reg, source_video):
        record = reg.create("clip.mp4", source_video, 1)
        reg.begin_processing(record.id)
        failed = reg.mark_failed(record.id, "x" * 2000)
        assert failed.processing_state == ProcessingState.FAILED
        assert failed.segments == []
        assert len(failed.last_error) <= 500
        assert failed.last_error.endswith("...")

    def test_retry_clears_last_error(self, reg, source_video):
        record = reg.create("clip.mp4", source_video, 1)
        reg.begin_processing(record.id)
        reg.mark_failed(record.id, "boom")
        snapshot = reg.begin_processing(record.id)
        assert snapshot.last_error is None

    def test_cannot_complete_idle_video(self, reg, source_video):
        record = reg.create("clip.mp4", source_video, 1)
        with pytest.raises(ConflictError):
            reg.mark_completed(record.id, [])

    def test_remove(self, reg, source_video):
        record = reg.create("clip.mp4", source_video, 1)
        removed = reg.remove(record.id)
        assert removed.id == record.id
        assert record.id not in reg

    def test_remove_processing_conflicts(self, reg, source_video):
        record = reg.create("clip.mp4", source_video, 1)
        reg.begin_processing(record.id)
        with pytest.raises(ConflictError):
            reg.remove(record.id)


class TestConcurrency:
    """Tests for concurrent access from many threads."""

    def test_only_one_thread_wins_begin_processing(self, reg, source_video):
        record = reg.create("clip.mp4", source_video, 1)
        winners = []
        conflicts = []
        barrier = threading.Barrier(16)

        def attempt():
            barrier.wait()
            try:
                reg.begin_processing(record.id)
                winners.append(1)
            except ConflictError:
                conflicts.append(1)

        threads = [threading.Thread(target=attempt) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert len(conflicts) == 15

    def test_concurrent_creates(self, reg, source_video):
        threads = [
            threading.Thread(target=lambda: reg.create("clip.mp4", source_video, 1)) for _ in range(50)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(reg) == 50
