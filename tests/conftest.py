"""
Pytest fixtures for vseg tests.
Provides temporary storage, a fresh registry and orchestrator, and a fake
segment encoder so no test needs a real ffmpeg binary.
"""

import os
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional

import pytest

# Set up test paths BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
os.environ["VSEG_TEST_MODE"] = "1"
os.environ["VSEG_STORAGE_PATH"] = _test_temp_dir
os.environ["VSEG_RATE_LIMIT_ENABLED"] = "false"
os.environ["VSEG_PROGRESS_UPDATE_INTERVAL"] = "0"

from api.pubsub import EventBroker, Publisher  # noqa: E402
from api.registry import get_registry  # noqa: E402
from worker.orchestrator import JobOrchestrator, set_orchestrator  # noqa: E402
from worker.segmenter import SegmentJobRunner, SegmentPlan  # noqa: E402


class FakeEncoder:
    """
    Stand-in for FFmpegSegmentEncoder.

    Writes a small file for every segment except those listed in fail_on
    (raises) or empty_on (exits cleanly without output).
    """

    def __init__(self, fail_on: Iterable[int] = (), empty_on: Iterable[int] = (), payload: bytes = b"segment-bytes"):
        self.fail_on = set(fail_on)
        self.empty_on = set(empty_on)
        self.payload = payload
        self.calls: List[SegmentPlan] = []

    async def encode(self, input_path: Path, output_path: Path, plan: SegmentPlan, progress_callback=None) -> None:
        self.calls.append(plan)
        if progress_callback:
            await progress_callback(50.0)
        if plan.index in self.fail_on:
            raise RuntimeError(f"ffmpeg segment {plan.index} exited with code 1: Conversion failed!")
        if plan.index in self.empty_on:
            return
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(self.payload)
        if progress_callback:
            await progress_callback(100.0)


class RecordingSink:
    """EventSink that keeps every message it receives."""

    def __init__(self):
        self.messages: List[dict] = []

    async def publish(self, message: dict) -> None:
        self.messages.append(message)

    def of_type(self, event_type: str) -> List[dict]:
        return [m for m in self.messages if m["type"] == event_type]


def make_probe(duration: Optional[float] = 37.0, error: Optional[Exception] = None):
    """Build an async duration probe returning a fixed value or raising."""

    async def probe(path: Path) -> float:
        if error is not None:
            raise error
        return duration

    return probe


@pytest.fixture
def storage_dir(tmp_path) -> Path:
    """Per-test storage root with originals/ and segments/ subdirectories."""
    (tmp_path / "temp").mkdir()
    (tmp_path / "segments").mkdir()
    return tmp_path


@pytest.fixture
def segments_dir(storage_dir) -> Path:
    return storage_dir / "segments"


@pytest.fixture
def registry():
    """The process-wide registry, emptied before and after each test."""
    reg = get_registry()
    reg.clear()
    yield reg
    reg.clear()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def publisher(sink) -> Publisher:
    return Publisher([sink])


@pytest.fixture
def fake_encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def source_video(storage_dir) -> Path:
    """A non-empty file standing in for an uploaded video."""
    path = storage_dir / "temp" / "source.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x01" * 4096)
    return path


@pytest.fixture
def orchestrator(registry, publisher, fake_encoder, segments_dir):
    """Orchestrator wired to the fake encoder and a 37 second probe."""
    runner = SegmentJobRunner(encoder=fake_encoder, segments_root=segments_dir)
    orch = JobOrchestrator(registry=registry, publisher=publisher, runner=runner, probe=make_probe(37.0))
    set_orchestrator(orch)
    yield orch
    set_orchestrator(None)


@pytest.fixture
def broker() -> EventBroker:
    return EventBroker(max_queue_size=10)


@pytest.fixture
def public_client(registry, fake_encoder, segments_dir, storage_dir, monkeypatch):
    """TestClient for the public API backed by temp storage and the fake encoder."""
    from fastapi.testclient import TestClient

    import api.public
    from api.pubsub import get_publisher

    monkeypatch.setattr(api.public, "ORIGINALS_DIR", storage_dir / "temp")
    runner = SegmentJobRunner(encoder=fake_encoder, segments_root=segments_dir)
    orch = JobOrchestrator(registry=registry, publisher=get_publisher(), runner=runner, probe=make_probe(37.0))
    set_orchestrator(orch)
    with TestClient(api.public.app) as client:
        yield client
    set_orchestrator(None)
