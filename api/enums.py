"""
Centralized enums for status values used throughout the application.
Using str-based enums so values serialize directly into JSON responses and events.
"""

from enum import Enum


class ProcessingState(str, Enum):
    """Processing lifecycle of a single uploaded video."""

    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EventType(str, Enum):
    """Push notification types published for each video."""

    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"


class SegmentResult(str, Enum):
    """Outcome of a single segment encode attempt."""

    COMPLETED = "completed"
    FAILED = "failed"
    MISSING_OUTPUT = "missing_output"


class StartOutcome(str, Enum):
    """Result of asking the orchestrator to process a video."""

    STARTED = "started"
    ALREADY_PROCESSED = "already_processed"
