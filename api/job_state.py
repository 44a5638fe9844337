"""
Video Processing State Machine - explicit state management for segmentation jobs.

State Transition Diagram:
    IDLE ──> PROCESSING ──> COMPLETED
                 │
                 v
               FAILED ──> PROCESSING (explicit new request)

COMPLETED is terminal: a new request is answered with "already processed"
instead of a second job. PROCESSING rejects new requests outright, which is
what gives the single-flight guarantee per video id.

Usage:
    from api.job_state import VideoStateMachine

    state_machine = VideoStateMachine()
    state_machine.check_can_start(record.processing_state)  # raises ConflictError
    state_machine.validate_transition(ProcessingState.IDLE, ProcessingState.PROCESSING)

Note: these checks are pure. Callers that need an atomic check-and-set must
hold the registry lock while calling them (see MediaRegistry.begin_processing).
"""

import logging
from typing import Dict, FrozenSet

from api.enums import ProcessingState
from api.errors import ConflictError

logger = logging.getLogger(__name__)


class InvalidTransitionError(ConflictError):
    """Raised when a state change is not allowed by the state machine."""

    def __init__(self, current: ProcessingState, target: ProcessingState):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition from {current.value} to {target.value}")


_TRANSITIONS: Dict[ProcessingState, FrozenSet[ProcessingState]] = {
    ProcessingState.IDLE: frozenset({ProcessingState.PROCESSING}),
    ProcessingState.PROCESSING: frozenset({ProcessingState.COMPLETED, ProcessingState.FAILED}),
    ProcessingState.COMPLETED: frozenset(),
    ProcessingState.FAILED: frozenset({ProcessingState.PROCESSING}),
}


class VideoStateMachine:
    """
    Transition rules for a video's processing state.

    Thread Safety:
        This class is stateless and thread-safe. All methods are pure functions.
    """

    def can_transition(self, current: ProcessingState, target: ProcessingState) -> bool:
        return target in _TRANSITIONS[current]

    def validate_transition(self, current: ProcessingState, target: ProcessingState) -> None:
        """Raise InvalidTransitionError unless current -> target is allowed."""
        if not self.can_transition(current, target):
            logger.debug(f"Rejected transition {current.value} -> {target.value}")
            raise InvalidTransitionError(current, target)

    def is_terminal(self, state: ProcessingState) -> bool:
        return state in (ProcessingState.COMPLETED, ProcessingState.FAILED)

    def is_active(self, state: ProcessingState) -> bool:
        return state == ProcessingState.PROCESSING

    def check_can_start(self, state: ProcessingState) -> bool:
        """
        Decide whether a start request may launch a new job.

        Returns:
            True if a job should be started, False if the video is already
            processed (an informational outcome, not an error).

        Raises:
            ConflictError: If a job is already running for this video.
        """
        if state == ProcessingState.PROCESSING:
            raise ConflictError("Video is already being processed")
        if state == ProcessingState.COMPLETED:
            return False
        return True

    def check_can_delete(self, state: ProcessingState) -> None:
        """Deleting files out from under a running job is not allowed."""
        if state == ProcessingState.PROCESSING:
            raise ConflictError("Cannot delete a video while it is being processed")


state_machine = VideoStateMachine()
