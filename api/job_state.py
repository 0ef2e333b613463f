"""
Transcode Job State Machine - explicit lifecycle of one job attempt.

Every delivery of a job to the worker walks this machine exactly once. The
worker's outermost handler owns the machine; pipeline stages only raise.

State Transition Diagram:
    CLAIMED ──> VALIDATING ──> ENCODING ──> FINALIZING ──> COMPLETED
       │             │             │              │
       │             v             v              v
       │       FAILED_RETRYABLE / FAILED_TERMINAL (from any working state)
       │
       └──> COMPLETED (duplicate delivery of an already-live video)

Usage:
    from api.job_state import JobState, JobStateMachine

    machine = JobStateMachine(job_label="my-video#2")
    machine.advance(JobState.VALIDATING)
    ...
    machine.advance(JobState.COMPLETED)

Terminal states are final: any further transition raises InvalidTransitionError.
"""

import logging
import time
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    """States of a single transcode attempt."""

    CLAIMED = "claimed"
    """Job dequeued and lease held; the video record is being set to processing."""

    VALIDATING = "validating"
    """Input existence check and media probe."""

    ENCODING = "encoding"
    """Encoder Driver producing the HLS package."""

    FINALIZING = "finalizing"
    """Master manifest verified, record set live, input removed, uploader notified."""

    COMPLETED = "completed"
    """Job acknowledged on the queue. Terminal."""

    FAILED_RETRYABLE = "failed_retryable"
    """Attempt failed; the queue redelivers after the backoff delay. Terminal for this attempt."""

    FAILED_TERMINAL = "failed_terminal"
    """Retries exhausted or unrecoverable error; artifacts removed, admins notified. Terminal."""


TERMINAL_STATES: FrozenSet[JobState] = frozenset(
    {JobState.COMPLETED, JobState.FAILED_RETRYABLE, JobState.FAILED_TERMINAL}
)

_FAILURE_STATES = frozenset({JobState.FAILED_RETRYABLE, JobState.FAILED_TERMINAL})

TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.CLAIMED: frozenset({JobState.VALIDATING, JobState.COMPLETED}) | _FAILURE_STATES,
    JobState.VALIDATING: frozenset({JobState.ENCODING}) | _FAILURE_STATES,
    JobState.ENCODING: frozenset({JobState.FINALIZING}) | _FAILURE_STATES,
    JobState.FINALIZING: frozenset({JobState.COMPLETED}) | _FAILURE_STATES,
    JobState.COMPLETED: frozenset(),
    JobState.FAILED_RETRYABLE: frozenset(),
    JobState.FAILED_TERMINAL: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a transition is not in the transition table."""

    def __init__(self, current: JobState, target: JobState):
        super().__init__(f"Invalid job state transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


def can_transition(current: JobState, target: JobState) -> bool:
    return target in TRANSITIONS[current]


class JobStateMachine:
    """
    Tracks the state of one job attempt and enforces the transition table.

    Keeps a history of (state, monotonic timestamp) pairs so the worker can
    report per-stage timings.
    """

    def __init__(self, job_label: str = "", initial: JobState = JobState.CLAIMED) -> None:
        self.job_label = job_label
        self._state = initial
        self.history: List[Tuple[JobState, float]] = [(initial, time.monotonic())]

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def advance(self, target: JobState) -> JobState:
        """
        Move to target state.

        Raises:
            InvalidTransitionError: If target is not reachable from the current state
        """
        if not can_transition(self._state, target):
            raise InvalidTransitionError(self._state, target)
        logger.debug(f"Job {self.job_label}: {self._state.value} -> {target.value}")
        self._state = target
        self.history.append((target, time.monotonic()))
        return target

    def fail(self, retryable: bool) -> JobState:
        """Move to the retryable or terminal failure state."""
        return self.advance(JobState.FAILED_RETRYABLE if retryable else JobState.FAILED_TERMINAL)

    def stage_durations(self) -> Dict[str, float]:
        """Seconds spent in each non-terminal state that was left."""
        durations: Dict[str, float] = {}
        for (state, started), (_, ended) in zip(self.history, self.history[1:]):
            durations[state.value] = durations.get(state.value, 0.0) + (ended - started)
        return durations

    def last_working_state(self) -> Optional[JobState]:
        """The last non-terminal state visited (where a failure happened)."""
        for state, _ in reversed(self.history):
            if state not in TERMINAL_STATES:
                return state
        return None
