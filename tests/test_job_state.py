"""Tests for the transcode job state machine."""

import pytest

from api.job_state import (
    TERMINAL_STATES,
    TRANSITIONS,
    InvalidTransitionError,
    JobState,
    JobStateMachine,
    can_transition,
)


class TestTransitionTable:
    def test_every_state_has_an_entry(self):
        assert set(TRANSITIONS) == set(JobState)

    def test_terminal_states_have_no_exits(self):
        for state in TERMINAL_STATES:
            assert TRANSITIONS[state] == frozenset()

    @pytest.mark.parametrize("state", [JobState.CLAIMED, JobState.VALIDATING, JobState.ENCODING, JobState.FINALIZING])
    def test_any_working_state_can_fail(self, state):
        assert can_transition(state, JobState.FAILED_RETRYABLE)
        assert can_transition(state, JobState.FAILED_TERMINAL)

    def test_stages_cannot_be_skipped(self):
        assert not can_transition(JobState.VALIDATING, JobState.FINALIZING)
        assert not can_transition(JobState.ENCODING, JobState.COMPLETED)

    def test_claimed_can_complete_directly(self):
        assert can_transition(JobState.CLAIMED, JobState.COMPLETED)


class TestJobStateMachine:
    def test_happy_path(self):
        machine = JobStateMachine("video#1")
        for state in (JobState.VALIDATING, JobState.ENCODING, JobState.FINALIZING, JobState.COMPLETED):
            machine.advance(state)

        assert machine.state == JobState.COMPLETED
        assert machine.is_terminal
        assert [s for s, _ in machine.history] == [
            JobState.CLAIMED,
            JobState.VALIDATING,
            JobState.ENCODING,
            JobState.FINALIZING,
            JobState.COMPLETED,
        ]

    def test_invalid_transition_raises(self):
        machine = JobStateMachine()
        with pytest.raises(InvalidTransitionError) as exc_info:
            machine.advance(JobState.ENCODING)
        assert exc_info.value.current == JobState.CLAIMED
        assert machine.state == JobState.CLAIMED

    def test_terminal_state_is_final(self):
        machine = JobStateMachine()
        machine.fail(retryable=True)
        with pytest.raises(InvalidTransitionError):
            machine.advance(JobState.VALIDATING)

    def test_fail_picks_state(self):
        assert JobStateMachine().fail(retryable=True) == JobState.FAILED_RETRYABLE
        assert JobStateMachine().fail(retryable=False) == JobState.FAILED_TERMINAL

    def test_last_working_state(self):
        machine = JobStateMachine()
        machine.advance(JobState.VALIDATING)
        machine.advance(JobState.ENCODING)
        machine.fail(retryable=False)
        assert machine.last_working_state() == JobState.ENCODING

    def test_stage_durations_cover_left_states(self):
        machine = JobStateMachine()
        machine.advance(JobState.VALIDATING)
        machine.fail(retryable=True)

        durations = machine.stage_durations()
        assert set(durations) == {"claimed", "validating"}
        assert all(seconds >= 0 for seconds in durations.values())
