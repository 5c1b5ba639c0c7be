import pytest
from omi_assistant.services.state_machine import (
    InvalidTransitionError,
    RequestState,
    can_transition,
    gate,
    is_terminal,
    transition,
)


class TestValidTransitions:
    def test_received_to_metadata_resolved(self):
        result = transition(RequestState.RECEIVED, RequestState.METADATA_RESOLVED)
        assert result == RequestState.METADATA_RESOLVED

    def test_gate_checked_forks(self):
        assert transition(RequestState.GATE_CHECKED, RequestState.SUPPRESSED) == RequestState.SUPPRESSED
        assert transition(RequestState.GATE_CHECKED, RequestState.ACTIVATED) == RequestState.ACTIVATED

    def test_full_activated_path(self):
        state = RequestState.RECEIVED
        for target in [
            RequestState.METADATA_RESOLVED,
            RequestState.GATE_CHECKED,
            RequestState.ACTIVATED,
            RequestState.COMPLETION_CALLED,
            RequestState.RESPONDED,
            RequestState.JOBS_ENQUEUED,
        ]:
            state = transition(state, target)
        assert state == RequestState.JOBS_ENQUEUED


class TestInvalidTransitions:
    def test_cannot_skip_gate(self):
        with pytest.raises(InvalidTransitionError):
            transition(RequestState.METADATA_RESOLVED, RequestState.ACTIVATED)

    def test_suppressed_is_final(self):
        with pytest.raises(InvalidTransitionError):
            transition(RequestState.SUPPRESSED, RequestState.COMPLETION_CALLED)

    def test_same_state(self):
        with pytest.raises(InvalidTransitionError):
            transition(RequestState.RESPONDED, RequestState.RESPONDED)

    def test_error_message_names_states(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(RequestState.RECEIVED, RequestState.RESPONDED)
        assert "received -> responded" in str(exc_info.value)


class TestHelperFunctions:
    def test_gate_activates(self):
        assert gate(RequestState.METADATA_RESOLVED, True) == RequestState.ACTIVATED

    def test_gate_suppresses(self):
        assert gate(RequestState.METADATA_RESOLVED, False) == RequestState.SUPPRESSED

    def test_gate_from_wrong_state_fails(self):
        with pytest.raises(InvalidTransitionError):
            gate(RequestState.RECEIVED, True)

    def test_terminal_states(self):
        assert is_terminal(RequestState.SUPPRESSED)
        assert is_terminal(RequestState.JOBS_ENQUEUED)
        assert not is_terminal(RequestState.RESPONDED)

    def test_can_transition(self):
        assert can_transition(RequestState.RESPONDED, RequestState.JOBS_ENQUEUED) is True
        assert can_transition(RequestState.ACTIVATED, RequestState.RESPONDED) is False
