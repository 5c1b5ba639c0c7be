from enum import Enum


class RequestState(str, Enum):
    RECEIVED = "received"
    METADATA_RESOLVED = "metadata_resolved"
    GATE_CHECKED = "gate_checked"
    SUPPRESSED = "suppressed"
    ACTIVATED = "activated"
    COMPLETION_CALLED = "completion_called"
    RESPONDED = "responded"
    JOBS_ENQUEUED = "jobs_enqueued"


VALID_TRANSITIONS = {
    RequestState.RECEIVED: [RequestState.METADATA_RESOLVED],
    RequestState.METADATA_RESOLVED: [RequestState.GATE_CHECKED],
    RequestState.GATE_CHECKED: [RequestState.SUPPRESSED, RequestState.ACTIVATED],
    RequestState.ACTIVATED: [RequestState.COMPLETION_CALLED],
    RequestState.COMPLETION_CALLED: [RequestState.RESPONDED],
    RequestState.RESPONDED: [RequestState.JOBS_ENQUEUED],
    RequestState.SUPPRESSED: [],
    RequestState.JOBS_ENQUEUED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: RequestState, to_state: RequestState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: RequestState, to_state: RequestState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: RequestState, to_state: RequestState) -> RequestState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def is_terminal(state: RequestState) -> bool:
    return not VALID_TRANSITIONS.get(state)


def gate(current_state: RequestState, should_respond: bool) -> RequestState:
    """Fork at the gate: suppressed requests stop, activated ones go on to completion."""
    current_state = transition(current_state, RequestState.GATE_CHECKED)
    target = RequestState.ACTIVATED if should_respond else RequestState.SUPPRESSED
    return transition(current_state, target)
