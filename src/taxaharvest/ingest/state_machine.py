"""State machine for cursor-driven enumeration streams."""

from enum import Enum

import structlog


logger = structlog.get_logger()


class StreamState(str, Enum):
    """State of an enumeration stream.

    - IDLE: Between pages
    - FETCHING: Page request in progress
    - COMMITTING: Persisting page rows and cursor
    - EXHAUSTED: Final page seen or limit reached
    - FAILED: Unrecoverable page error
    """

    IDLE = "IDLE"
    FETCHING = "FETCHING"
    COMMITTING = "COMMITTING"
    EXHAUSTED = "EXHAUSTED"
    FAILED = "FAILED"


# Valid state transitions
VALID_TRANSITIONS: dict[StreamState, set[StreamState]] = {
    StreamState.IDLE: {
        StreamState.FETCHING,
        StreamState.EXHAUSTED,
        StreamState.FAILED,
    },
    # Timeout-class failures return to IDLE to retry the same position
    StreamState.FETCHING: {
        StreamState.COMMITTING,
        StreamState.IDLE,
        StreamState.EXHAUSTED,
        StreamState.FAILED,
    },
    StreamState.COMMITTING: {
        StreamState.IDLE,
        StreamState.EXHAUSTED,
        StreamState.FAILED,
    },
    StreamState.EXHAUSTED: set(),  # Terminal state
    StreamState.FAILED: set(),  # Terminal state
}


class CursorStateError(Exception):
    """Raised when an invalid stream state transition is attempted."""

    def __init__(
        self, stream: str, from_state: StreamState, to_state: StreamState
    ) -> None:
        """Initialize the transition error.

        Args:
            stream: Cursor key of the stream.
            from_state: Current state.
            to_state: Attempted target state.
        """
        self.stream = stream
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition for stream '{stream}': "
            f"{from_state.value} -> {to_state.value}"
        )


class StreamStateMachine:
    """Tracks the lifecycle of one enumeration stream run."""

    def __init__(self, stream: str, run_id: str) -> None:
        """Initialize in IDLE.

        Args:
            stream: Cursor key of the stream.
            run_id: Identifier for the current run.
        """
        self._stream = stream
        self._state = StreamState.IDLE
        self._log = logger.bind(component="cursor", run_id=run_id, stream=stream)

    @property
    def state(self) -> StreamState:
        """Get the current state."""
        return self._state

    @property
    def is_terminal(self) -> bool:
        """Check if current state is terminal."""
        return self._state in (StreamState.EXHAUSTED, StreamState.FAILED)

    def can_transition(self, to_state: StreamState) -> bool:
        """Check if transition to the given state is valid.

        Args:
            to_state: Target state.

        Returns:
            True if transition is valid.
        """
        return to_state in VALID_TRANSITIONS.get(self._state, set())

    def transition(self, to_state: StreamState) -> None:
        """Transition to a new state.

        Args:
            to_state: Target state.

        Raises:
            CursorStateError: If the transition is invalid.
        """
        if not self.can_transition(to_state):
            self._log.error(
                "invariant_violation",
                error_type="invalid_cursor_transition",
                from_state=self._state.value,
                to_state=to_state.value,
            )
            raise CursorStateError(self._stream, self._state, to_state)

        from_state = self._state
        self._state = to_state
        self._log.debug(
            "cursor_state_transition",
            from_state=from_state.value,
            to_state=to_state.value,
        )
