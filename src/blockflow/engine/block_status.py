"""Block and run status enums for the executor state machine."""

from enum import Enum


class BlockStatus(str, Enum):
    """
    Per-block execution states recorded in ExecutionContext.block_states.

    Pruned blocks never appear in block_states, so there is no "skipped" state.
    """

    RUNNING = "running"
    """Handler dispatched, result not yet recorded."""

    COMPLETED = "completed"
    """Handler returned an output."""

    ERROR = "error"
    """Validation failed or the handler raised."""

    CANCELLED = "cancelled"
    """A controller stopped early because the run was cancelled."""

    def is_running(self) -> bool:
        """Check if the block is still executing."""
        return self == BlockStatus.RUNNING

    def is_completed(self) -> bool:
        """Check if the block completed successfully."""
        return self == BlockStatus.COMPLETED

    def is_error(self) -> bool:
        """Check if the block failed."""
        return self == BlockStatus.ERROR

    def is_terminal(self) -> bool:
        """Check if the block reached a final state."""
        return self != BlockStatus.RUNNING


class RunStatus(str, Enum):
    """
    Top-level executor lifecycle: Idle -> Running -> {Completed, Error, Cancelled}.
    """

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        """Check if the run has finished."""
        return self in (RunStatus.COMPLETED, RunStatus.ERROR, RunStatus.CANCELLED)

    def can_transition_to(self, target: "RunStatus") -> bool:
        """Check whether the state machine allows moving to target."""
        if self == RunStatus.IDLE:
            return target == RunStatus.RUNNING
        if self == RunStatus.RUNNING:
            return target.is_terminal()
        return False
