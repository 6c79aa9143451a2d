"""
Outcome classification and the per-execution lifecycle state machine.

States::

    STAGED -> LAUNCHED -> COMPLETED -> RELEASED
                       -> TIMED_OUT -> RELEASED
           -> LAUNCH_FAILED -> RELEASED
           -> TIMED_OUT -> RELEASED      (deadline already gone before launch)

``RELEASED`` is terminal and reached on every path.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from coderunner.config.logging_config import get_logger

log = get_logger(__name__)

TIMED_OUT_MESSAGE = "Execution timed out"
OOM_MESSAGE = "Execution failed: memory limit exceeded"


class Outcome(str, Enum):
    """How a completed engine call ended."""

    SUCCESS = "success"
    RUNTIME_FAILURE = "runtime_failure"
    TIMED_OUT = "timed_out"


class ExecutionState(str, Enum):
    STAGED = "staged"
    LAUNCHED = "launched"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    LAUNCH_FAILED = "launch_failed"
    RELEASED = "released"


_TRANSITIONS: dict[ExecutionState, frozenset[ExecutionState]] = {
    # A deadline that has already passed at launch time skips straight to TIMED_OUT
    ExecutionState.STAGED: frozenset(
        {
            ExecutionState.LAUNCHED,
            ExecutionState.LAUNCH_FAILED,
            ExecutionState.TIMED_OUT,
            ExecutionState.RELEASED,
        }
    ),
    ExecutionState.LAUNCHED: frozenset(
        {ExecutionState.COMPLETED, ExecutionState.TIMED_OUT, ExecutionState.RELEASED}
    ),
    ExecutionState.COMPLETED: frozenset({ExecutionState.RELEASED}),
    ExecutionState.TIMED_OUT: frozenset({ExecutionState.RELEASED}),
    ExecutionState.LAUNCH_FAILED: frozenset({ExecutionState.RELEASED}),
    ExecutionState.RELEASED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when the lifecycle is driven out of order."""

    pass


class ExecutionTracker:
    """Records the lifecycle of one execution and rejects illegal transitions."""

    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        self.state = ExecutionState.STAGED
        self.history: list[ExecutionState] = [ExecutionState.STAGED]

    def advance(self, new_state: ExecutionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"{self.execution_id}: cannot go from {self.state.value} to {new_state.value}"
            )
        log.debug("%s: %s -> %s", self.execution_id, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    @property
    def released(self) -> bool:
        return self.state is ExecutionState.RELEASED


class ExecutionResult(BaseModel):
    """Captured output and outcome of one execution. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    stdout: str = ""
    stderr: str = ""
    outcome: Outcome
    exit_code: int | None = Field(
        default=None, description="Process exit status; None when the run timed out"
    )
    message: str | None = Field(
        default=None, description="Short human-readable summary of a non-successful run"
    )
    language: str | None = None
    duration_seconds: float = 0.0
    stdout_truncated: bool = False
    stderr_truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def classify(exit_code: int | None, timed_out: bool) -> Outcome:
    """Map a terminal state to an :class:`Outcome`.

    A timeout wins over any exit code observed while tearing the sandbox down.
    """
    if timed_out:
        return Outcome.TIMED_OUT
    if exit_code == 0:
        return Outcome.SUCCESS
    return Outcome.RUNTIME_FAILURE


def describe(outcome: Outcome, exit_code: int | None, oom_killed: bool = False) -> str | None:
    """Return the summary message for an outcome, or None on success."""
    if outcome is Outcome.SUCCESS:
        return None
    if outcome is Outcome.TIMED_OUT:
        return TIMED_OUT_MESSAGE
    if oom_killed:
        return OOM_MESSAGE
    return f"Execution failed: exit status {exit_code}"
