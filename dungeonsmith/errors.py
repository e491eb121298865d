"""Failure taxonomy shared by the graph helpers and the placement engine."""

from dataclasses import dataclass, field
from enum import Enum


class FailureKind(Enum):
    """Why a solve attempt (or one search step) failed."""

    CONFIGURATION_SPACE_EMPTY = "configuration_space_empty"
    """No legal offset exists for a template pair, or for one docking depth."""

    SOCKET_EXHAUSTED = "socket_exhausted"
    """No free socket / template combination remained to try."""

    OVERLAP_REJECTED = "overlap_rejected"
    """A candidate overlapped already committed geometry."""

    DEADLINE_EXCEEDED = "deadline_exceeded"
    """The wall-clock budget ran out. Not retried within the attempt."""

    INVARIANT_VIOLATION = "invariant_violation"
    """Malformed input. Never backtracked."""

    @property
    def is_recoverable(self) -> bool:
        return self in (
            FailureKind.CONFIGURATION_SPACE_EMPTY,
            FailureKind.SOCKET_EXHAUSTED,
            FailureKind.OVERLAP_REJECTED,
        )


@dataclass
class SolveProgress:
    """Counters reported with every result."""

    nodes_placed: int = 0
    nodes_total: int = 0
    edges_placed: int = 0
    edges_total: int = 0

    def describe(self) -> str:
        return (
            f"Nodes placed {self.nodes_placed}/{self.nodes_total}, "
            f"edges placed {self.edges_placed}/{self.edges_total}."
        )


class PlacementError(Exception):
    """Raised when placement cannot continue. Carries a ``FailureKind``."""

    kind = FailureKind.SOCKET_EXHAUSTED

    def __init__(self, message: str, progress: SolveProgress | None = None):
        super().__init__(message)
        self.message = message
        self.progress = progress


class DeadlineExceededError(PlacementError):
    """Raised when the solve deadline passes. Aborts the whole attempt."""

    kind = FailureKind.DEADLINE_EXCEEDED

    def __init__(self, progress: SolveProgress):
        super().__init__(
            f"Placement time limit exceeded. {progress.describe()}", progress=progress
        )


class InvariantViolationError(PlacementError):
    """Raised for malformed graphs or assignments (caller data errors)."""

    kind = FailureKind.INVARIANT_VIOLATION


@dataclass
class SolveResult:
    """Discriminated outcome of a solve: placements on success, failure otherwise."""

    placements: list = field(default_factory=list)
    """Committed placements in commit order (empty on failure)."""

    failure: FailureKind | None = None
    message: str = ""
    """Human-readable reason naming the last failing edge/node/template."""

    progress: SolveProgress = field(default_factory=SolveProgress)

    seed: int | None = None
    """Seed the attempt ran with."""

    @property
    def success(self) -> bool:
        return self.failure is None

    def raise_for_failure(self) -> None:
        """Re-raise a failed result as the matching ``PlacementError`` subclass."""
        if self.failure is None:
            return
        if self.failure == FailureKind.DEADLINE_EXCEEDED:
            raise DeadlineExceededError(self.progress)
        if self.failure == FailureKind.INVARIANT_VIOLATION:
            raise InvariantViolationError(self.message, progress=self.progress)
        error = PlacementError(self.message, progress=self.progress)
        error.kind = self.failure
        raise error
