"""Error types raised by the orchestration core."""


class OrchestratorError(Exception):
    """Base class for orchestration errors."""


class TicketNotFound(OrchestratorError):
    """Raised when a ticket id has no record."""


class WorkspaceAlreadyExists(OrchestratorError):
    """Raised when a ticket already has a workspace on disk."""


class WorkspaceNotFound(OrchestratorError):
    """Raised when a ticket has no workspace on disk."""


class SpawnFailure(OrchestratorError):
    """Raised when a worker process cannot be launched."""

    def __init__(self, message: str, *, command: list[str] | None = None) -> None:
        super().__init__(message)
        self.command = command or []


class NoActiveJob(OrchestratorError):
    """Raised when resume or kill targets a ticket without a matching job."""


class IterationBudgetExhausted(OrchestratorError):
    """The continuation loop ran out of iterations without a sentinel.

    Handled as a blocking condition inside the orchestrator; never raised to
    callers.
    """

    def __init__(self, max_iterations: int) -> None:
        super().__init__(
            f"Reached maximum iterations ({max_iterations}). "
            "Please review progress and provide guidance."
        )
        self.max_iterations = max_iterations


class IterationTimeout(OrchestratorError):
    """Raised when one worker iteration exceeds its time limit."""
