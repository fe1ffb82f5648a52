"""Exception hierarchy for the stagegate engine.

Every error raised by the engine derives from StagegateError and carries
its context as attributes, so callers (the orchestrator, the HTTP layer)
can react to the failure without parsing messages.
"""

from typing import Iterable, List, Optional


class StagegateError(Exception):
    """Base class for all engine errors."""


class GateNotSatisfiedError(StagegateError):
    """Raised when a Pass result does not meet the stage's exit conditions.

    Attributes:
        run_id: The run being advanced.
        stage: The stage whose exit conditions were not met.
        reason: Which condition failed (approval or quality gate).
    """

    def __init__(self, run_id: str, stage: str, reason: str):
        self.run_id = run_id
        self.stage = stage
        self.reason = reason
        super().__init__(f"Exit conditions for {stage} not satisfied on run {run_id}: {reason}")


class RunTerminalError(StagegateError):
    """Raised when a transition is attempted on a terminal run."""

    def __init__(self, run_id: str, stage: str):
        self.run_id = run_id
        self.stage = stage
        super().__init__(f"Run {run_id} is terminal at stage {stage}")


class StageMismatchError(StagegateError):
    """Raised when a stage result is applied to a run in a different stage."""

    def __init__(self, run_id: str, expected: str, actual: str):
        self.run_id = run_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Run {run_id} is at stage {expected}, got a result for {actual}"
        )


class RunActiveError(StagegateError):
    """Raised when a run that still has a live driver is resumed."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} is already being driven")


class RunNotFoundError(StagegateError):
    """Raised when a run does not exist.

    Attributes:
        run_id: The run ID that was not found.
    """

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Pipeline run not found: {run_id}")


class VersionConflictError(StagegateError):
    """Raised when optimistic locking detects a concurrent update.

    Attributes:
        run_id: The run with the conflict.
        expected_version: The version that was expected.
        actual_version: The actual stored version, when known.
    """

    def __init__(
        self,
        run_id: str,
        expected_version: int,
        actual_version: Optional[int] = None,
    ):
        self.run_id = run_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        message = f"Version conflict for run {run_id}: expected {expected_version}"
        if actual_version is not None:
            message += f", found {actual_version}"
        super().__init__(message)


class AlreadyResolvedError(StagegateError):
    """Raised when an approval request is resolved a second time."""

    def __init__(self, request_id: str, decision: str):
        self.request_id = request_id
        self.decision = decision
        super().__init__(f"Approval request {request_id} already resolved as {decision}")


class ApprovalNotFoundError(StagegateError):
    """Raised when no approval request matches the given identifier."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Approval request not found: {identifier}")


class RunAbandonedError(StagegateError):
    """Raised inside a run whose abandonment was requested."""

    def __init__(self, run_id: str, reason: str = ""):
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"Run {run_id} abandoned" + (f": {reason}" if reason else ""))


class QualityGateFailedError(StagegateError):
    """Raised when a task's quality-gate run does not pass.

    Attributes:
        task_id: The task whose checks failed.
        check_name: The first failing check, if any ran.
        diagnostics: Captured output of the failing check.
    """

    def __init__(self, task_id: str, check_name: Optional[str], diagnostics: str = ""):
        self.task_id = task_id
        self.check_name = check_name
        self.diagnostics = diagnostics
        failed = check_name or "cancelled"
        super().__init__(f"Quality gate failed for task {task_id}: {failed}")


class CommitPreconditionError(StagegateError):
    """Raised when a commit's preconditions are violated; nothing is committed.

    Attributes:
        task_id: The task that could not be committed.
        problems: Every violated precondition, in check order.
    """

    def __init__(self, task_id: str, problems: Iterable[str]):
        self.task_id = task_id
        self.problems: List[str] = list(problems)
        super().__init__(
            f"Commit preconditions failed for task {task_id}: " + "; ".join(self.problems)
        )


class CommitError(StagegateError):
    """Raised when the version-control commit itself fails."""

    def __init__(self, task_id: str, message: str, original_error: Optional[Exception] = None):
        self.task_id = task_id
        self.message = message
        self.original_error = original_error
        super().__init__(f"Commit failed for task {task_id}: {message}")


class TaskLockedError(StagegateError):
    """Raised when a commit is attempted while another is in flight for the task."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} already has a commit in flight")


class WorkspaceError(StagegateError):
    """Raised when a run's worktree cannot be provisioned."""

    def __init__(self, run_id: str, message: str):
        self.run_id = run_id
        super().__init__(f"Workspace for run {run_id}: {message}")


class ImplementationError(StagegateError):
    """Raised when the implementation agent fails to run a task."""

    def __init__(self, task_id: str, message: str):
        self.task_id = task_id
        self.message = message
        super().__init__(f"Implementation failed for task {task_id}: {message}")


class MalformedArtifactError(StagegateError):
    """Raised when generated content cannot be parsed into an artifact."""

    def __init__(self, stage: str, message: str, cause: Optional[Exception] = None):
        self.stage = stage
        self.message = message
        self.cause = cause
        super().__init__(f"Malformed artifact for {stage}: {message}")


class AuditRecordError(StagegateError):
    """Raised when an audit record violates the record schema."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(f"Invalid audit record for {operation}: {message}")


class DatabaseError(StagegateError):
    """Raised when a database operation fails.

    This exception wraps underlying database errors to provide
    a consistent interface for error handling.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)
