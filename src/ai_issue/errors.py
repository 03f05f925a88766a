"""Error taxonomy for the ai-issue pipeline.

Phase-level errors terminate only the task that raised them; the batch
scheduler converts them into ``TaskFailure`` records. ``ArtifactCleanupError``
and ``EvaluationWarning`` are advisory and never fail a task.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ai_issue.models import FailureCause


class IssueSolverError(Exception):
    """Base class for pipeline failures with diagnostic context.

    Attributes:
        diagnostics: Structured context (paths, exit codes, timings).
    """

    def __init__(self, message: str, *, diagnostics: dict[str, Any] | None = None) -> None:
        """Initialize with a message and optional structured diagnostics.

        Args:
            message: Human-readable error description.
            diagnostics: Structured context for logs and reports.
        """
        super().__init__(message)
        self.diagnostics: dict[str, Any] = dict(diagnostics or {})


class ConfigError(IssueSolverError):
    """Configuration file or values are invalid."""


class TemplateNotFoundError(IssueSolverError):
    """A phase template or capability manifest is missing or incomplete."""


class AgentInvocationError(IssueSolverError):
    """The agent process exited nonzero or could not be started.

    Attributes:
        exit_code: Process exit code, or ``None`` when the process never ran.
    """

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message, diagnostics={"exit_code": exit_code})
        self.exit_code = exit_code


class ArtifactTimeoutError(IssueSolverError):
    """An expected artifact did not appear before the phase timeout.

    Attributes:
        path: Artifact path that was awaited.
        timeout_seconds: Timeout that elapsed.
    """

    def __init__(self, path: str, timeout_seconds: float, *, label: str = "Report") -> None:
        super().__init__(
            f"{label} not generated at {path} within {timeout_seconds:g}s",
            diagnostics={"path": path, "timeout_seconds": timeout_seconds},
        )
        self.path = path
        self.timeout_seconds = timeout_seconds


class ArtifactCleanupError(IssueSolverError):
    """A transient artifact could not be removed. Logged, never fatal."""


class TaskFailedError(IssueSolverError):
    """Terminal failure of one task, carrying its structured cause.

    Raised by ``IssuePipeline.run`` with the original error chained as
    ``__cause__``.

    Attributes:
        cause: Phase, error kind and message of the failure.
    """

    def __init__(self, cause: FailureCause) -> None:
        super().__init__(str(cause), diagnostics={"phase": str(cause.phase)})
        self.cause = cause


class EvaluationWarning(UserWarning):
    """The advisory evaluation phase failed; the task still succeeds."""
