"""Core data models for the ai-issue pipeline.

Defines the enums and Pydantic models shared by the agent client, the
per-issue state machine, and the batch scheduler. Every model except
``BatchResult`` is frozen: a task's options, its classification, and its
recorded outcome never change once created.
"""

from __future__ import annotations

from enum import StrEnum
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ai_issue.errors import TemplateNotFoundError

_PLACEHOLDER: re.Pattern[str] = re.compile(r"\{(\w+)\}")


class PipelineState(StrEnum):
    """State of a single issue pipeline.

    ``DONE`` and ``FAILED`` are terminal. ``FAILED`` is only reachable from
    ``RESEARCH``, ``SOLVE`` or ``GUIDE``; evaluation never fails a task.
    """

    RESEARCH = "research"
    CLASSIFY = "classify"
    SOLVE = "solve"
    GUIDE = "guide"
    EVALUATE = "evaluate"
    DONE = "done"
    FAILED = "failed"


class AgentPhase(StrEnum):
    """Key under which prompt templates and capability manifests are resolved."""

    RESEARCH = "research"
    SOLUTION = "solution"
    GUIDANCE = "guidance"
    EVALUATION = "evaluation"


class ArtifactKind(StrEnum):
    """Kind of report file written by the agent for one phase."""

    RESEARCH = "research"
    SOLUTION = "solution"
    EVALUATION = "evaluation"


class Classification(StrEnum):
    """Branch decision derived from the research report."""

    CODE_CHANGE = "CODE_CHANGE"
    GUIDANCE = "GUIDANCE"


class PromptTemplate(BaseModel):
    """A phase prompt loaded from YAML.

    Attributes:
        phase: Phase the template is used for.
        template: Template text with ``{variable}`` placeholders.
        variables: Names every ``render`` call must supply.
    """

    model_config = ConfigDict(frozen=True)

    phase: AgentPhase
    template: str
    variables: list[str]

    def render(self, **kwargs: str) -> str:
        """Substitute *kwargs* into the template.

        Only the declared variables are substituted, so literal braces in
        embedded report content survive untouched.

        Raises:
            TemplateNotFoundError: If a declared variable is missing from
                *kwargs*.
        """
        missing = [v for v in self.variables if v not in kwargs]
        if missing:
            msg = f"Missing variables for {self.phase} template: {missing}"
            raise TemplateNotFoundError(
                msg, diagnostics={"phase": str(self.phase), "missing": missing}
            )
        values = {name: str(kwargs[name]) for name in self.variables}
        return _PLACEHOLDER.sub(
            lambda m: values.get(m.group(1), m.group(0)), self.template
        )


class TaskOptions(BaseModel):
    """Per-run options shared by every task of a batch.

    Attributes:
        concurrency: Maximum number of issues processed at once (N).
        skip_evaluation: Skip the advisory evaluation phase.
        silent: Suppress agent process output and demote progress logs.
        debug: Log agent command lines and run the agent at debug level.
        model_override: Model identifier replacing ``SolverConfig.model``.
    """

    model_config = ConfigDict(frozen=True)

    concurrency: int = 3
    skip_evaluation: bool = False
    silent: bool = False
    debug: bool = False
    model_override: str | None = None

    @field_validator("concurrency")
    @classmethod
    def _must_be_positive(cls, v: int) -> int:
        """Validate that the concurrency cap is >= 1."""
        if v < 1:
            msg = "concurrency must be >= 1"
            raise ValueError(msg)
        return v


class Task(BaseModel):
    """One issue to drive through the pipeline.

    Attributes:
        id: Opaque issue identifier (e.g. an issue number).
        options: Options in effect for this task.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    options: TaskOptions = Field(default_factory=TaskOptions)

    @field_validator("id")
    @classmethod
    def _must_be_non_empty(cls, v: str) -> str:
        """Reject blank identifiers; they would collide on artifact paths."""
        v = v.strip().lstrip("#")
        if not v:
            msg = "task id must not be empty"
            raise ValueError(msg)
        return v


class Artifact(BaseModel):
    """A report file whose existence signals completion of a phase."""

    model_config = ConfigDict(frozen=True)

    path: str
    kind: ArtifactKind


class FailureCause(BaseModel):
    """Structured cause of a failed task.

    Attributes:
        phase: State the pipeline was in when it failed.
        kind: Name of the error class (e.g. ``"ArtifactTimeoutError"``).
        message: Human-readable error message.
    """

    model_config = ConfigDict(frozen=True)

    phase: PipelineState
    kind: str
    message: str

    def __str__(self) -> str:
        return f"[{self.phase}] {self.kind}: {self.message}"


class TaskOutcome(BaseModel):
    """Record of a task that reached ``DONE``.

    Attributes:
        task_id: Identifier of the completed task.
        state: Always ``PipelineState.DONE``.
        classification: Classification derived from the research report.
        solution_path: Path of the confirmed analysis-and-solution report.
        evaluation_path: Path of the evaluation report, if one was produced.
        warnings: Advisory warnings (evaluation failures, validator findings,
            cleanup problems).
        duration_seconds: Wall-clock time from start to ``DONE``.
    """

    model_config = ConfigDict(frozen=True)

    task_id: str
    state: PipelineState = PipelineState.DONE
    classification: Classification
    solution_path: str
    evaluation_path: str | None = None
    warnings: list[str] = []
    duration_seconds: float = 0.0


class TaskFailure(BaseModel):
    """Record of a task that ended in ``FAILED``.

    Attributes:
        task_id: Identifier of the failed task.
        cause: Phase, error kind and message.
        duration_seconds: Wall-clock time until the failure.
        artifacts: Which artifacts existed at failure time, keyed by kind.
        traceback: Formatted traceback of the underlying error, if any.
    """

    model_config = ConfigDict(frozen=True)

    task_id: str
    cause: FailureCause
    duration_seconds: float
    artifacts: dict[str, bool] = {}
    traceback: str | None = None


class BatchResult(BaseModel):
    """Aggregated result of a batch run.

    Built incrementally by the scheduler as tasks settle, so it is the one
    model in this module that is not frozen.

    Attributes:
        succeeded: Ids of tasks that reached ``DONE``, in completion order.
        failed: Failure records, in completion order.
        outcomes: Success records, in completion order.
        log_path: Path of the append-only batch log.
        concurrency: Concurrency cap the batch ran with.
    """

    model_config = ConfigDict(frozen=False)

    succeeded: list[str] = []
    failed: list[TaskFailure] = []
    outcomes: list[TaskOutcome] = []
    log_path: str = ""
    concurrency: int = 1

    @property
    def attempted(self) -> int:
        """Number of tasks that settled (success or failure)."""
        return len(self.succeeded) + len(self.failed)

    @property
    def warnings(self) -> dict[str, list[str]]:
        """Warnings of successful tasks, keyed by task id (empty lists omitted)."""
        return {o.task_id: o.warnings for o in self.outcomes if o.warnings}

    @property
    def ok(self) -> bool:
        """Whether every attempted task succeeded."""
        return not self.failed
