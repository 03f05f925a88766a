"""Per-issue pipeline: research, classify, solve or guide, evaluate.

``IssuePipeline`` drives one issue through its phases in strict order. Each
agent phase is gated by a report artifact: the next phase starts only after
the previous report is confirmed on disk. The research report is transient
and is deleted once the analysis-and-solution report exists. Evaluation is
advisory; its failures become warnings on an otherwise successful outcome.

State machine::

    RESEARCH -> CLASSIFY -> SOLVE | GUIDE -> [EVALUATE] -> DONE
        |                      |
        +--------> FAILED <----+
"""

from __future__ import annotations

import logging
import re
import time
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from ai_issue.artifacts import (
    artifact_path,
    read_artifact,
    remove_artifact,
    wait_for_artifact,
)
from ai_issue.errors import (
    ArtifactCleanupError,
    ArtifactTimeoutError,
    EvaluationWarning,
    IssueSolverError,
    TaskFailedError,
)
from ai_issue.models import (
    AgentPhase,
    ArtifactKind,
    Classification,
    FailureCause,
    PipelineState,
    TaskOutcome,
)
from ai_issue.prompts import PromptRegistry

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from ai_issue.config import SolverConfig
    from ai_issue.models import Task

logger = logging.getLogger(__name__)

_SEP = "=" * 60

# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_GUIDANCE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\*\*Type\*\*:\s*(?:📖\s*)?GUIDANCE", re.IGNORECASE),
    re.compile(r"Type:\s*(?:📖\s*)?GUIDANCE", re.IGNORECASE),
)


def classify_research(content: str) -> Classification:
    """Derive the branch decision from a research report.

    Looks for an explicit ``**Type**: GUIDANCE`` (or ``Type: GUIDANCE``)
    marker. Anything else, including a missing or unrecognized marker, is
    ``CODE_CHANGE``: most issues need a change, so that is the default.

    This is best-effort text matching over free-form agent output; unusual
    phrasing can misclassify a guidance issue as a code change.

    Args:
        content: Research report text.

    Returns:
        The classification.
    """
    if any(pattern.search(content) for pattern in _GUIDANCE_PATTERNS):
        return Classification.GUIDANCE
    return Classification.CODE_CHANGE


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class AgentInvoker(Protocol):
    """Anything that can run the agent once for a phase (``CopilotClient``)."""

    async def invoke(  # noqa: D102
        self,
        prompt: str,
        phase: AgentPhase,
        *,
        silent: bool = False,
        model: str | None = None,
        log_level: str | None = None,
    ) -> None: ...


@runtime_checkable
class ReportValidator(Protocol):
    """Structural report checker consulted after the solution report appears.

    Returns human-readable problems; an empty list means the report is fine.
    """

    def __call__(self, content: str, kind: ArtifactKind) -> list[str]: ...  # noqa: D102


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class IssuePipeline:
    """State machine for one issue.

    Owns its ``state`` exclusively; nothing else reads or writes it while
    the pipeline runs.

    Attributes:
        task: The issue being processed.
        config: Solver configuration.
        state: Current ``PipelineState``.
        history: Every state entered, in order.
        classification: Set once the research report has been classified.
    """

    def __init__(
        self,
        task: Task,
        config: SolverConfig,
        client: AgentInvoker,
        *,
        prompts: PromptRegistry | None = None,
        validator: ReportValidator | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            task: Issue to process.
            config: Solver configuration (paths, timeouts, intervals).
            client: Agent invoker used for every phase.
            prompts: Template registry; defaults to one honoring
                ``config.template_dir``.
            validator: Optional structural report validator.
        """
        self.task = task
        self.config = config
        self._client = client
        self._prompts = prompts or PromptRegistry(config.template_dir)
        self._validator = validator
        self.state = PipelineState.RESEARCH
        self.history: list[PipelineState] = [PipelineState.RESEARCH]
        self.classification: Classification | None = None

        ext = config.artifact_extension
        self.research_path = artifact_path(config.report_path, task.id, ArtifactKind.RESEARCH, ext)
        self.solution_path = artifact_path(config.report_path, task.id, ArtifactKind.SOLUTION, ext)
        self.evaluation_path = artifact_path(
            config.report_path, task.id, ArtifactKind.EVALUATION, ext
        )

    # -- helpers -----------------------------------------------------------

    @property
    def _silent(self) -> bool:
        return self.task.options.silent

    def _log(self, msg: str, *args: object) -> None:
        """Log progress at INFO, or DEBUG for silent tasks."""
        level = logging.DEBUG if self._silent else logging.INFO
        logger.log(level, "[#%s] " + msg, self.task.id, *args)

    def _enter(self, state: PipelineState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug("[#%s] -> %s", self.task.id, state)

    def _banner(self, title: str) -> None:
        self._log("%s", _SEP)
        self._log("%s", title)
        self._log("%s", _SEP)

    def _progress(self, label: str) -> Callable[[int], None]:
        def _report(elapsed: int) -> None:
            self._log("Waiting for %s... %ds", label, elapsed)

        return _report

    async def _invoke(self, prompt: str, phase: AgentPhase) -> None:
        """Run the agent with this task's own model and debug options."""
        options = self.task.options
        await self._client.invoke(
            prompt,
            phase,
            silent=self._silent,
            model=options.model_override,
            log_level="debug" if options.debug else None,
        )

    async def _await_report(
        self, path: Path, timeout_seconds: float, label: str
    ) -> None:
        """Wait for *path*; raise ``ArtifactTimeoutError`` if it never appears."""
        exists = await wait_for_artifact(
            path,
            timeout_seconds,
            self._progress(label),
            poll_interval=self.config.poll_interval_seconds,
            progress_interval=self.config.progress_interval_seconds,
        )
        if not exists:
            raise ArtifactTimeoutError(str(path), timeout_seconds, label=label.capitalize())

    # -- phases ------------------------------------------------------------

    async def _research(self) -> str:
        """RESEARCH: run the research agent and return the report text."""
        self._banner(f"Phase 1: Deep Research [#{self.task.id}]")
        prompt = self._prompts.get(AgentPhase.RESEARCH).render(
            issue_id=self.task.id,
            issue_url=self.config.issue_url(self.task.id),
            repo_path=self.config.repo_path,
            output_path=str(self.research_path),
        )
        await self._invoke(prompt, AgentPhase.RESEARCH)
        await self._await_report(
            self.research_path, self.config.research_timeout_seconds, "research report"
        )
        self._log("Research report generated: %s", self.research_path)
        return read_artifact(self.research_path)

    def _classify(self, research: str) -> Classification:
        """CLASSIFY: pure branch decision; cannot fail."""
        self._enter(PipelineState.CLASSIFY)
        self.classification = classify_research(research)
        self._log("Type: %s", self.classification)
        return self.classification

    async def _solve(self, classification: Classification, research: str) -> str:
        """SOLVE / GUIDE: run the phase-2 agent and return the report text."""
        if classification is Classification.GUIDANCE:
            self._enter(PipelineState.GUIDE)
            phase = AgentPhase.GUIDANCE
            self._banner(f"Phase 2: Guidance & Explanation [#{self.task.id}]")
        else:
            self._enter(PipelineState.SOLVE)
            phase = AgentPhase.SOLUTION
            self._banner(f"Phase 2: Solution Implementation [#{self.task.id}]")

        prompt = self._prompts.get(phase).render(
            issue_id=self.task.id,
            issue_url=self.config.issue_url(self.task.id),
            repo_path=self.config.repo_path,
            research_report=research,
            output_path=str(self.solution_path),
        )
        await self._invoke(prompt, phase)
        await self._await_report(
            self.solution_path,
            self.config.solution_timeout_seconds,
            "analysis report",
        )
        self._log("Analysis and solution report generated: %s", self.solution_path)
        return read_artifact(self.solution_path)

    def _cleanup_research(self, warnings: list[str]) -> None:
        """Delete the transient research report; failures are only logged."""
        try:
            remove_artifact(self.research_path)
        except ArtifactCleanupError as exc:
            logger.warning("[#%s] %s", self.task.id, exc)
            warnings.append(str(exc))

    def _validate_solution(self, content: str, warnings: list[str]) -> None:
        if self._validator is None:
            return
        try:
            problems = self._validator(content, ArtifactKind.SOLUTION)
        except Exception:
            logger.warning(
                "[#%s] Report validator raised; skipping validation",
                self.task.id,
                exc_info=True,
            )
            return
        for problem in problems:
            logger.warning("[#%s] Report validation: %s", self.task.id, problem)
            warnings.append(f"Report validation: {problem}")

    async def _evaluate(self) -> str:
        """Run the evaluation agent against the existing solution report.

        Returns:
            Path of the evaluation report.

        Raises:
            FileNotFoundError: If the solution report does not exist.
            AgentInvocationError: If the agent fails.
            ArtifactTimeoutError: If the evaluation report never appears.
        """
        if not self.solution_path.exists():
            msg = (
                f"Analysis and solution report does not exist: {self.solution_path}. "
                f"Run first: ai-issue solve {self.task.id}"
            )
            raise FileNotFoundError(msg)

        self._banner(f"Phase 3: Evaluate Solution [#{self.task.id}]")
        prompt = self._prompts.get(AgentPhase.EVALUATION).render(
            issue_id=self.task.id,
            repo_path=self.config.repo_path,
            solution_report=read_artifact(self.solution_path),
            output_path=str(self.evaluation_path),
        )
        await self._invoke(prompt, AgentPhase.EVALUATION)
        await self._await_report(
            self.evaluation_path,
            self.config.evaluation_timeout_seconds,
            "evaluation report",
        )
        self._log("Evaluation report generated: %s", self.evaluation_path)
        return str(self.evaluation_path)

    async def run_evaluation(self) -> str:
        """Evaluate an already solved issue; errors propagate to the caller.

        Used by the stand-alone ``evaluate`` command. Within ``run()`` the
        same phase is advisory instead.
        """
        self._enter(PipelineState.EVALUATE)
        path = await self._evaluate()
        self._enter(PipelineState.DONE)
        return path

    async def _evaluate_advisory(self, warnings: list[str]) -> str | None:
        self._enter(PipelineState.EVALUATE)
        try:
            return await self._evaluate()
        except (IssueSolverError, OSError) as exc:
            warning = EvaluationWarning(f"Evaluation failed: {exc}")
            logger.warning("[#%s] %s", self.task.id, warning)
            warnings.append(str(warning))
            return None

    # -- entry point -------------------------------------------------------

    async def run(self) -> TaskOutcome:
        """Drive the issue from RESEARCH to DONE.

        Returns:
            The success record, including any advisory warnings.

        Raises:
            TaskFailedError: If research or solution fails (agent error,
                report timeout, missing template or manifest). The original
                error is chained as ``__cause__``.
        """
        start = time.monotonic()
        self._log("Processing Issue #%s", self.task.id)

        try:
            self.research_path.parent.mkdir(parents=True, exist_ok=True)
            research = await self._research()
            classification = self._classify(research)
            solution = await self._solve(classification, research)
        except Exception as exc:
            failed_in = self.state
            self._enter(PipelineState.FAILED)
            cause = FailureCause(phase=failed_in, kind=type(exc).__name__, message=str(exc))
            raise TaskFailedError(cause) from exc

        warnings: list[str] = []
        self._cleanup_research(warnings)
        self._validate_solution(solution, warnings)

        evaluation_path: str | None = None
        if self.task.options.skip_evaluation:
            self._log("Evaluation skipped")
        else:
            evaluation_path = await self._evaluate_advisory(warnings)

        self._enter(PipelineState.DONE)
        duration = time.monotonic() - start
        self._log("Completed in %.1fs", duration)
        return TaskOutcome(
            task_id=self.task.id,
            classification=classification,
            solution_path=str(self.solution_path),
            evaluation_path=evaluation_path,
            warnings=warnings,
            duration_seconds=duration,
        )
