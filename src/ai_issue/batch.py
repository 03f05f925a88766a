"""Bounded-concurrency batch scheduler and the append-only batch log.

``run_batch`` keeps an ordered backlog of tasks and an active set of at
most N running pipelines. It admits tasks from the front of the backlog
until the active set is full, then waits for the first one to finish.
Each pipeline runs inside its own wrapper coroutine that records the
outcome, so one task's failure never reaches another task or the loop.
"""

from __future__ import annotations

import asyncio
import collections
from datetime import UTC, datetime
import json
import logging
from pathlib import Path
import time
import traceback
from typing import TYPE_CHECKING, Protocol

from ai_issue.agent import CopilotClient
from ai_issue.artifacts import artifact_path, snapshot_artifacts
from ai_issue.errors import TaskFailedError
from ai_issue.models import (
    ArtifactKind,
    BatchResult,
    FailureCause,
    PipelineState,
    Task,
    TaskFailure,
    TaskOptions,
    TaskOutcome,
)
from ai_issue.pipeline import AgentInvoker, IssuePipeline

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from ai_issue.config import SolverConfig

logger = logging.getLogger(__name__)

_RULE = "=" * 80
_THIN_RULE = "-" * 80


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


# ---------------------------------------------------------------------------
# Batch log
# ---------------------------------------------------------------------------


class BatchLog:
    """Append-only text log of one batch run.

    Every entry is written with a single ``write()`` on a file opened in
    append mode, so entries from concurrently finishing tasks never
    interleave within one event loop. Write failures never propagate to
    the scheduler.

    Attributes:
        path: Location of the log file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def create(cls, log_dir: str | Path) -> BatchLog:
        """Create a log named ``batch-<timestamp>.log`` inside *log_dir*."""
        stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S-%f")
        return cls(Path(log_dir) / f"batch-{stamp}.log")

    def _append(self, entry: str) -> None:
        """Append *entry*; a failed write is logged and the entry dropped."""
        try:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(entry)
        except OSError as exc:
            logger.warning("Failed to write batch log %s: %s", self.path, exc)

    def header(self, task_ids: list[str], concurrency: int) -> None:
        """Write the run header (issues and concurrency)."""
        self._append(
            f"Batch Processing Log - {_now()}\n"
            f"Issues: {', '.join(task_ids)}\n"
            f"Concurrency: {concurrency}\n"
            f"{_RULE}\n\n"
        )

    def task_started(self, task: Task, index: int, total: int) -> None:
        """Write the start entry of one task with its option snapshot."""
        options = json.dumps(task.options.model_dump(mode="json"), sort_keys=True)
        self._append(
            f"\n{_RULE}\n"
            f"ISSUE #{task.id} [{index}/{total}]\n"
            f"{_RULE}\n"
            f"Started at: {_now()}\n"
            f"Options: {options}\n"
            f"{_THIN_RULE}\n"
        )

    def task_succeeded(self, outcome: TaskOutcome) -> None:
        """Write the completion entry of a successful task."""
        lines = [
            f"{_THIN_RULE}",
            f"ISSUE #{outcome.task_id}",
            f"Completed at: {_now()}",
            f"Duration: {outcome.duration_seconds:.1f}s",
            "Status: ✅ SUCCESS",
            f"Type: {outcome.classification}",
        ]
        lines.extend(f"Warning: {w}" for w in outcome.warnings)
        self._append("\n".join(lines) + "\n")

    def task_failed(self, failure: TaskFailure, report_dir: str | Path, extension: str = "md") -> None:
        """Write the completion entry of a failed task with diagnostics."""
        lines = [
            f"{_THIN_RULE}",
            f"ISSUE #{failure.task_id}",
            f"Completed at: {_now()}",
            f"Duration: {failure.duration_seconds:.1f}s",
            "Status: ❌ FAILED",
            f"Phase: {failure.cause.phase}",
            f"Error Kind: {failure.cause.kind}",
            "",
            "Error Message:",
            failure.cause.message,
        ]
        if failure.traceback:
            lines += ["", "Stack Trace:", failure.traceback.rstrip()]
        lines += ["", "Generated Files:"]
        for kind, exists in failure.artifacts.items():
            path = artifact_path(report_dir, failure.task_id, ArtifactKind(kind), extension)
            status = "✅ EXISTS" if exists else "❌ MISSING"
            lines.append(f"  {kind.capitalize()}: {status} ({path})")
        self._append("\n".join(lines) + "\n")

    def summary(self, result: BatchResult, total: int) -> None:
        """Write the final summary."""
        lines = [
            "",
            _RULE,
            "",
            "Batch Processing Summary",
            f"Total: {total}",
            f"Success: {len(result.succeeded)}",
            f"Failed: {len(result.failed)}",
        ]
        lines.extend(f"  - #{f.task_id}: {f.cause}" for f in result.failed)
        lines.append(f"Completed at: {_now()}")
        self._append("\n".join(lines) + "\n")


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class PipelineLike(Protocol):
    """What the scheduler needs from a per-task pipeline."""

    state: PipelineState

    async def run(self) -> TaskOutcome: ...  # noqa: D102


def _normalize_tasks(tasks: Iterable[Task | str], options: TaskOptions) -> list[Task]:
    """Turn ids into tasks and drop duplicate ids, keeping the first."""
    seen: set[str] = set()
    unique: list[Task] = []
    for item in tasks:
        task = item if isinstance(item, Task) else Task(id=str(item), options=options)
        if task.id in seen:
            logger.warning("Duplicate issue #%s in batch; processing it once", task.id)
            continue
        seen.add(task.id)
        unique.append(task)
    return unique


def _make_failure(
    task: Task,
    exc: Exception,
    phase: PipelineState,
    duration: float,
    config: SolverConfig,
) -> TaskFailure:
    """Build the failure record for *task*, snapshotting its artifacts."""
    if isinstance(exc, TaskFailedError):
        cause = exc.cause
        root: BaseException = exc.__cause__ or exc
    else:
        cause = FailureCause(phase=phase, kind=type(exc).__name__, message=str(exc))
        root = exc
    return TaskFailure(
        task_id=task.id,
        cause=cause,
        duration_seconds=duration,
        artifacts=snapshot_artifacts(config.report_path, task.id, config.artifact_extension),
        traceback="".join(traceback.format_exception(root)),
    )


async def run_batch(
    tasks: Iterable[Task | str],
    config: SolverConfig,
    options: TaskOptions | None = None,
    *,
    client: AgentInvoker | None = None,
    pipeline_factory: Callable[[Task], PipelineLike] | None = None,
    log_dir: str | Path | None = None,
) -> BatchResult:
    """Process many issues with at most ``options.concurrency`` at once.

    Tasks are admitted in backlog order; completion order is whatever
    finishes first. Every ``Exception`` raised by a pipeline is recorded
    as a ``TaskFailure`` and the batch continues. Cancellation of the
    batch cancels the active pipelines, which kill their agent processes.

    Args:
        tasks: Tasks, or bare issue ids run with *options*.
        config: Solver configuration.
        options: Options for bare ids; also supplies the concurrency cap.
        client: Agent invoker shared by all pipelines. Built from *config*
            and *options* when omitted.
        pipeline_factory: Builds the pipeline for one task. Defaults to
            ``IssuePipeline`` with *client*.
        log_dir: Directory for the batch log; defaults to
            ``{report_path}/logs``.

    Returns:
        The aggregated ``BatchResult``.
    """
    options = options or TaskOptions()
    concurrency = options.concurrency
    queue = _normalize_tasks(tasks, options)
    total = len(queue)

    if pipeline_factory is not None:
        factory = pipeline_factory
    else:
        shared_client = client or CopilotClient(
            config, model=options.model_override, debug=options.debug
        )

        def factory(task: Task) -> PipelineLike:
            return IssuePipeline(task, config, shared_client)

    batch_log = BatchLog.create(log_dir or Path(config.report_path) / "logs")
    result = BatchResult(log_path=str(batch_log.path), concurrency=concurrency)
    batch_log.header([t.id for t in queue], concurrency)

    logger.info("Total %d issues to process (%d concurrent)", total, concurrency)
    logger.info("Log file: %s", batch_log.path)

    running: set[str] = set()

    async def _process(index: int, task: Task) -> None:
        running.add(task.id)
        batch_log.task_started(task, index, total)
        logger.info("[%d/%d] Starting Issue #%s", index, total, task.id)
        start = time.monotonic()
        pipeline: PipelineLike | None = None
        try:
            pipeline = factory(task)
            outcome = await pipeline.run()
        except Exception as exc:
            duration = time.monotonic() - start
            phase = getattr(pipeline, "state", PipelineState.RESEARCH)
            failure = _make_failure(task, exc, phase, duration, config)
            result.failed.append(failure)
            batch_log.task_failed(failure, config.report_path, config.artifact_extension)
            logger.error(
                "[%d/%d] Issue #%s failed after %.1fs: %s",
                index,
                total,
                task.id,
                duration,
                failure.cause,
            )
        else:
            result.succeeded.append(task.id)
            result.outcomes.append(outcome)
            batch_log.task_succeeded(outcome)
            logger.info(
                "[%d/%d] Issue #%s completed in %.1fs",
                index,
                total,
                task.id,
                outcome.duration_seconds,
            )
            for warning in outcome.warnings:
                logger.warning("Issue #%s: %s", task.id, warning)
        finally:
            running.discard(task.id)
            if running:
                logger.info(
                    "Progress: %d/%d | Active: #%s",
                    result.attempted,
                    total,
                    ", #".join(sorted(running)),
                )

    backlog = collections.deque(enumerate(queue, start=1))
    active: set[asyncio.Task[None]] = set()
    try:
        while backlog or active:
            while backlog and len(active) < concurrency:
                index, task = backlog.popleft()
                active.add(asyncio.create_task(_process(index, task), name=f"issue-{task.id}"))
            done, active = await asyncio.wait(active, return_when=asyncio.FIRST_COMPLETED)
            for finished in done:
                finished.result()
    finally:
        for pending in active:
            pending.cancel()
        if active:
            await asyncio.gather(*active, return_exceptions=True)

    batch_log.summary(result, total)
    _log_summary(result, total)
    return result


def _log_summary(result: BatchResult, total: int) -> None:
    sep = "=" * 60
    logger.info(sep)
    logger.info("Batch Processing Statistics")
    logger.info(sep)
    logger.info(
        "Total: %d | Success: %d | Failed: %d | Concurrency: %d",
        total,
        len(result.succeeded),
        len(result.failed),
        result.concurrency,
    )
    for failure in result.failed:
        logger.error("  - #%s: %s", failure.task_id, failure.cause)
    if result.failed:
        logger.info("Detailed error logs: %s", result.log_path)
