"""Entry points for solving, evaluating and batch-processing issues.

Wires the configuration, the agent client, the per-issue pipeline and the
batch scheduler together. ``configure_logging`` is the only function here
that touches process-wide state; everything else receives its settings
explicitly.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from ai_issue.agent import CopilotClient
from ai_issue.batch import run_batch
from ai_issue.config import load_config
from ai_issue.models import Task, TaskOptions
from ai_issue.pipeline import IssuePipeline

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ai_issue.config import SolverConfig
    from ai_issue.models import BatchResult, TaskOutcome
    from ai_issue.pipeline import ReportValidator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s — %(message)s"

# Agent log levels without a ``logging`` counterpart.
_EXTRA_LEVELS: dict[str, int] = {
    "none": logging.CRITICAL,
    "all": logging.DEBUG,
    "default": logging.INFO,
}


def configure_logging(config: SolverConfig) -> None:
    """Configure Python logging for ai-issue.

    Sets up the ``"ai_issue"`` logger with a console handler and an
    optional file handler. Idempotent: repeated calls do not duplicate
    handlers.

    Args:
        config: Configuration providing ``log_level`` and optional
            ``log_file``.
    """
    level_name = config.log_level.lower()
    level = _EXTRA_LEVELS.get(level_name) or getattr(logging, level_name.upper(), logging.INFO)

    app_logger = logging.getLogger("ai_issue")
    app_logger.setLevel(level)

    if not any(isinstance(h, logging.StreamHandler) for h in app_logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        app_logger.addHandler(console)

    if config.log_file is not None:
        target = str(Path(config.log_file).resolve())
        has_file = any(
            isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == target
            for h in app_logger.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            app_logger.addHandler(file_handler)


# ---------------------------------------------------------------------------
# Client creation
# ---------------------------------------------------------------------------


def create_client(config: SolverConfig, options: TaskOptions | None = None) -> CopilotClient:
    """Create the agent client for a run.

    Args:
        config: Solver configuration.
        options: Run options; ``model_override`` and ``debug`` are applied.

    Returns:
        A configured ``CopilotClient``.
    """
    options = options or TaskOptions()
    return CopilotClient(config, model=options.model_override, debug=options.debug)


def _resolve(config: SolverConfig | None) -> SolverConfig:
    return config if config is not None else load_config()


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def solve_issue(
    issue_id: str,
    options: TaskOptions | None = None,
    config: SolverConfig | None = None,
    *,
    validator: ReportValidator | None = None,
) -> TaskOutcome:
    """Run research, solution and (optionally) evaluation for one issue.

    Args:
        issue_id: Issue identifier.
        options: Run options. Defaults to ``TaskOptions()``.
        config: Solver configuration. Loaded from the user's config file
            when ``None``.
        validator: Optional structural validator for the solution report.

    Returns:
        The success record.

    Raises:
        TaskFailedError: If research or solution fails.
    """
    config = _resolve(config)
    options = options or TaskOptions()
    task = Task(id=issue_id, options=options)
    pipeline = IssuePipeline(
        task, config, create_client(config, options), validator=validator
    )
    return await pipeline.run()


async def evaluate_issue(
    issue_id: str,
    options: TaskOptions | None = None,
    config: SolverConfig | None = None,
) -> str:
    """Evaluate an issue whose analysis-and-solution report already exists.

    Returns:
        Path of the evaluation report.

    Raises:
        FileNotFoundError: If the solution report does not exist.
        AgentInvocationError: If the agent fails.
        ArtifactTimeoutError: If the evaluation report never appears.
    """
    config = _resolve(config)
    options = options or TaskOptions()
    task = Task(id=issue_id, options=options)
    pipeline = IssuePipeline(task, config, create_client(config, options))
    return await pipeline.run_evaluation()


def solve_issue_sync(
    issue_id: str,
    options: TaskOptions | None = None,
    config: SolverConfig | None = None,
) -> TaskOutcome:
    """Synchronous wrapper for :func:`solve_issue` via ``asyncio.run()``."""
    return asyncio.run(solve_issue(issue_id, options, config))


def evaluate_issue_sync(
    issue_id: str,
    options: TaskOptions | None = None,
    config: SolverConfig | None = None,
) -> str:
    """Synchronous wrapper for :func:`evaluate_issue` via ``asyncio.run()``."""
    return asyncio.run(evaluate_issue(issue_id, options, config))


def run_batch_sync(
    issue_ids: Iterable[str],
    options: TaskOptions | None = None,
    config: SolverConfig | None = None,
) -> BatchResult:
    """Run a batch of issues to completion via ``asyncio.run()``.

    Args:
        issue_ids: Issues to process, in admission order.
        options: Options shared by every task, including the concurrency
            cap.
        config: Solver configuration; loaded when ``None``.

    Returns:
        The aggregated ``BatchResult``.
    """
    config = _resolve(config)
    options = options or TaskOptions()
    client = create_client(config, options)
    return asyncio.run(run_batch(list(issue_ids), config, options, client=client))
