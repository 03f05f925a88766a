"""Shared fixtures for the ai_issue test suite."""

from __future__ import annotations

import asyncio
from pathlib import Path
import re
import sys
import textwrap
from typing import Any

from ai_issue.config import SolverConfig
from ai_issue.errors import AgentInvocationError
from ai_issue.models import AgentPhase, Task, TaskOptions
import pytest

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_config(**overrides: Any) -> SolverConfig:
    """Build a SolverConfig with short timeouts suitable for tests.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed SolverConfig instance.
    """
    defaults: dict[str, Any] = {
        "repo_path": "/repo",
        "report_path": "/tmp/ai-issue-reports",
        "research_timeout_seconds": 1.0,
        "solution_timeout_seconds": 1.0,
        "evaluation_timeout_seconds": 1.0,
        "poll_interval_seconds": 0.01,
        "progress_interval_seconds": 0.05,
    }
    defaults.update(overrides)
    return SolverConfig(**defaults)


def make_task(task_id: str = "123", **option_overrides: Any) -> Task:
    """Build a Task whose options take *option_overrides*.

    Args:
        task_id: Issue identifier.
        **option_overrides: TaskOptions field values to override.

    Returns:
        A fully constructed Task instance.
    """
    return Task(id=task_id, options=TaskOptions(**option_overrides))


_OUTPUT_PATH = re.compile(r"\S*issue-(\S+?)-(research|analysis-and-solution|evaluation)\.md")


def output_path_of(prompt: str) -> Path:
    """Return the last report path mentioned in *prompt*."""
    matches = list(_OUTPUT_PATH.finditer(prompt))
    assert matches, "prompt names no report path"
    return Path(matches[-1].group(0))


# ---------------------------------------------------------------------------
# In-process agent
# ---------------------------------------------------------------------------


class FakeAgent:
    """Stand-in for ``CopilotClient`` that writes the report each prompt asks for.

    Args:
        research_text: Content written for research reports.
        fail: Mapping of task id to the phase in which the agent exits 1.
        no_report: Phases in which the agent exits 0 without writing.
        delay: Seconds each invocation sleeps before writing.

    Attributes:
        calls: (phase, prompt) of every invocation.
        settings: (task id, model, log level) of every invocation.
    """

    def __init__(
        self,
        *,
        research_text: str = "# Issue\n\n**Type**: 🔧 CODE_CHANGE\n",
        fail: dict[str, AgentPhase] | None = None,
        no_report: set[AgentPhase] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.research_text = research_text
        self.fail = fail or {}
        self.no_report = no_report or set()
        self.delay = delay
        self.calls: list[tuple[AgentPhase, str]] = []
        self.settings: list[tuple[str, str | None, str | None]] = []
        self.active = 0
        self.max_active = 0

    def phases(self) -> list[AgentPhase]:
        """Phases invoked so far, in call order."""
        return [phase for phase, _ in self.calls]

    async def invoke(
        self,
        prompt: str,
        phase: AgentPhase,
        *,
        silent: bool = False,
        model: str | None = None,
        log_level: str | None = None,
    ) -> None:
        self.calls.append((phase, prompt))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            path = output_path_of(prompt)
            task_id = _OUTPUT_PATH.search(path.name).group(1)  # type: ignore[union-attr]
            self.settings.append((task_id, model, log_level))
            if self.fail.get(task_id) == phase:
                raise AgentInvocationError("Agent exit code: 1", exit_code=1)
            if phase in self.no_report:
                return
            text = self.research_text if phase is AgentPhase.RESEARCH else f"# {phase} report\n"
            path.write_text(text, encoding="utf-8")
        finally:
            self.active -= 1


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def report_dir(tmp_path: Path) -> Path:
    """Return an existing, empty report directory."""
    path = tmp_path / "reports"
    path.mkdir()
    return path


@pytest.fixture()
def config(report_dir: Path) -> SolverConfig:
    """Return a test config writing reports into ``report_dir``."""
    return make_config(report_path=str(report_dir))


@pytest.fixture()
def fake_agent() -> FakeAgent:
    """Return a well-behaved in-process agent."""
    return FakeAgent()


_FAKE_AGENT_SCRIPT = textwrap.dedent(
    """\
    import os
    import re
    import sys

    args = sys.argv[1:]
    if "--version" in args:
        print("fake-agent 0.0.1")
        sys.exit(0)

    prompt = args[args.index("-p") + 1]
    if prompt.startswith("@"):
        with open(prompt[1:], encoding="utf-8") as fh:
            prompt = fh.read()

    exit_code = int(os.environ.get("FAKE_AGENT_EXIT", "0"))
    if exit_code:
        sys.exit(exit_code)

    paths = re.findall(r"\\S*issue-\\S+?\\.md", prompt)
    with open(paths[-1], "w", encoding="utf-8") as fh:
        fh.write(os.environ.get("FAKE_AGENT_REPORT", "**Type**: CODE_CHANGE\\n"))
    """
)


@pytest.fixture()
def fake_agent_script(tmp_path: Path) -> list[str]:
    """Write a fake agent CLI and return its ``agent_command``.

    The script writes the last report path named in its ``-p`` prompt
    (inline or ``@file``) and exits with ``$FAKE_AGENT_EXIT`` (default 0).
    """
    script = tmp_path / "fake_agent.py"
    script.write_text(_FAKE_AGENT_SCRIPT, encoding="utf-8")
    return [sys.executable, str(script)]
