"""Tests for the agent subprocess client.

Unit tests patch ``asyncio.create_subprocess_exec``; integration tests run
a fake agent script with the current interpreter.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
import sys
import tempfile
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

from ai_issue.agent import (
    _MAX_INLINE_PROMPT_BYTES,
    CopilotClient,
    check_agent_cli,
    prompt_argument,
)
from ai_issue.errors import AgentInvocationError
from ai_issue.models import AgentPhase
import pytest

from tests.conftest import make_config

_MODULE = "ai_issue.agent"

_LARGE_PROMPT = "x" * (_MAX_INLINE_PROMPT_BYTES + 1)

# ---------------------------------------------------------------------------
# Reusable test helpers
# ---------------------------------------------------------------------------


def _make_proc(returncode: int = 0) -> MagicMock:
    """Build a fake asyncio Process whose wait() returns *returncode*."""
    proc = MagicMock()
    proc.returncode = returncode
    proc.wait = AsyncMock(return_value=returncode)
    return proc


def _make_client(tmp_path: Path, **overrides: Any) -> CopilotClient:
    """Build a client writing reports under *tmp_path*."""
    config = make_config(repo_path=str(tmp_path / "repo"), report_path=str(tmp_path), **overrides)
    return CopilotClient(config)


@pytest.fixture()
def private_tempdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point ``tempfile`` at a private directory so prompt files can be counted."""
    path = tmp_path / "tmp"
    path.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(path))
    return path


# ===========================================================================
# Prompt argument
# ===========================================================================


@pytest.mark.unit
class TestPromptArgument:
    """Prompts go inline or through a temporary file that is always removed."""

    @pytest.mark.skipif(os.name == "nt", reason="Windows always uses a prompt file")
    def test_short_prompt_inline(self) -> None:
        """A short prompt is passed as-is."""
        with prompt_argument("hello") as arg:
            assert arg == "hello"

    def test_large_prompt_uses_file(self, private_tempdir: Path) -> None:
        """A prompt over the inline limit is written to copilot-prompt-*."""
        with prompt_argument(_LARGE_PROMPT) as arg:
            assert arg.startswith("@")
            path = Path(arg[1:])
            assert path.name.startswith("copilot-prompt-")
            assert path.read_text(encoding="utf-8") == _LARGE_PROMPT
        assert not path.exists()

    def test_file_removed_on_exception(self, private_tempdir: Path) -> None:
        """The prompt file is removed when the body raises."""
        with pytest.raises(RuntimeError), prompt_argument("p", force_file=True):
            raise RuntimeError("boom")
        assert list(private_tempdir.iterdir()) == []

    def test_write_failure_raises(self) -> None:
        """A prompt file that cannot be created raises AgentInvocationError."""
        with (
            patch(f"{_MODULE}.tempfile.mkstemp", side_effect=OSError("disk full")),
            pytest.raises(AgentInvocationError, match="Failed to write prompt file"),
            prompt_argument("p", force_file=True),
        ):
            pass


# ===========================================================================
# Command line
# ===========================================================================


@pytest.mark.unit
class TestBuildCommand:
    """build_command assembles the agent arguments in order."""

    def test_arguments(self, tmp_path: Path) -> None:
        """Model, tool grant, dirs, log level, manifest and prompt are passed."""
        client = _make_client(tmp_path, model="m-1")
        with patch(f"{_MODULE}.shutil.which", return_value=None):
            cmd = client.build_command("PROMPT", AgentPhase.RESEARCH)

        assert cmd[0] == "copilot"
        assert cmd[cmd.index("--model") + 1] == "m-1"
        assert "--allow-all-tools" in cmd
        add_dirs = [cmd[i + 1] for i, a in enumerate(cmd) if a == "--add-dir"]
        assert add_dirs == [str(tmp_path / "repo"), str(tmp_path)]
        assert cmd[cmd.index("--log-level") + 1] == "info"
        assert "--no-color" in cmd
        manifest = cmd[cmd.index("--additional-mcp-config") + 1]
        assert manifest.startswith("@") and manifest.endswith("default.json")
        assert cmd[-2:] == ["-p", "PROMPT"]

    def test_debug_client_uses_debug_log_level(self, tmp_path: Path) -> None:
        """A debug client runs the agent at debug level."""
        config = make_config(report_path=str(tmp_path))
        client = CopilotClient(config, debug=True)
        cmd = client.build_command("p", AgentPhase.RESEARCH)
        assert cmd[cmd.index("--log-level") + 1] == "debug"

    def test_per_call_model_override(self, tmp_path: Path) -> None:
        """A per-call model replaces the client's model."""
        client = _make_client(tmp_path, model="m-1")
        cmd = client.build_command("p", AgentPhase.RESEARCH, model="m-2")
        assert cmd[cmd.index("--model") + 1] == "m-2"

    def test_leading_arguments_kept(self, tmp_path: Path) -> None:
        """Extra words of agent_command precede the generated flags."""
        client = _make_client(tmp_path, agent_command=["gh", "copilot"])
        with patch(f"{_MODULE}.shutil.which", return_value="/usr/bin/gh"):
            cmd = client.build_command("p", AgentPhase.RESEARCH)
        assert cmd[:3] == ["/usr/bin/gh", "copilot", "--model"]


# ===========================================================================
# invoke() with a patched process
# ===========================================================================


@pytest.mark.unit
class TestInvoke:
    """invoke() maps process results to success or AgentInvocationError."""

    async def test_exit_zero_succeeds(self, tmp_path: Path) -> None:
        """Exit code 0 returns None and inherits the console."""
        client = _make_client(tmp_path)
        with patch(
            f"{_MODULE}.asyncio.create_subprocess_exec",
            new_callable=AsyncMock,
            return_value=_make_proc(0),
        ) as mock_exec:
            await client.invoke("p", AgentPhase.RESEARCH)
        kwargs = mock_exec.call_args.kwargs
        assert kwargs["stdout"] is None
        assert kwargs["stderr"] is None

    async def test_silent_discards_output(self, tmp_path: Path) -> None:
        """silent=True sends the child's output to DEVNULL."""
        client = _make_client(tmp_path)
        with patch(
            f"{_MODULE}.asyncio.create_subprocess_exec",
            new_callable=AsyncMock,
            return_value=_make_proc(0),
        ) as mock_exec:
            await client.invoke("p", AgentPhase.RESEARCH, silent=True)
        kwargs = mock_exec.call_args.kwargs
        assert kwargs["stdout"] == asyncio.subprocess.DEVNULL
        assert kwargs["stderr"] == asyncio.subprocess.DEVNULL

    async def test_nonzero_exit_raises(self, tmp_path: Path) -> None:
        """A nonzero exit raises with the exit code."""
        client = _make_client(tmp_path)
        with (
            patch(
                f"{_MODULE}.asyncio.create_subprocess_exec",
                new_callable=AsyncMock,
                return_value=_make_proc(2),
            ),
            pytest.raises(AgentInvocationError, match="Agent exit code: 2") as exc_info,
        ):
            await client.invoke("p", AgentPhase.SOLUTION)
        assert exc_info.value.exit_code == 2

    async def test_spawn_failure_raises(self, tmp_path: Path) -> None:
        """An OSError on spawn raises with no exit code."""
        client = _make_client(tmp_path)
        with (
            patch(
                f"{_MODULE}.asyncio.create_subprocess_exec",
                new_callable=AsyncMock,
                side_effect=FileNotFoundError("no such file"),
            ),
            pytest.raises(AgentInvocationError, match="Failed to start agent") as exc_info,
        ):
            await client.invoke("p", AgentPhase.RESEARCH)
        assert exc_info.value.exit_code is None

    async def test_prompt_file_removed_after_failure(
        self, tmp_path: Path, private_tempdir: Path
    ) -> None:
        """A large prompt's file is removed even when the agent fails."""
        client = _make_client(tmp_path)
        with (
            patch(
                f"{_MODULE}.asyncio.create_subprocess_exec",
                new_callable=AsyncMock,
                return_value=_make_proc(1),
            ) as mock_exec,
            pytest.raises(AgentInvocationError),
        ):
            await client.invoke(_LARGE_PROMPT, AgentPhase.RESEARCH)
        assert mock_exec.call_args.args[-1].startswith("@")
        assert list(private_tempdir.iterdir()) == []

    async def test_debug_logs_command_without_prompt(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Debug mode logs the command line but not the prompt text."""
        config = make_config(report_path=str(tmp_path))
        client = CopilotClient(config, debug=True)
        with (
            patch(
                f"{_MODULE}.asyncio.create_subprocess_exec",
                new_callable=AsyncMock,
                return_value=_make_proc(0),
            ),
            caplog.at_level(logging.INFO, logger=_MODULE),
        ):
            await client.invoke("SECRET PROMPT", AgentPhase.RESEARCH)
        assert "--allow-all-tools" in caplog.text
        assert "SECRET PROMPT" not in caplog.text


# ===========================================================================
# Real processes
# ===========================================================================


@pytest.mark.integration
class TestInvokeProcess:
    """invoke() against a real child process."""

    async def test_fake_agent_writes_report(
        self, tmp_path: Path, fake_agent_script: list[str]
    ) -> None:
        """The agent runs and writes the report named in the prompt."""
        client = _make_client(tmp_path, agent_command=fake_agent_script)
        target = tmp_path / "issue-1-research.md"
        await client.invoke(f"Save research report to: {target}", AgentPhase.RESEARCH, silent=True)
        assert target.exists()

    async def test_fake_agent_large_prompt(
        self, tmp_path: Path, fake_agent_script: list[str], private_tempdir: Path
    ) -> None:
        """A large prompt reaches the agent through a file."""
        client = _make_client(tmp_path, agent_command=fake_agent_script)
        target = tmp_path / "issue-2-research.md"
        await client.invoke(f"{_LARGE_PROMPT}\n{target}", AgentPhase.RESEARCH, silent=True)
        assert target.exists()
        assert list(private_tempdir.iterdir()) == []

    async def test_fake_agent_exit_code(
        self,
        tmp_path: Path,
        fake_agent_script: list[str],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A failing agent surfaces its exit code."""
        monkeypatch.setenv("FAKE_AGENT_EXIT", "3")
        client = _make_client(tmp_path, agent_command=fake_agent_script)
        with pytest.raises(AgentInvocationError) as exc_info:
            await client.invoke(str(tmp_path / "issue-3-research.md"), AgentPhase.RESEARCH, silent=True)
        assert exc_info.value.exit_code == 3

    async def test_cancellation_reaps_child(self, tmp_path: Path) -> None:
        """Cancelling invoke() terminates and reaps the agent process."""
        sleeper = [sys.executable, "-c", "import time; time.sleep(30)"]
        client = _make_client(tmp_path, agent_command=sleeper)
        procs: list[asyncio.subprocess.Process] = []
        real_exec = asyncio.create_subprocess_exec

        async def _spawn(*args: Any, **kwargs: Any) -> asyncio.subprocess.Process:
            proc = await real_exec(*args, **kwargs)
            procs.append(proc)
            return proc

        with patch(f"{_MODULE}.asyncio.create_subprocess_exec", side_effect=_spawn):
            task = asyncio.create_task(client.invoke("p", AgentPhase.RESEARCH, silent=True))
            while not procs:
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert procs[0].returncode is not None


@pytest.mark.integration
class TestCheckAgentCli:
    """check_agent_cli reports the agent version or its absence."""

    def test_reports_version(self, fake_agent_script: list[str]) -> None:
        """The first line of --version is returned."""
        config = make_config(agent_command=fake_agent_script)
        assert check_agent_cli(config) == "fake-agent 0.0.1"

    def test_missing_agent(self) -> None:
        """An agent that is not on PATH raises FileNotFoundError."""
        config = make_config(agent_command=["ai-issue-no-such-agent-xyz"])
        with pytest.raises(FileNotFoundError, match="not found on PATH"):
            check_agent_cli(config)
