"""Agent invocation: one external ``copilot`` process per pipeline phase.

``CopilotClient.invoke`` spawns the agent CLI as an asyncio subprocess with
the model, tool and directory grants, log level, phase capability manifest
and prompt, and waits for it to exit. Exit code 0 is the only success
signal; the reports the agent writes are awaited separately by the
pipeline.

Prompts that cannot be passed reliably as a single argument (always on
Windows, elsewhere when they exceed ``_MAX_INLINE_PROMPT_BYTES``) are
written to a temporary file referenced as ``-p @<file>``. The file is
removed on every exit path.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from typing import TYPE_CHECKING

from ai_issue.capabilities import CapabilityRegistry
from ai_issue.errors import AgentInvocationError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from ai_issue.config import SolverConfig
    from ai_issue.models import AgentPhase

logger = logging.getLogger(__name__)

# Linux caps a single argv string at 128 KiB (MAX_ARG_STRLEN).
_MAX_INLINE_PROMPT_BYTES = 100_000
_TERMINATE_GRACE_SECONDS = 5
_PROMPT_FILE_PREFIX = "copilot-prompt-"


def _needs_prompt_file(prompt: str) -> bool:
    """Whether *prompt* must be passed through a temporary file."""
    return os.name == "nt" or len(prompt.encode("utf-8")) > _MAX_INLINE_PROMPT_BYTES


@contextlib.contextmanager
def prompt_argument(prompt: str, *, force_file: bool = False) -> Iterator[str]:
    """Yield the value to pass after ``-p`` for *prompt*.

    Yields the prompt itself when it can be passed inline; otherwise writes
    it to a uniquely named temporary file and yields ``@<path>``. The file
    is deleted when the context exits, whether normally or by exception.

    Args:
        prompt: Full prompt text.
        force_file: Always use a temporary file.

    Raises:
        AgentInvocationError: If the temporary file cannot be written.
    """
    if not (force_file or _needs_prompt_file(prompt)):
        yield prompt
        return

    try:
        fd, name = tempfile.mkstemp(prefix=_PROMPT_FILE_PREFIX, suffix=".md")
    except OSError as exc:
        raise AgentInvocationError(f"Failed to write prompt file: {exc}") from exc
    try:
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(prompt)
        except OSError as exc:
            raise AgentInvocationError(f"Failed to write prompt file: {exc}") from exc
        yield f"@{name}"
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(name)


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """Terminate *proc*, escalating to kill after a grace period, and reap it."""
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE_SECONDS)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


class CopilotClient:
    """Subprocess-based client for the agent CLI in prompt mode.

    Each ``invoke()`` call spawns exactly one process and waits until it has
    exited and been reaped.

    Attributes:
        config: Resolved solver configuration.
        model: Model passed with ``--model``.
        log_level: Log level passed with ``--log-level``.
        debug: Log the full command line of every invocation.
    """

    def __init__(
        self,
        config: SolverConfig,
        *,
        capabilities: CapabilityRegistry | None = None,
        model: str | None = None,
        log_level: str | None = None,
        debug: bool = False,
    ) -> None:
        """Initialize the client.

        Args:
            config: Solver configuration providing the agent command, paths,
                default model and log level.
            capabilities: Capability manifest resolver. Defaults to one
                built from ``config.capability_dir``.
            model: Model override; defaults to ``config.model``.
            log_level: Agent log level override; defaults to
                ``"debug"`` when *debug* is set, else ``config.log_level``.
            debug: Log command lines at INFO level.
        """
        self.config = config
        self.capabilities = capabilities or CapabilityRegistry(config.capability_dir)
        self.model = model or config.model
        self.log_level = log_level or ("debug" if debug else config.log_level)
        self.debug = debug

    def build_command(
        self,
        prompt_arg: str,
        phase: AgentPhase,
        *,
        model: str | None = None,
        log_level: str | None = None,
    ) -> list[str]:
        """Build the agent command line for one phase.

        Args:
            prompt_arg: Inline prompt or ``@<file>`` reference.
            phase: Phase whose capability manifest is granted.
            model: Model for this call only; defaults to ``self.model``.
            log_level: Agent log level for this call only.

        Returns:
            List of command-line arguments, executable first.

        Raises:
            TemplateNotFoundError: If no capability manifest can be resolved.
        """
        executable, *leading = self.config.agent_command
        manifest = self.capabilities.resolve(phase)
        return [
            shutil.which(executable) or executable,
            *leading,
            "--model", model or self.model,
            "--allow-all-tools",
            "--add-dir", self.config.repo_path,
            "--add-dir", self.config.report_path,
            "--log-level", log_level or self.log_level,
            "--no-color",
            "--additional-mcp-config", f"@{manifest}",
            "-p", prompt_arg,
        ]  # fmt: skip

    async def invoke(
        self,
        prompt: str,
        phase: AgentPhase,
        *,
        silent: bool = False,
        model: str | None = None,
        log_level: str | None = None,
    ) -> None:
        """Run the agent once for *phase* and wait for it to exit.

        Args:
            prompt: Full prompt text.
            phase: Phase being executed; selects the capability manifest.
            silent: Discard the agent's stdout/stderr instead of inheriting
                them. Does not change success or failure semantics.
            model: Model override for this invocation.
            log_level: Agent log level override for this invocation.

        Raises:
            AgentInvocationError: If the process exits nonzero or cannot be
                started, or the prompt file cannot be written.
            TemplateNotFoundError: If no capability manifest can be resolved.
        """
        stream = asyncio.subprocess.DEVNULL if silent else None

        with prompt_argument(prompt) as prompt_arg:
            cmd = self.build_command(
                prompt_arg, phase, model=model, log_level=log_level
            )
            if self.debug:
                shown = [*cmd[:-1], prompt_arg if prompt_arg.startswith("@") else "<prompt>"]
                logger.info(
                    "Agent command (%s, %d chars prompt): %s",
                    phase,
                    len(prompt),
                    shlex.join(shown),
                )
                servers = self.capabilities.server_names(phase)
                logger.info("MCP servers for %s: %s", phase, ", ".join(servers) or "(none)")

            try:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=stream,
                    stdout=stream,
                    stderr=stream,
                )
            except OSError as exc:
                raise AgentInvocationError(
                    f"Failed to start agent {cmd[0]!r}: {exc}"
                ) from exc

            try:
                returncode = await proc.wait()
            except asyncio.CancelledError:
                await _terminate(proc)
                raise

        if returncode != 0:
            raise AgentInvocationError(
                f"Agent exit code: {returncode}", exit_code=returncode
            )
        logger.debug("Agent %s phase exited 0", phase)


def check_agent_cli(config: SolverConfig) -> str:
    """Verify that the agent CLI is installed and report its version.

    Args:
        config: Configuration providing ``agent_command``.

    Returns:
        The first line of ``<agent> --version``, or ``"unknown"``.

    Raises:
        FileNotFoundError: If the executable is not on ``PATH`` or cannot
            be run.
    """
    executable, *leading = config.agent_command
    resolved = shutil.which(executable)
    if resolved is None:
        msg = f"Agent CLI ({executable!r}) not found on PATH"
        raise FileNotFoundError(msg)

    try:
        result = subprocess.run(
            [resolved, *leading, "--version"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (subprocess.TimeoutExpired, OSError) as exc:
        msg = f"Cannot determine agent CLI version: {exc}"
        raise FileNotFoundError(msg) from exc

    lines = result.stdout.strip().splitlines()
    return lines[0] if lines else "unknown"
