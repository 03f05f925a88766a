"""Solver configuration: model, loading, environment overrides and persistence.

``SolverConfig`` holds everything the pipeline needs from the outside
world: repository and report paths, the agent command and model, the
reference URL for issues, and the phase timeouts. ``load_config`` layers
defaults, the user's config file (``~/.ai-issue/config.json``) and
``AI_ISSUE_*`` environment variables.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import re
import subprocess
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic.alias_generators import to_camel
import yaml

from ai_issue.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_DIR: Path = Path.home() / ".ai-issue"
CONFIG_FILE: Path = CONFIG_DIR / "config.json"

_LOG_LEVELS = frozenset({"none", "error", "warning", "info", "debug", "all", "default"})


def _default_report_path() -> str:
    return str(CONFIG_DIR / "reports")


class SolverConfig(BaseModel):
    """Resolved configuration for one ai-issue run.

    Attributes:
        repo_path: Local clone of the repository the issues belong to.
        report_path: Directory where the agent writes its reports.
        model: Agent model identifier.
        log_level: Agent log level, also used for the Python logger.
        issue_base_url: Base URL; an issue's URL is ``{issue_base_url}/{id}``.
        agent_command: Executable (and leading arguments) of the agent CLI.
        template_dir: Optional directory of YAML prompt overrides.
        capability_dir: Optional directory of per-phase capability manifests.
        log_file: Optional file receiving a copy of the Python log.
        research_timeout_seconds: Wait for the research report.
        solution_timeout_seconds: Wait for the analysis-and-solution report.
        evaluation_timeout_seconds: Wait for the evaluation report.
        poll_interval_seconds: Delay between artifact existence checks.
        progress_interval_seconds: Delay between progress notifications.
        artifact_extension: File extension of the report artifacts.
    """

    # camelCase aliases keep config.json files written by earlier releases readable.
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    repo_path: str = ""
    report_path: str = _default_report_path()
    model: str = "claude-sonnet-4.5"
    log_level: str = "info"
    issue_base_url: str = "https://github.com/hashicorp/terraform-provider-azurerm/issues"
    agent_command: list[str] = ["copilot"]
    template_dir: str | None = None
    capability_dir: str | None = None
    log_file: str | None = None

    research_timeout_seconds: float = 60.0
    solution_timeout_seconds: float = 60.0
    evaluation_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 1.0
    progress_interval_seconds: float = 5.0
    artifact_extension: str = "md"

    @field_validator(
        "research_timeout_seconds",
        "solution_timeout_seconds",
        "evaluation_timeout_seconds",
        "poll_interval_seconds",
        "progress_interval_seconds",
    )
    @classmethod
    def _must_be_positive(cls, v: float) -> float:
        """Validate that timeouts and intervals are > 0."""
        if v <= 0:
            msg = "Value must be > 0"
            raise ValueError(msg)
        return v

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, v: str) -> str:
        """Validate the agent log level."""
        level = v.lower()
        if level not in _LOG_LEVELS:
            msg = f"log_level must be one of {sorted(_LOG_LEVELS)}, got {v!r}"
            raise ValueError(msg)
        return level

    @field_validator("agent_command", mode="before")
    @classmethod
    def _split_command(cls, v: Any) -> Any:
        """Accept a plain string command and reject an empty one."""
        if isinstance(v, str):
            v = v.split()
        if not v:
            msg = "agent_command must not be empty"
            raise ValueError(msg)
        return v

    @field_validator("artifact_extension")
    @classmethod
    def _strip_dot(cls, v: str) -> str:
        return v.lstrip(".") or "md"

    def issue_url(self, issue_id: str) -> str:
        """Return the reference URL of *issue_id*."""
        return f"{self.issue_base_url.rstrip('/')}/{issue_id}"


# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------

_ENV_FIELD_MAP: dict[str, str] = {
    "AI_ISSUE_REPO_PATH": "repo_path",
    "AI_ISSUE_REPORT_PATH": "report_path",
    "AI_ISSUE_MODEL": "model",
    "AI_ISSUE_LOG_LEVEL": "log_level",
    "AI_ISSUE_BASE_URL": "issue_base_url",
}
"""Maps environment variable names to SolverConfig field names."""


def apply_env_overrides(config: SolverConfig) -> SolverConfig:
    """Apply ``AI_ISSUE_*`` env var overrides to a config.

    Environment variables override **default** field values only; a value
    that differs from the ``SolverConfig`` default was set explicitly (in
    the config file or by the caller) and wins. Empty variables are ignored.

    Args:
        config: The configuration to apply overrides to.

    Returns:
        A new ``SolverConfig`` with env var overrides applied.
    """
    defaults = SolverConfig()
    overrides: dict[str, Any] = {}

    for env_var, field_name in _ENV_FIELD_MAP.items():
        env_value = os.environ.get(env_var)
        if not env_value:
            continue
        if getattr(config, field_name) != getattr(defaults, field_name):
            continue
        overrides[field_name] = env_value

    if not overrides:
        return config

    try:
        return SolverConfig(**{**config.model_dump(), **overrides})
    except ValidationError as exc:
        logger.warning("Ignoring invalid AI_ISSUE_* environment overrides: %s", exc)
        return config


# ---------------------------------------------------------------------------
# Loading and persistence
# ---------------------------------------------------------------------------


def _read_config_file(path: Path) -> dict[str, Any]:
    """Parse a config file; JSON is read through the YAML parser."""
    with path.open(encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"config file must contain a mapping, got {type(data).__name__}"
        raise ConfigError(msg, diagnostics={"path": str(path)})
    return data


def load_config(path: str | Path | None = None, **overrides: Any) -> SolverConfig:
    """Load the solver configuration.

    Layers, lowest priority first: ``SolverConfig`` defaults, the config
    file, ``AI_ISSUE_*`` environment variables (for fields still at their
    default), then keyword *overrides*. A config file that cannot be parsed
    or validated is reported as a warning and ignored.

    Args:
        path: Config file to read. Defaults to ``~/.ai-issue/config.json``.
        **overrides: Field values that take precedence over everything else.

    Returns:
        The resolved configuration.

    Raises:
        ConfigError: If *overrides* themselves are invalid.
    """
    config_path = Path(path) if path is not None else CONFIG_FILE
    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            data = _read_config_file(config_path)
            SolverConfig(**data)
        except (yaml.YAMLError, ConfigError, ValidationError) as exc:
            logger.warning(
                "Failed to parse config file %s, using default configuration: %s",
                config_path,
                exc,
            )
            data = {}

    config = apply_env_overrides(SolverConfig(**data))
    if not overrides:
        return config
    try:
        return SolverConfig(**{**config.model_dump(), **overrides})
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration override: {exc}") from exc


def save_config(config: SolverConfig, path: str | Path | None = None) -> Path:
    """Write *config* as JSON, creating the parent directory if needed.

    Returns:
        The path written.
    """
    config_path = Path(path) if path is not None else CONFIG_FILE
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        json.dumps(config.model_dump(), indent=2) + "\n", encoding="utf-8"
    )
    logger.info("Configuration saved to %s", config_path)
    return config_path


def set_config_value(
    key: str, value: str, path: str | Path | None = None
) -> SolverConfig:
    """Persist a single configuration value.

    *value* is parsed as YAML so numbers and lists round-trip
    (``research_timeout_seconds 120``, ``agent_command "[gh, copilot]"``).

    Raises:
        ConfigError: If *key* is unknown or the value fails validation.
    """
    if key not in SolverConfig.model_fields:
        raise ConfigError(f"Unknown configuration key: {key}")
    current = load_config(path)
    default = SolverConfig.model_fields[key].default
    parsed: Any = value
    if default is not None and not isinstance(default, str):
        try:
            parsed = yaml.safe_load(value)
        except yaml.YAMLError:
            parsed = value
    try:
        updated = SolverConfig(**{**current.model_dump(), key: parsed})
    except ValidationError as exc:
        raise ConfigError(f"Invalid value for {key}: {exc}") from exc
    save_config(updated, path)
    return updated


def reset_config(path: str | Path | None = None) -> SolverConfig:
    """Overwrite the config file with defaults."""
    config = SolverConfig()
    save_config(config, path)
    return config


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_ISSUE_URL_PATTERN: re.Pattern[str] = re.compile(r"^https?://.+/issues$")


def validate_config(config: SolverConfig) -> list[str]:
    """Check that *config* can drive a run.

    Checks that ``repo_path`` is set, exists and is a git repository, that
    ``issue_base_url`` ends with ``/issues``, and that ``report_path`` is
    writable (creating it if needed).

    Args:
        config: Configuration to check.

    Returns:
        A list of human-readable problems; empty when the config is valid.
    """
    errors: list[str] = []

    if not config.repo_path:
        errors.append("repo_path is not set")
    elif not Path(config.repo_path).exists():
        errors.append(f"repo_path does not exist: {config.repo_path}")
    else:
        try:
            subprocess.run(
                ["git", "rev-parse", "--git-dir"],
                cwd=config.repo_path,
                capture_output=True,
                check=True,
                timeout=10,
            )
        except (subprocess.SubprocessError, OSError):
            errors.append(f"repo_path is not a git repository: {config.repo_path}")

    if not config.issue_base_url:
        errors.append("issue_base_url is not set")
    elif not _ISSUE_URL_PATTERN.match(config.issue_base_url):
        errors.append(
            "issue_base_url format invalid (should end with /issues): "
            f"{config.issue_base_url}"
        )

    report_dir = Path(config.report_path)
    try:
        report_dir.mkdir(parents=True, exist_ok=True)
        probe = report_dir / ".write-test"
        probe.write_text("test", encoding="utf-8")
        probe.unlink()
    except OSError:
        errors.append(f"report_path is not writable: {config.report_path}")

    return errors
