"""Prompt template registry for the issue pipeline phases.

Loads prompt templates from YAML files in this package directory and,
optionally, from a user template directory whose files override the
packaged ones phase by phase. Templates are keyed by ``AgentPhase``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from ai_issue.errors import TemplateNotFoundError
from ai_issue.models import AgentPhase, PromptTemplate

logger = logging.getLogger(__name__)

_PROMPTS_DIR: Path = Path(__file__).parent


class PromptRegistry:
    """Registry of prompt templates keyed by phase.

    Loads every ``.yaml`` file from the ``prompts/`` package directory on
    construction, then every ``.yaml`` file from *override_dir* if given.
    A later file for the same phase replaces the earlier one.

    Attributes:
        _templates: Internal mapping from ``AgentPhase`` to template.
    """

    def __init__(self, override_dir: str | Path | None = None) -> None:
        """Load packaged templates, then user overrides.

        Args:
            override_dir: Optional directory of user YAML templates. A
                missing directory is logged and ignored.
        """
        self._templates: dict[AgentPhase, PromptTemplate] = {}
        self._load_dir(_PROMPTS_DIR)
        if override_dir is not None:
            override = Path(override_dir)
            if override.is_dir():
                self._load_dir(override)
            else:
                logger.warning("Template directory %s not found; using packaged templates", override)

    def _load_dir(self, directory: Path) -> None:
        """Scan *directory* for YAML files and load each one."""
        for yaml_path in sorted(directory.glob("*.yaml")):
            self._load_yaml(yaml_path)

    def _load_yaml(self, path: Path) -> None:
        """Load a single YAML file and register its template.

        Expected top-level keys: ``phase``, ``template``, ``variables``.
        Files that cannot be parsed or lack a template are skipped with a
        warning, leaving any earlier template for the phase in place.

        Args:
            path: Path to the YAML file.
        """
        try:
            with path.open(encoding="utf-8") as fh:
                data: Any = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Skipping %s: cannot read template file: %s", path.name, exc)
            return
        if not isinstance(data, dict):
            logger.warning("Skipping %s: expected a mapping, got %s", path.name, type(data).__name__)
            return

        try:
            phase = AgentPhase(str(data["phase"]))
        except (KeyError, ValueError):
            logger.warning("Skipping %s: unknown or missing phase %r", path.name, data.get("phase"))
            return
        template = data.get("template")
        variables = data.get("variables") or []
        if not isinstance(template, str) or not isinstance(variables, list):
            logger.warning("Skipping %s: missing template text or malformed variables", path.name)
            return
        self._templates[phase] = PromptTemplate(
            phase=phase,
            template=template,
            variables=[str(v) for v in variables],
        )

    def get(self, phase: AgentPhase) -> PromptTemplate:
        """Retrieve the template for *phase*.

        Raises:
            TemplateNotFoundError: If no template is registered for *phase*.
        """
        try:
            return self._templates[phase]
        except KeyError:
            msg = f"No prompt template registered for phase: {phase}"
            raise TemplateNotFoundError(msg, diagnostics={"phase": str(phase)}) from None

    def __contains__(self, phase: object) -> bool:
        return phase in self._templates

    def __len__(self) -> int:
        """Return the number of phases with a template."""
        return len(self._templates)
