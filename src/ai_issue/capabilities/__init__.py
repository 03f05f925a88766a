"""Phase-scoped capability manifests for the agent process.

A capability manifest is an MCP server configuration file handed to the
agent with ``--additional-mcp-config @<path>``; it decides which tools the
agent may use in a phase. Manifests are resolved by phase name:

1. ``{capability_dir}/{phase}.json``
2. ``{capability_dir}/default.json``
3. the ``default.json`` shipped in this package
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from ai_issue.errors import TemplateNotFoundError
from ai_issue.models import AgentPhase

logger = logging.getLogger(__name__)

_PACKAGED_DIR: Path = Path(__file__).parent
DEFAULT_MANIFEST_NAME = "default.json"


class CapabilityRegistry:
    """Resolves the capability manifest for each agent phase.

    Args:
        capability_dir: Optional user directory searched before the
            packaged default.
        fallback_dir: Directory holding the last-resort ``default.json``.
    """

    def __init__(
        self,
        capability_dir: str | Path | None = None,
        *,
        fallback_dir: str | Path = _PACKAGED_DIR,
    ) -> None:
        self._capability_dir = Path(capability_dir) if capability_dir else None
        self._fallback_dir = Path(fallback_dir)

    def _candidates(self, phase: AgentPhase) -> list[Path]:
        candidates: list[Path] = []
        if self._capability_dir is not None:
            candidates.append(self._capability_dir / f"{phase}.json")
            candidates.append(self._capability_dir / DEFAULT_MANIFEST_NAME)
        candidates.append(self._fallback_dir / DEFAULT_MANIFEST_NAME)
        return candidates

    def resolve(self, phase: AgentPhase) -> Path:
        """Return the absolute path of the manifest for *phase*.

        Raises:
            TemplateNotFoundError: If neither a phase manifest nor any
                default manifest exists.
        """
        candidates = self._candidates(phase)
        for candidate in candidates:
            if candidate.is_file():
                return candidate.resolve()
        msg = f"No capability manifest found for phase {phase}"
        raise TemplateNotFoundError(
            msg, diagnostics={"searched": [str(c) for c in candidates]}
        )

    def server_names(self, phase: AgentPhase) -> list[str]:
        """List the MCP servers granted in *phase*, for debug logging.

        An unreadable manifest yields an empty list; the agent reports the
        problem itself when it loads the file.
        """
        path = self.resolve(phase)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Cannot read capability manifest %s: %s", path, exc)
            return []
        servers = data.get("mcpServers", {}) if isinstance(data, dict) else {}
        return sorted(servers)
