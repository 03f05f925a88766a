"""Report artifacts: deterministic paths, existence polling, and cleanup.

The agent process signals completion of a phase only by writing a report
file, so the existence of that file is the pipeline's synchronization
primitive. ``wait_for_artifact`` polls for it cooperatively; it never
blocks the event loop and never raises for a file that does not appear.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
import time
from typing import TYPE_CHECKING

from ai_issue.errors import ArtifactCleanupError
from ai_issue.models import Artifact, ArtifactKind

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_SUFFIXES: dict[ArtifactKind, str] = {
    ArtifactKind.RESEARCH: "research",
    ArtifactKind.SOLUTION: "analysis-and-solution",
    ArtifactKind.EVALUATION: "evaluation",
}


def artifact_path(
    report_dir: str | Path,
    task_id: str,
    kind: ArtifactKind,
    extension: str = "md",
) -> Path:
    """Return the deterministic path of a task's report for one phase.

    Paths are qualified by task id and kind, e.g.
    ``{report_dir}/issue-123-analysis-and-solution.md``, so concurrently
    running tasks never share a file.

    Args:
        report_dir: Report output directory.
        task_id: Task identifier.
        kind: Which report.
        extension: File extension without the leading dot.

    Returns:
        The artifact path (not guaranteed to exist).
    """
    return Path(report_dir) / f"issue-{task_id}-{_SUFFIXES[kind]}.{extension}"


def task_artifacts(
    report_dir: str | Path, task_id: str, extension: str = "md"
) -> list[Artifact]:
    """Return all artifacts of *task_id*, in phase order."""
    return [
        Artifact(path=str(artifact_path(report_dir, task_id, kind, extension)), kind=kind)
        for kind in ArtifactKind
    ]


def snapshot_artifacts(
    report_dir: str | Path, task_id: str, extension: str = "md"
) -> dict[str, bool]:
    """Report which of a task's artifacts exist right now.

    Used for failure diagnostics ("research ok, solution missing").

    Returns:
        Mapping of artifact kind to existence.
    """
    return {
        str(a.kind): Path(a.path).exists()
        for a in task_artifacts(report_dir, task_id, extension)
    }


def read_artifact(path: str | Path) -> str:
    """Read an artifact as UTF-8, replacing undecodable bytes."""
    return Path(path).read_text(encoding="utf-8", errors="replace")


def remove_artifact(path: str | Path) -> bool:
    """Delete an artifact if it exists.

    Args:
        path: Artifact to delete.

    Returns:
        ``True`` if a file was removed, ``False`` if none existed.

    Raises:
        ArtifactCleanupError: If the file exists but cannot be removed.
    """
    target = Path(path)
    try:
        target.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise ArtifactCleanupError(
            f"Failed to remove {target}: {exc}", diagnostics={"path": str(target)}
        ) from exc
    return True


async def wait_for_artifact(
    path: str | Path,
    timeout_seconds: float,
    on_progress: Callable[[int], None] | None = None,
    *,
    poll_interval: float = 1.0,
    progress_interval: float = 5.0,
) -> bool:
    """Wait until *path* exists or *timeout_seconds* elapse.

    Returns immediately, without sleeping, when the path already exists.
    Otherwise checks every *poll_interval* seconds with ``asyncio.sleep``
    so other pipelines keep running. When *on_progress* is given it is
    called with the whole seconds elapsed, at most once per
    *progress_interval*.

    A timeout is a normal outcome, not an error; the caller decides what
    it means for the phase.

    Args:
        path: File to wait for.
        timeout_seconds: Maximum time to wait.
        on_progress: Optional liveness callback receiving elapsed seconds.
        poll_interval: Delay between existence checks.
        progress_interval: Minimum delay between progress callbacks.

    Returns:
        ``True`` if the file exists, ``False`` if the timeout elapsed first.
    """
    target = Path(path)
    if target.exists():
        return True

    start = time.monotonic()
    deadline = start + timeout_seconds
    next_progress = start + progress_interval

    while True:
        now = time.monotonic()
        remaining = deadline - now
        if remaining <= 0:
            return False
        await asyncio.sleep(min(poll_interval, remaining))
        if target.exists():
            return True
        now = time.monotonic()
        if on_progress is not None and now >= next_progress:
            on_progress(int(now - start))
            next_progress = now + progress_interval
