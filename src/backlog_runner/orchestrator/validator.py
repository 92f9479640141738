"""Hallucination check: a self-reported ``done`` must leave some observable trace."""

from __future__ import annotations

from pathlib import Path

from backlog_runner.orchestrator.models import ExecutionResult, HallucinationCheck
from backlog_runner.orchestrator.workdir import WorkdirSnapshot, capture_snapshot


def validate_execution(
    before: WorkdirSnapshot,
    result: ExecutionResult,
    workdir: Path,
    after: WorkdirSnapshot | None = None,
) -> HallucinationCheck:
    """Accept ``done`` when the tree changed since ``before`` or a declared file exists.

    Any repository change counts, relevant or not. Blocked results are not
    judged here.
    """

    if not result.is_done:
        return HallucinationCheck(valid=True)

    current = after if after is not None else capture_snapshot(workdir)
    if current.differs_from(before):
        return HallucinationCheck(valid=True)

    existing = [name for name in result.files if _declared_file_exists(workdir, name)]
    if existing:
        return HallucinationCheck(valid=True)

    if result.files:
        reason = (
            "Reported done, but the working tree is unchanged and none of the declared "
            f"files exist: {', '.join(result.files[:10])}"
        )
    else:
        reason = "Reported done, but the working tree is unchanged and no files were declared."
    return HallucinationCheck(valid=False, reason=reason)


def _declared_file_exists(workdir: Path, name: str) -> bool:
    """Regular file inside ``workdir``. Directories and paths escaping the tree do not count."""

    root = workdir.resolve()
    path = Path(name)
    if not path.is_absolute():
        path = root / path
    path = path.resolve()
    return path.is_file() and path.is_relative_to(root)
