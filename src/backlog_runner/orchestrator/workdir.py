"""Repository state snapshots taken around one agent execution."""

from __future__ import annotations

import hashlib
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_GIT_TIMEOUT_SECONDS = 30


@dataclass(slots=True, frozen=True)
class WorkdirSnapshot:
    """Git HEAD plus a digest of uncommitted changes.

    ``is_git`` is false when the workdir is not a repository; such snapshots
    never register as changed, so only declared files can corroborate work.
    """

    head: str | None
    changes_digest: str
    is_git: bool

    def differs_from(self, other: WorkdirSnapshot) -> bool:
        if not (self.is_git and other.is_git):
            return False
        return self.head != other.head or self.changes_digest != other.changes_digest


def capture_snapshot(workdir: Path) -> WorkdirSnapshot:
    """Capture HEAD and a hash of ``git status --porcelain`` plus ``git diff HEAD``."""

    toplevel = _git(workdir, "rev-parse", "--is-inside-work-tree")
    if toplevel is None or toplevel.strip() != "true":
        logger.debug("Workdir %s is not a git repository", workdir)
        return WorkdirSnapshot(head=None, changes_digest="", is_git=False)

    head = _git(workdir, "rev-parse", "HEAD")
    status = _git(workdir, "status", "--porcelain", "--untracked-files=all") or ""
    diff = _git(workdir, "diff", "HEAD") if head else ""
    digest = hashlib.sha256()
    digest.update(status.encode("utf-8"))
    digest.update(b"\0")
    digest.update((diff or "").encode("utf-8"))
    return WorkdirSnapshot(
        head=head.strip() if head else None,
        changes_digest=digest.hexdigest(),
        is_git=True,
    )


def _git(workdir: Path, *args: str) -> str | None:
    try:
        completed = subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            cwd=workdir,
            capture_output=True,
            text=True,
            timeout=_GIT_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as error:
        logger.warning("git %s failed in %s: %s", " ".join(args), workdir, error)
        return None
    if completed.returncode != 0:
        return None
    return completed.stdout
