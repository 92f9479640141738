"""Structure checks for a local markdown board."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from backlog_runner.board.frontmatter import FrontmatterError, split_frontmatter
from backlog_runner.board.local import EPIC_FILE_NAME, LEGACY_STATUS_FOLDERS
from backlog_runner.orchestrator.models import TaskStatus

VALID_STATUSES = tuple(status.value for status in TaskStatus)


@dataclass(slots=True)
class BoardIssue:
    """One validation finding."""

    code: str
    message: str
    path: Path | None = None
    severity: str = "error"


@dataclass(slots=True)
class BoardValidationResult:
    """Aggregate board validation report."""

    total_tasks: int = 0
    total_epics: int = 0
    errors: list[BoardIssue] = field(default_factory=list)
    warnings: list[BoardIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_board(board_dir: Path) -> BoardValidationResult:
    """Validate layout and frontmatter of every task file under ``board_dir``."""

    result = BoardValidationResult()
    if not board_dir.is_dir():
        result.errors.append(
            BoardIssue(
                code="missing_board",
                message=f"Board directory not found: {board_dir}",
                path=board_dir,
                severity="critical",
            ),
        )
        return result

    for entry in sorted(board_dir.iterdir(), key=lambda path: path.name):
        if entry.name.startswith("."):
            continue
        if entry.is_file() and entry.suffix == ".md":
            result.total_tasks += 1
            _validate_task_file(entry, result)
        elif entry.is_dir():
            if entry.name in LEGACY_STATUS_FOLDERS:
                result.warnings.append(
                    BoardIssue(
                        code="legacy_structure",
                        message=(
                            f"Legacy status folder found: {entry.name}/. "
                            "Tasks belong in the board root with status in frontmatter."
                        ),
                        path=entry,
                        severity="warning",
                    ),
                )
                continue
            _validate_epic_folder(entry, result)
    return result


def format_summary(result: BoardValidationResult, *, max_items: int = 5) -> list[str]:
    """Human-readable report lines."""

    lines = [
        "Board structure is valid" if result.valid else "Board structure has errors",
        f"Total tasks: {result.total_tasks}",
        f"Total epics: {result.total_epics}",
    ]
    for title, issues in (("Errors", result.errors), ("Warnings", result.warnings)):
        if not issues:
            continue
        lines.append(f"{title} ({len(issues)}):")
        lines.extend(f"  - {issue.message}" for issue in issues[:max_items])
        if len(issues) > max_items:
            lines.append(f"  ... and {len(issues) - max_items} more")
    return lines


def _validate_epic_folder(folder: Path, result: BoardValidationResult) -> None:
    epic_file = folder / EPIC_FILE_NAME
    if not epic_file.is_file():
        result.warnings.append(
            BoardIssue(
                code="unexpected_directory",
                message=f"Folder without {EPIC_FILE_NAME} is ignored: {folder.name}/",
                path=folder,
                severity="warning",
            ),
        )
        return
    result.total_epics += 1
    _validate_task_file(epic_file, result)
    for child in sorted(folder.iterdir(), key=lambda path: path.name):
        if child.is_dir():
            result.warnings.append(
                BoardIssue(
                    code="nested_directory",
                    message=f"Nested directory inside epic is ignored: {folder.name}/{child.name}",
                    path=child,
                    severity="warning",
                ),
            )
        elif child.suffix == ".md" and child.name != EPIC_FILE_NAME:
            result.total_tasks += 1
            _validate_task_file(child, result)


def _validate_task_file(path: Path, result: BoardValidationResult) -> None:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as error:
        result.errors.append(
            BoardIssue(
                code="read_error",
                message=f"Failed to read {path.name}: {error}",
                path=path,
            ),
        )
        return
    try:
        fields, body = split_frontmatter(content)
    except FrontmatterError as error:
        result.errors.append(
            BoardIssue(
                code="invalid_frontmatter",
                message=f"Invalid frontmatter in {path.name}: {error}",
                path=path,
            ),
        )
        return

    status = fields.get("status")
    if not status:
        result.warnings.append(
            BoardIssue(
                code="missing_status",
                message=f"Missing status in {path.name}, treated as {TaskStatus.NOT_STARTED.value}",
                path=path,
                severity="warning",
            ),
        )
    else:
        try:
            TaskStatus.parse(str(status))
        except ValueError:
            result.errors.append(
                BoardIssue(
                    code="invalid_status",
                    message=(
                        f"Invalid status {status!r} in {path.name}. "
                        f"Expected one of: {', '.join(VALID_STATUSES)}"
                    ),
                    path=path,
                ),
            )
    if not body.strip():
        result.warnings.append(
            BoardIssue(
                code="empty_body",
                message=f"No description after frontmatter in {path.name}",
                path=path,
                severity="warning",
            ),
        )
