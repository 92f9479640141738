"""Filesystem board: one markdown file per task, one folder per epic."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path

from backlog_runner.board.frontmatter import (
    FrontmatterError,
    join_frontmatter,
    parse_list_field,
    split_frontmatter,
    title_from_slug,
)
from backlog_runner.orchestrator import acceptance
from backlog_runner.orchestrator.errors import StoreError
from backlog_runner.orchestrator.models import Task, TaskStatus, TaskType

logger = logging.getLogger(__name__)

EPIC_FILE_NAME = "epic.md"
LEGACY_STATUS_FOLDERS = ("Not Started", "In Progress", "Done")
APPEND_SEPARATOR = "\n\n---\n\n"


class LocalBoardStore:
    """Task store backed by a directory of markdown files with YAML frontmatter.

    Layout::

        <board>/<slug>.md             standalone task, id = slug
        <board>/<epic>/epic.md        epic, id = folder name
        <board>/<epic>/<child>.md     epic child, id = "<epic>/<child>"
    """

    def __init__(self, board_dir: Path) -> None:
        self.board_dir = board_dir
        self._lock = threading.RLock()

    def list_tasks(self) -> list[Task]:
        if not self.board_dir.is_dir():
            raise StoreError(f"Board directory not found: {self.board_dir}")
        tasks: list[Task] = []
        try:
            entries = sorted(self.board_dir.iterdir(), key=lambda path: path.name)
        except OSError as error:
            raise StoreError(f"Cannot read board directory {self.board_dir}: {error}") from error
        for entry in entries:
            if entry.name.startswith("."):
                continue
            if entry.is_file() and entry.suffix == ".md":
                task = self._load_task(entry, task_id=entry.stem, parent_id=None)
                if task is not None:
                    tasks.append(task)
            elif entry.is_dir():
                tasks.extend(self._load_epic(entry))
        return tasks

    def get_task(self, task_id: str) -> Task:
        path = self._path_for(task_id)
        parent_id = task_id.split("/", 1)[0] if "/" in task_id else None
        task = self._load_task(path, task_id=task_id, parent_id=parent_id, strict=True)
        if task is None:
            raise StoreError(f"Task not found: {task_id}", task_id=task_id)
        return task

    def get_body(self, task_id: str) -> str:
        _, body = self._read(task_id)
        return body

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        with self._lock:
            fields, body = self._read(task_id)
            fields["status"] = TaskStatus(status).value
            self._write(task_id, fields, body)
        logger.info("Task %s status -> %s", task_id, TaskStatus(status).value)

    def update_checkboxes_by_index(self, task_id: str, indices: list[int]) -> list[int]:
        with self._lock:
            fields, body = self._read(task_id)
            updated, changed = acceptance.check_indices(body, indices)
            if changed:
                self._write(task_id, fields, updated)
        return changed

    def update_checkboxes_by_text(self, task_id: str, texts: list[str]) -> list[int]:
        with self._lock:
            fields, body = self._read(task_id)
            updated, changed = acceptance.check_texts(body, texts)
            if changed:
                self._write(task_id, fields, updated)
        return changed

    def append_to_body(self, task_id: str, text: str) -> None:
        if not text or not text.strip():
            return
        with self._lock:
            fields, body = self._read(task_id)
            self._write(task_id, fields, f"{body.rstrip()}{APPEND_SEPARATOR}{text.strip()}\n")

    def _load_epic(self, folder: Path) -> list[Task]:
        epic_file = folder / EPIC_FILE_NAME
        if folder.name in LEGACY_STATUS_FOLDERS:
            logger.warning("Ignoring legacy status folder %s", folder)
            return []
        if not epic_file.is_file():
            logger.warning("Ignoring folder without %s: %s", EPIC_FILE_NAME, folder)
            return []
        epic = self._load_task(epic_file, task_id=folder.name, parent_id=None)
        if epic is None:
            return []
        if not epic.type:
            epic.type = TaskType.EPIC.value
        tasks = [epic]
        for child in sorted(folder.glob("*.md"), key=lambda path: path.name):
            if child.name == EPIC_FILE_NAME:
                continue
            task = self._load_task(
                child,
                task_id=f"{folder.name}/{child.stem}",
                parent_id=folder.name,
            )
            if task is not None:
                tasks.append(task)
        return tasks

    def _load_task(
        self,
        path: Path,
        *,
        task_id: str,
        parent_id: str | None,
        strict: bool = False,
    ) -> Task | None:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            if strict:
                raise StoreError(f"Task not found: {task_id}", task_id=task_id) from None
            return None
        except OSError as error:
            raise StoreError(f"Cannot read {path}: {error}", task_id=task_id) from error
        try:
            fields, body = split_frontmatter(content)
            status = TaskStatus.parse(fields.get("status"))
        except (FrontmatterError, ValueError) as error:
            if strict:
                raise StoreError(f"{path}: {error}", task_id=task_id) from error
            logger.warning("Skipping %s: %s", path, error)
            return None
        slug = path.parent.name if path.name == EPIC_FILE_NAME else path.stem
        return Task(
            id=task_id,
            name=str(fields.get("name") or title_from_slug(slug)),
            status=status,
            type=str(fields.get("type") or ""),
            priority=str(fields.get("priority") or ""),
            model=str(fields.get("model") or ""),
            agents=parse_list_field(fields.get("agents") or fields.get("agent")),
            parent_id=parent_id,
            body=body,
        )

    def _path_for(self, task_id: str) -> Path:
        parts = task_id.split("/")
        if len(parts) == 2:
            return self.board_dir / parts[0] / f"{parts[1]}.md"
        if len(parts) != 1 or not parts[0]:
            raise StoreError(f"Invalid task id: {task_id!r}", task_id=task_id)
        folder = self.board_dir / task_id
        if folder.is_dir():
            return folder / EPIC_FILE_NAME
        return self.board_dir / f"{task_id}.md"

    def _read(self, task_id: str) -> tuple[dict, str]:
        path = self._path_for(task_id)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise StoreError(f"Task not found: {task_id}", task_id=task_id) from None
        except OSError as error:
            raise StoreError(f"Cannot read {path}: {error}", task_id=task_id) from error
        try:
            return split_frontmatter(content)
        except FrontmatterError as error:
            raise StoreError(f"{path}: {error}", task_id=task_id) from error

    def _write(self, task_id: str, fields: dict, body: str) -> None:
        path = self._path_for(task_id)
        content = join_frontmatter(fields, body)
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        except OSError as error:
            raise StoreError(f"Cannot write {path}: {error}", task_id=task_id) from error
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_name, path)
        except OSError as error:
            Path(tmp_name).unlink(missing_ok=True)
            raise StoreError(f"Cannot write {path}: {error}", task_id=task_id) from error
