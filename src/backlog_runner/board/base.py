"""Task store contract consumed by the orchestrator."""

from __future__ import annotations

from typing import Protocol

from backlog_runner.orchestrator.models import Task, TaskStatus


class TaskStore(Protocol):
    """Interface for durable backlog boards.

    Checkbox indices are recomputed from the live body on every call,
    ``update_status`` is atomic per task and ``append_to_body`` never
    truncates earlier content. Implementations raise ``StoreError``.
    """

    def list_tasks(self) -> list[Task]:
        """Return a fresh snapshot of every task on the board."""
        raise NotImplementedError

    def get_body(self, task_id: str) -> str:
        """Return the markdown body of one task."""
        raise NotImplementedError

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        """Persist a new status for one task."""
        raise NotImplementedError

    def update_checkboxes_by_index(self, task_id: str, indices: list[int]) -> list[int]:
        """Check 1-based checkbox positions and return the ones newly checked."""
        raise NotImplementedError

    def update_checkboxes_by_text(self, task_id: str, texts: list[str]) -> list[int]:
        """Check checkboxes matched by text and return the ones newly checked."""
        raise NotImplementedError

    def append_to_body(self, task_id: str, text: str) -> None:
        """Append a markdown section to the task body."""
        raise NotImplementedError
