from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from backlog_runner.board.frontmatter import split_frontmatter
from backlog_runner.board.local import LocalBoardStore
from backlog_runner.orchestrator.errors import StoreError
from backlog_runner.orchestrator.models import TaskStatus

pytestmark = [
    allure.epic("Board"),
    allure.feature("Local Markdown Store"),
]


def test_list_tasks_reads_standalone_epics_and_children(
    make_task: Callable[..., Path],
    store: LocalBoardStore,
) -> None:
    make_task("fix-login", "Body", priority="P1", agents="backend, qa")
    make_task("export", "Epic body", epic=True, status="In Progress")
    make_task("export/csv", "- [ ] CSV works", model="claude-sonnet-4-5")

    tasks = {task.id: task for task in store.list_tasks()}

    assert set(tasks) == {"fix-login", "export", "export/csv"}
    assert tasks["fix-login"].name == "Fix Login"
    assert tasks["fix-login"].priority == "P1"
    assert tasks["fix-login"].agents == ["backend", "qa"]
    assert tasks["export"].type == "Epic"
    assert tasks["export"].status == TaskStatus.IN_PROGRESS
    assert tasks["export/csv"].parent_id == "export"
    assert tasks["export/csv"].model == "claude-sonnet-4-5"


def test_list_tasks_skips_invalid_and_legacy_entries(
    board_dir: Path,
    make_task: Callable[..., Path],
    store: LocalBoardStore,
) -> None:
    make_task("good")
    (board_dir / "broken.md").write_text("---\nstatus: [unclosed\n---\nbody", "utf-8")
    (board_dir / "weird.md").write_text("---\nstatus: Blocked\n---\nbody", "utf-8")
    legacy = board_dir / "Done"
    legacy.mkdir()
    (legacy / "old.md").write_text("old", "utf-8")
    (board_dir / "assets").mkdir()

    assert [task.id for task in store.list_tasks()] == ["good"]


def test_missing_status_defaults_to_not_started(board_dir: Path, store: LocalBoardStore) -> None:
    (board_dir / "plain.md").write_text("Just a body", "utf-8")

    task = store.get_task("plain")

    assert task.status == TaskStatus.NOT_STARTED
    assert task.body == "Just a body"


def test_list_tasks_raises_when_board_is_missing(tmp_path: Path) -> None:
    with pytest.raises(StoreError, match="Board directory not found"):
        LocalBoardStore(tmp_path / "nope").list_tasks()


def test_update_status_keeps_other_fields_and_body(
    board_dir: Path,
    make_task: Callable[..., Path],
    store: LocalBoardStore,
) -> None:
    path = make_task("task", "Line one\n", priority="P2")

    store.update_status("task", TaskStatus.DONE)

    fields, body = split_frontmatter(path.read_text("utf-8"))
    assert fields == {"status": "Done", "priority": "P2"}
    assert body == "Line one\n"
    assert not list(board_dir.glob(".task.md.*"))


def test_update_checkboxes_by_index_is_idempotent(
    make_task: Callable[..., Path],
    store: LocalBoardStore,
) -> None:
    make_task("task", "- [ ] one\n- [ ] two\n- [ ] three\n")

    assert store.update_checkboxes_by_index("task", [2]) == [2]
    assert store.update_checkboxes_by_index("task", [2]) == []
    assert store.get_body("task") == "- [ ] one\n- [x] two\n- [ ] three\n"


def test_update_checkboxes_by_text_resolves_against_live_body(
    make_task: Callable[..., Path],
    store: LocalBoardStore,
) -> None:
    make_task("epic/child", "- [ ] Add **tests**\n- [ ] Ship it\n")

    assert store.update_checkboxes_by_text("epic/child", ["add tests", "unknown"]) == [1]
    assert "- [x] Add **tests**" in store.get_body("epic/child")


def test_append_to_body_uses_separator(
    make_task: Callable[..., Path],
    store: LocalBoardStore,
) -> None:
    make_task("task", "Original\n\n")

    store.append_to_body("task", "## Notes\nDone.")
    store.append_to_body("task", "   ")

    assert store.get_body("task") == "Original\n\n---\n\n## Notes\nDone.\n"
    assert store.get_task("task").status == TaskStatus.NOT_STARTED


def test_unknown_task_raises_store_error(store: LocalBoardStore) -> None:
    with pytest.raises(StoreError, match="Task not found"):
        store.get_body("missing")
    with pytest.raises(StoreError, match="Invalid task id"):
        store.get_body("a/b/c")
