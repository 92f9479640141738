from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

import allure
import pytest

from backlog_runner.board.local import LocalBoardStore
from backlog_runner.config import Settings
from backlog_runner.orchestrator import acceptance
from backlog_runner.orchestrator.backend.base import ExecutionRequest
from backlog_runner.orchestrator.errors import ExecutionError, QuotaError, StoreError
from backlog_runner.orchestrator.models import (
    ExecutionResult,
    ReconcileMode,
    ResultStatus,
    RunEvent,
    TaskStatus,
)
from backlog_runner.orchestrator.reconciler import Reconciler
from backlog_runner.orchestrator.repository import RunHistoryRepository

if TYPE_CHECKING:
    from conftest import FakeExecutor

pytestmark = [
    allure.epic("Reconciliation"),
    allure.feature("Reconciliation Passes"),
]

MakeTask = Callable[..., Path]


def _status(store: LocalBoardStore, task_id: str) -> TaskStatus:
    return store.get_task(task_id).status


def _checked(store: LocalBoardStore, task_id: str) -> list[bool]:
    return [ac.checked for ac in acceptance.parse_acs(store.get_body(task_id))]


def test_standalone_task_is_done_after_verified_report(
    make_task: MakeTask,
    store: LocalBoardStore,
    executor: FakeExecutor,
    history: RunHistoryRepository,
    reconciler: Reconciler,
) -> None:
    make_task("add-export", "Add export.\n\n- [ ] CSV endpoint\n- [ ] Auth is required\n")
    executor.steps = [
        lambda request: executor.done_result(
            request.task.id,
            completed_acs=["AC-1", "Auth is required"],
        ),
    ]

    summary = reconciler.reconcile(ReconcileMode.TASKS, "manual")

    assert summary.completed == ["add-export"]
    assert summary.failed == []
    assert _status(store, "add-export") == TaskStatus.DONE
    assert _checked(store, "add-export") == [True, True]
    assert "## Execution Notes" in store.get_body("add-export")
    assert [record.event for record in history.list_records(task_id="add-export")] == [
        RunEvent.DONE,
        RunEvent.STARTED,
    ]
    prompt = executor.requests[0].prompt
    assert "AC-1: CSV endpoint" in prompt
    assert "[AC_COMPLETE]" in prompt


def test_tasks_run_in_order_until_budget_is_spent(
    make_task: MakeTask,
    settings: Settings,
    executor: FakeExecutor,
    reconciler: Reconciler,
) -> None:
    for slug in ("c-task", "a-task", "b-task"):
        make_task(slug, "Body")
    settings.queue.max_tasks_per_run = 2

    summary = reconciler.reconcile()

    assert executor.task_ids == ["a-task", "b-task"]
    assert summary.completed == ["a-task", "b-task"]


def test_epic_kickoff_stamps_statuses_before_first_child_runs(
    make_task: MakeTask,
    store: LocalBoardStore,
    executor: FakeExecutor,
    reconciler: Reconciler,
) -> None:
    make_task("epic", "Epic body", epic=True)
    make_task("epic/c1", "First child")
    make_task("epic/c2", "Second child", status="In Progress")
    seen: dict[str, TaskStatus] = {}

    def _capture(request: ExecutionRequest) -> ExecutionResult:
        seen.update({task.id: task.status for task in store.list_tasks()})
        return executor.done_result(request.task.id)

    executor.steps = [_capture]

    summary = reconciler.reconcile(ReconcileMode.TASKS, "startup")

    assert seen == {
        "epic": TaskStatus.IN_PROGRESS,
        "epic/c1": TaskStatus.IN_PROGRESS,
        "epic/c2": TaskStatus.NOT_STARTED,
    }
    assert executor.task_ids == ["epic/c1", "epic/c2"]
    assert summary.closed_epics == ["epic"]
    assert _status(store, "epic") == TaskStatus.DONE
    assert "## Automation Summary" in store.get_body("epic")


def test_standalone_tasks_wait_while_an_epic_is_open(
    make_task: MakeTask,
    executor: FakeExecutor,
    reconciler: Reconciler,
) -> None:
    make_task("a-solo", "Body")
    make_task("epic", "Epic body", epic=True)
    make_task("epic/child", "Child")

    reconciler.reconcile()

    assert executor.task_ids == ["epic/child", "a-solo"]


def test_unsupported_done_report_gets_exactly_one_corrective_retry(
    make_task: MakeTask,
    store: LocalBoardStore,
    executor: FakeExecutor,
    reconciler: Reconciler,
) -> None:
    make_task("task", "Body")
    executor.steps = [
        ExecutionResult(status=ResultStatus.DONE, files=["ghost.py"]),
        lambda request: executor.done_result(request.task.id),
    ]

    summary = reconciler.reconcile()

    assert executor.labels == ["task", "corrective"]
    assert "CORRECTION REQUIRED" in executor.requests[1].prompt
    assert "ghost.py" in executor.requests[1].prompt
    assert summary.completed == ["task"]
    assert _status(store, "task") == TaskStatus.DONE


def test_second_unsupported_report_fails_without_third_attempt(
    make_task: MakeTask,
    store: LocalBoardStore,
    executor: FakeExecutor,
    history: RunHistoryRepository,
    reconciler: Reconciler,
) -> None:
    make_task("task", "Body")
    make_task("later", "Body")
    executor.steps = [ExecutionResult(), ExecutionResult()]

    summary = reconciler.reconcile()

    assert executor.labels == ["task", "corrective"]
    assert summary.failed == ["task"]
    assert _status(store, "task") == TaskStatus.IN_PROGRESS
    assert _status(store, "later") == TaskStatus.NOT_STARTED
    latest = history.list_records(task_id="task", limit=1)[0]
    assert latest.event == RunEvent.FAILED
    assert latest.detail["failure_class"] == "hallucination"
    assert "## Automation Blocked" in store.get_body("task")


def test_mid_run_ac_marker_checks_exactly_that_index(
    make_task: MakeTask,
    store: LocalBoardStore,
    executor: FakeExecutor,
    reconciler: Reconciler,
) -> None:
    make_task("task", "- [ ] one\n- [ ] two\n- [ ] three\n")
    during: list[list[bool]] = []

    def _mark_second(request: ExecutionRequest) -> ExecutionResult:
        assert request.on_ac_complete is not None
        request.on_ac_complete("AC-2")
        during.append(_checked(store, "task"))
        return ExecutionResult(status=ResultStatus.BLOCKED, notes="stuck on the third")

    executor.steps = [_mark_second]

    summary = reconciler.reconcile()

    assert during == [[False, True, False]]
    assert _checked(store, "task") == [False, True, False]
    assert summary.failed == ["task"]
    assert _status(store, "task") == TaskStatus.IN_PROGRESS


def test_done_report_with_unchecked_acs_stays_in_progress(
    make_task: MakeTask,
    store: LocalBoardStore,
    settings: Settings,
    executor: FakeExecutor,
    reconciler: Reconciler,
) -> None:
    settings.state.auto_reset_failed_task = True
    make_task("task", "- [ ] one\n- [ ] two\n")
    executor.steps = [
        lambda request: executor.done_result(request.task.id, completed_acs=["AC-1"]),
    ]

    summary = reconciler.reconcile()

    assert summary.failed == ["task"]
    assert "1 acceptance criteria still unchecked" in summary.stop_reason
    assert _status(store, "task") == TaskStatus.IN_PROGRESS
    assert _checked(store, "task") == [True, False]


def test_quota_error_halts_without_using_the_failure_ledger(
    make_task: MakeTask,
    store: LocalBoardStore,
    executor: FakeExecutor,
    history: RunHistoryRepository,
    reconciler: Reconciler,
) -> None:
    make_task("a-task", "Body")
    make_task("b-task", "Body")
    executor.steps = [
        QuotaError(
            "Agent command failed (exit=1, signal=none): You've hit your limit",
            reset_hint="resets 3pm (Europe/Berlin)",
            failure_class="quota_or_limit",
        ),
    ]

    summary = reconciler.reconcile()

    assert summary.halted
    assert "resets 3pm" in summary.stop_reason
    assert executor.task_ids == ["a-task"]
    assert reconciler.watchdog.failure_count("a-task") == 0
    assert _status(store, "a-task") == TaskStatus.IN_PROGRESS
    assert _status(store, "b-task") == TaskStatus.NOT_STARTED
    assert "## Usage Limit Reached" in store.get_body("a-task")
    latest = history.list_records(task_id="a-task", limit=1)[0]
    assert latest.detail["failure_class"] == "quota_or_limit"


def test_consecutive_failures_halt_exactly_at_the_limit(
    make_task: MakeTask,
    store: LocalBoardStore,
    executor: FakeExecutor,
    reconciler: Reconciler,
) -> None:
    make_task("task", "Body")
    executor.steps = [
        ExecutionError("Agent command failed (exit=2)", exit_code=2, stderr="fatal")
        for _ in range(3)
    ]

    first = reconciler.reconcile()
    second = reconciler.reconcile()
    third = reconciler.reconcile()

    assert not first.halted
    assert not second.halted
    assert third.halted
    assert "failed 3 consecutive times" in third.stop_reason
    assert len(executor.requests) == 3
    assert _status(store, "task") == TaskStatus.IN_PROGRESS


def test_success_resets_the_failure_ledger(
    make_task: MakeTask,
    executor: FakeExecutor,
    reconciler: Reconciler,
) -> None:
    make_task("task", "Body")
    executor.steps = [ExecutionError("boom", exit_code=1)]

    reconciler.reconcile()
    assert reconciler.watchdog.failure_count("task") == 1
    reconciler.reconcile()

    assert reconciler.watchdog.failure_count("task") == 0


def test_auto_reset_returns_failed_task_to_not_started(
    make_task: MakeTask,
    store: LocalBoardStore,
    settings: Settings,
    executor: FakeExecutor,
    reconciler: Reconciler,
) -> None:
    settings.state.auto_reset_failed_task = True
    make_task("task", "Body")
    executor.steps = [ExecutionError("boom", exit_code=1)]

    reconciler.reconcile()

    assert _status(store, "task") == TaskStatus.NOT_STARTED


def test_finished_run_is_finalized_without_rerunning_the_agent(
    make_task: MakeTask,
    store: LocalBoardStore,
    executor: FakeExecutor,
    history: RunHistoryRepository,
    reconciler: Reconciler,
) -> None:
    make_task("task", "- [x] done already\n", status="In Progress")
    task = store.get_task("task")
    history.mark_started(task)
    history.mark_done(task, ExecutionResult(summary="finished before crash"))

    summary = reconciler.reconcile()

    assert executor.requests == []
    assert summary.completed == ["task"]
    assert _status(store, "task") == TaskStatus.DONE


def test_lost_done_status_write_is_finalized_on_next_pass(
    make_task: MakeTask,
    store: LocalBoardStore,
    executor: FakeExecutor,
    history: RunHistoryRepository,
    reconciler: Reconciler,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    make_task("task", "Body")
    update_status = store.update_status

    def _failing_done_write(task_id: str, status: TaskStatus) -> None:
        if status == TaskStatus.DONE:
            raise StoreError("disk full", task_id=task_id)
        update_status(task_id, status)

    monkeypatch.setattr(store, "update_status", _failing_done_write)
    with pytest.raises(StoreError):
        reconciler.reconcile()

    assert _status(store, "task") == TaskStatus.IN_PROGRESS
    assert history.latest_event("task") == RunEvent.DONE

    monkeypatch.setattr(store, "update_status", update_status)
    summary = reconciler.reconcile()

    assert len(executor.requests) == 1
    assert summary.completed == ["task"]
    assert _status(store, "task") == TaskStatus.DONE
    assert store.get_body("task").count("## Execution Notes") == 1


def test_watchdog_abort_blocks_task_and_counts_a_failure(
    make_task: MakeTask,
    store: LocalBoardStore,
    executor: FakeExecutor,
    history: RunHistoryRepository,
    reconciler: Reconciler,
) -> None:
    make_task("task", "Body")

    def _stalled_run(request: ExecutionRequest) -> ExecutionResult:
        assert reconciler.watchdog.abort_current("Watchdog: task exceeded 30min (3/3 warnings)")
        assert request.abort_event is not None and request.abort_event.is_set()
        raise ExecutionError("Agent command failed (exit=-15, signal=SIGTERM)", aborted=True)

    executor.steps = [_stalled_run]

    summary = reconciler.reconcile()

    assert summary.failed == ["task"]
    assert not summary.halted
    assert "exceeded 30min" in summary.stop_reason
    assert reconciler.watchdog.failure_count("task") == 1
    assert reconciler.watchdog.current is None
    assert _status(store, "task") == TaskStatus.IN_PROGRESS
    latest = history.list_records(task_id="task", limit=1)[0]
    assert latest.event == RunEvent.FAILED
    assert latest.detail["failure_class"] == "aborted"
    body = store.get_body("task")
    assert "## Automation Blocked" in body
    assert "Watchdog: task exceeded 30min (3/3 warnings)" in body


def test_childless_epic_stalls_the_board_with_a_warning(
    make_task: MakeTask,
    store: LocalBoardStore,
    executor: FakeExecutor,
    reconciler: Reconciler,
    caplog: pytest.LogCaptureFixture,
) -> None:
    make_task("empty", "Epic body", epic=True, name="Empty Epic")
    make_task("standalone", "Body")

    with caplog.at_level(logging.WARNING, logger="backlog_runner.orchestrator.reconciler"):
        summary = reconciler.reconcile(ReconcileMode.EPIC)

    assert executor.requests == []
    assert summary.completed == []
    assert _status(store, "standalone") == TaskStatus.NOT_STARTED
    assert any(
        record.levelno == logging.WARNING and "'Empty Epic' has no child tasks" in record.message
        for record in caplog.records
    )


def test_review_failure_blocks_task_without_ledger_entry(
    make_task: MakeTask,
    store: LocalBoardStore,
    settings: Settings,
    executor: FakeExecutor,
    reconciler: Reconciler,
) -> None:
    settings.agent.review_enabled = True
    make_task("task", "Body", model="claude-sonnet-4-5")
    executor.steps = [
        lambda request: executor.done_result(request.task.id),
        ExecutionResult(status=ResultStatus.BLOCKED, notes="tests fail"),
    ]

    summary = reconciler.reconcile()

    assert executor.labels == ["task", "review"]
    assert executor.requests[1].model_override == settings.agent.review_model
    assert summary.failed == ["task"]
    assert reconciler.watchdog.failure_count("task") == 0
    assert _status(store, "task") == TaskStatus.IN_PROGRESS
    assert "## Review Blocked" in store.get_body("task")


def test_review_is_skipped_for_tasks_already_on_opus(
    make_task: MakeTask,
    settings: Settings,
    executor: FakeExecutor,
    reconciler: Reconciler,
) -> None:
    settings.agent.review_enabled = True
    make_task("task", "Body", model="claude-opus-4-6")

    summary = reconciler.reconcile()

    assert executor.labels == ["task"]
    assert summary.completed == ["task"]


def test_close_resets_done_children_with_unchecked_acs(
    make_task: MakeTask,
    store: LocalBoardStore,
    reconciler: Reconciler,
) -> None:
    make_task("epic", "Epic body", epic=True, status="In Progress")
    make_task("epic/a", "- [x] ok\n", status="Done")
    make_task("epic/b", "- [x] ok\n- [ ] forgotten\n", status="Done")

    closed = reconciler.close_completed_epics(store.list_tasks())

    assert closed == []
    assert _status(store, "epic") == TaskStatus.IN_PROGRESS
    assert _status(store, "epic/a") == TaskStatus.DONE
    assert _status(store, "epic/b") == TaskStatus.IN_PROGRESS


def test_close_completes_epic_when_every_child_is_clean(
    make_task: MakeTask,
    store: LocalBoardStore,
    history: RunHistoryRepository,
    reconciler: Reconciler,
) -> None:
    make_task("epic", "Epic body", epic=True, status="In Progress")
    make_task("epic/a", "- [x] ok\n", status="Done")
    make_task("epic/b", "No criteria", status="Done")

    closed = reconciler.close_completed_epics(store.list_tasks())

    assert closed == ["epic"]
    assert _status(store, "epic") == TaskStatus.DONE
    assert _status(store, "epic/b") == TaskStatus.DONE
    assert "Completed tasks:" in store.get_body("epic")
    assert history.latest_event("epic") == RunEvent.DONE
    assert reconciler.close_completed_epics(store.list_tasks()) == []


def test_epic_review_block_keeps_epic_open(
    make_task: MakeTask,
    store: LocalBoardStore,
    settings: Settings,
    executor: FakeExecutor,
    reconciler: Reconciler,
) -> None:
    settings.agent.epic_review_enabled = True
    make_task("epic", "Epic body", epic=True, status="In Progress")
    make_task("epic/a", "Child", status="Done")
    executor.steps = [ExecutionResult(status=ResultStatus.BLOCKED, notes="suite red")]

    closed = reconciler.close_completed_epics(store.list_tasks())

    assert closed == []
    assert executor.labels == ["epic-review"]
    assert executor.requests[0].timeout_seconds == settings.agent.epic_review_timeout_seconds
    assert _status(store, "epic") == TaskStatus.IN_PROGRESS
    assert "## Epic Review Blocked" in store.get_body("epic")


def test_missing_board_aborts_the_pass(
    board_dir: Path,
    reconciler: Reconciler,
) -> None:
    board_dir.rmdir()

    with pytest.raises(StoreError):
        reconciler.reconcile()
