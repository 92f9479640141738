"""Controllers for backlog-runner CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from backlog_runner.board.local import LocalBoardStore
from backlog_runner.board.validator import format_summary, validate_board
from backlog_runner.config import Settings
from backlog_runner.orchestrator import acceptance, selector
from backlog_runner.orchestrator.models import PassSummary, ReconcileMode, TaskStatus
from backlog_runner.orchestrator.repository import RunHistoryRepository
from backlog_runner.orchestrator.services import Orchestrator


@dataclass(slots=True)
class RunCommand:
    """CLI input for a reconciliation run."""

    board_dir: Path | None
    once: bool
    mode: str = ReconcileMode.TASKS.value


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for board listing."""

    board_dir: Path | None
    status: str | None


@dataclass(slots=True)
class HistoryCommand:
    """CLI input for run history listing."""

    board_dir: Path | None
    task_id: str | None
    limit: int


@dataclass(slots=True)
class BoardValidateCommand:
    """CLI input for board structure validation."""

    board_dir: Path | None


@dataclass(slots=True)
class BoardAcsCommand:
    """CLI input for acceptance criteria inspection."""

    board_dir: Path | None
    task_id: str


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus the exit verdict."""

    lines: list[str]
    success: bool = True


class BacklogCliController:
    """Coordinates run, listing and inspection CLI operations."""

    def run(self, command: RunCommand) -> CommandResult:
        settings = _settings(command.board_dir)
        orchestrator = Orchestrator(settings)
        try:
            if not command.once:
                orchestrator.serve()
                return CommandResult(lines=["Orchestrator stopped."])
            summary = orchestrator.run_pass(ReconcileMode(command.mode))
            state = orchestrator.is_running()
        finally:
            orchestrator.close()

        if summary is None:
            return CommandResult(
                lines=[f"Pass did not complete: {state['last_error'] or 'nothing ran'}"],
                success=False,
            )
        lines = _render_summary(summary)
        if state["halted"]:
            lines.append(f"Orchestrator halted: {state['halt_reason']}")
        return CommandResult(lines=lines, success=not summary.failed)

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.board_dir)
        tasks = LocalBoardStore(settings.board.board_dir).list_tasks()
        wanted = TaskStatus.parse(command.status) if command.status else None
        lines = []
        for task in selector.sort_candidates(tasks, settings.queue.order):
            if wanted is not None and task.status != wanted:
                continue
            kind = "epic" if selector.is_epic_task(task, tasks) else (task.type or "task")
            lines.append(
                f"{task.id} status={task.status.value} type={kind} "
                f"priority={task.priority or '-'} name={task.name}",
            )
        if not lines:
            return ["No tasks found."]
        return lines

    def history(self, command: HistoryCommand) -> list[str]:
        settings = _settings(command.board_dir)
        with _repository(settings) as repository:
            records = repository.list_records(task_id=command.task_id, limit=command.limit)
        if not records:
            return ["No run history."]
        lines = []
        for record in records:
            line = (
                f"{record.created_at.isoformat()} {record.event.value} "
                f"task_id={record.task_id} name={record.task_name}"
            )
            error = record.detail.get("error")
            if error:
                line += f" error={error}"
            lines.append(line)
        return lines

    def validate_board(self, command: BoardValidateCommand) -> CommandResult:
        settings = _settings(command.board_dir)
        result = validate_board(settings.board.board_dir)
        return CommandResult(lines=format_summary(result), success=result.valid)

    def acceptance_criteria(self, command: BoardAcsCommand) -> list[str]:
        settings = _settings(command.board_dir)
        body = LocalBoardStore(settings.board.board_dir).get_body(command.task_id)
        acs = acceptance.parse_acs(body)
        if not acs:
            return [f"No acceptance criteria in {command.task_id}."]
        lines = [
            f"AC-{ac.index} [{'x' if ac.checked else ' '}] {ac.text}"
            for ac in acs
        ]
        lines.append(f"Unchecked: {acceptance.count_unchecked(body)} of {len(acs)}")
        return lines


def _render_summary(summary: PassSummary) -> list[str]:
    lines = [
        "Pass summary: "
        f"mode={summary.mode.value} completed={len(summary.completed)} "
        f"failed={len(summary.failed)} closed_epics={len(summary.closed_epics)}",
    ]
    lines.extend(f"  done: {task_id}" for task_id in summary.completed)
    lines.extend(f"  failed: {task_id}" for task_id in summary.failed)
    lines.extend(f"  epic closed: {task_id}" for task_id in summary.closed_epics)
    if summary.stop_reason:
        lines.append(f"Stop reason: {summary.stop_reason}")
    return lines


def _settings(board_dir: Path | None) -> Settings:
    settings = Settings.from_env(board_dir=board_dir)
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[RunHistoryRepository]:
    repository = RunHistoryRepository(settings.state.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
