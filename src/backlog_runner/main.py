"""CLI entrypoint for backlog-runner."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from backlog_runner import __version__
from backlog_runner.controllers import (
    BacklogCliController,
    BoardAcsCommand,
    BoardValidateCommand,
    HistoryCommand,
    ListTasksCommand,
    RunCommand,
)
from backlog_runner.orchestrator.errors import OrchestratorError
from backlog_runner.orchestrator.models import ReconcileMode, TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = BacklogCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

T = TypeVar("T")
R = TypeVar("R")

board_dir_option = click.option(
    "--board-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Board directory. Defaults to BACKLOG_RUNNER_BOARD_DIR or ./Board.",
)


@click.group()
@click.version_option(version=__version__, prog_name="backlog-runner")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def backlog_runner(log_level: str) -> None:
    """Delegate backlog tasks to a coding agent and reconcile the board.

    Tasks live as markdown files with YAML frontmatter. Each pass picks the
    next task, runs the agent on it and only marks it **Done** once the work
    is verified and every acceptance criterion is checked.
    """

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@backlog_runner.command("run")
@board_dir_option
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one pass and exit, or keep polling the board until interrupted.",
)
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in ReconcileMode], case_sensitive=False),
    default=ReconcileMode.TASKS.value,
    show_default=True,
    help="Start the pass in standalone task mode or epic mode.",
)
def run(board_dir: Path | None, once: bool, mode: str) -> None:
    """Run reconciliation passes against the board."""

    result = _invoke(
        CONTROLLER.run,
        RunCommand(board_dir=board_dir, once=once, mode=mode.lower()),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Reconciliation pass did not finish cleanly.")


@backlog_runner.command("tasks")
@board_dir_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Only show tasks with this status.",
)
def tasks(board_dir: Path | None, status: str | None) -> None:
    """List board tasks in selection order."""

    _emit_lines(
        _invoke(CONTROLLER.list_tasks, ListTasksCommand(board_dir=board_dir, status=status)),
    )


@backlog_runner.command("history")
@board_dir_option
@click.option("--task-id", default=None, help="Only show records for this task id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of records to print.",
)
def history(board_dir: Path | None, task_id: str | None, limit: int) -> None:
    """Show run history, newest first."""

    _emit_lines(
        _invoke(
            CONTROLLER.history,
            HistoryCommand(board_dir=board_dir, task_id=task_id, limit=limit),
        ),
    )


@backlog_runner.group()
def board() -> None:
    """Board inspection commands."""


@board.command("validate")
@board_dir_option
def board_validate(board_dir: Path | None) -> None:
    """Check board layout and task frontmatter."""

    result = _invoke(CONTROLLER.validate_board, BoardValidateCommand(board_dir=board_dir))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Board validation failed.")


@board.command("acs")
@board_dir_option
@click.option("--task-id", required=True, help="Task id, e.g. `my-task` or `my-epic/child`.")
def board_acs(board_dir: Path | None, task_id: str) -> None:
    """Show acceptance criteria of one task."""

    _emit_lines(
        _invoke(
            CONTROLLER.acceptance_criteria,
            BoardAcsCommand(board_dir=board_dir, task_id=task_id),
        ),
    )


def _invoke(handler: Callable[[T], R], command: T) -> R:
    try:
        return handler(command)
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    backlog_runner()
