"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterator
from functools import partial
from pathlib import Path

import pytest

from backlog_runner.board.frontmatter import join_frontmatter
from backlog_runner.board.local import LocalBoardStore
from backlog_runner.config import (
    AgentSettings,
    BoardSettings,
    QueueSettings,
    Settings,
    StateSettings,
    WatchdogSettings,
)
from backlog_runner.orchestrator.backend.base import ExecutionRequest
from backlog_runner.orchestrator.models import ExecutionResult, ResultStatus
from backlog_runner.orchestrator.reconciler import Reconciler
from backlog_runner.orchestrator.repository import RunHistoryRepository
from backlog_runner.orchestrator.watchdog import Watchdog

ECHO_AGENT_COMMAND = f"{sys.executable} -m backlog_runner.orchestrator.backend.echo_agent"

Step = ExecutionResult | Exception | Callable[[ExecutionRequest], ExecutionResult]


class FakeExecutor:
    """Scripted executor: each run consumes the next step.

    A step is a result to return, an exception to raise, or a callable that
    receives the request (and may call its marker callbacks) and returns a result.
    Once the script is exhausted every run returns ``done_result()``.
    """

    def __init__(self, workdir: Path, steps: list[Step] | None = None) -> None:
        self.workdir = workdir
        self.steps = list(steps or [])
        self.requests: list[ExecutionRequest] = []

    def run(self, request: ExecutionRequest) -> ExecutionResult:
        self.requests.append(request)
        step = self.steps.pop(0) if self.steps else self.done_result(request.task.id)
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(request)
        return step

    def done_result(
        self,
        task_id: str,
        *,
        completed_acs: list[str] | None = None,
    ) -> ExecutionResult:
        """Done report backed by a file written into the workdir."""

        name = f"{task_id.replace('/', '__')}.txt"
        (self.workdir / name).write_text(task_id, "utf-8")
        return ExecutionResult(
            status=ResultStatus.DONE,
            summary=f"worked on {task_id}",
            files=[name],
            completed_acs=list(completed_acs or []),
            contract_found=True,
        )

    @property
    def labels(self) -> list[str]:
        return [request.label for request in self.requests]

    @property
    def task_ids(self) -> list[str]:
        return [request.task.id for request in self.requests]


def write_task(board_dir: Path, task_id: str, body: str = "", **fields: object) -> Path:
    """Write one board task. ``task_id`` is ``slug``, ``epic`` or ``epic/child``."""

    if "/" in task_id:
        epic, child = task_id.split("/", 1)
        path = board_dir / epic / f"{child}.md"
    elif fields.pop("epic", False):
        path = board_dir / task_id / "epic.md"
    else:
        path = board_dir / f"{task_id}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    fields.setdefault("status", "Not Started")
    path.write_text(join_frontmatter(dict(fields), body), "utf-8")
    return path


@pytest.fixture()
def board_dir(tmp_path: Path) -> Path:
    path = tmp_path / "Board"
    path.mkdir()
    return path


@pytest.fixture()
def make_task(board_dir: Path) -> Callable[..., Path]:
    return partial(write_task, board_dir)


@pytest.fixture()
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture()
def settings(tmp_path: Path, board_dir: Path, workdir: Path) -> Settings:
    return Settings(
        board=BoardSettings(board_dir=board_dir),
        queue=QueueSettings(debounce_seconds=0.0, max_tasks_per_run=50, run_on_startup=False),
        agent=AgentSettings(command_template=ECHO_AGENT_COMMAND, workdir=workdir),
        watchdog=WatchdogSettings(enabled=False, max_consecutive_failures=3),
        state=StateSettings(
            db_path=tmp_path / "state" / "runs.db",
            logs_dir=tmp_path / "state" / "logs",
        ),
    )


@pytest.fixture()
def store(board_dir: Path) -> LocalBoardStore:
    return LocalBoardStore(board_dir)


@pytest.fixture()
def history(settings: Settings) -> Iterator[RunHistoryRepository]:
    repository = RunHistoryRepository(settings.state.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def executor(workdir: Path) -> FakeExecutor:
    return FakeExecutor(workdir)


@pytest.fixture()
def reconciler(
    settings: Settings,
    store: LocalBoardStore,
    executor: FakeExecutor,
    history: RunHistoryRepository,
) -> Reconciler:
    return Reconciler(
        store=store,
        executor=executor,
        history=history,
        watchdog=Watchdog(settings.watchdog),
        settings=settings,
    )
