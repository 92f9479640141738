"""Orchestrator facade: wiring and the control surface used by the CLI."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from backlog_runner.board.base import TaskStore
from backlog_runner.board.local import LocalBoardStore
from backlog_runner.config import Settings
from backlog_runner.orchestrator.backend import AgentExecutor, CliAgentBackend
from backlog_runner.orchestrator.models import PassSummary, ReconcileMode
from backlog_runner.orchestrator.reconciler import Reconciler
from backlog_runner.orchestrator.repository import RunHistoryRepository
from backlog_runner.orchestrator.scheduler import Scheduler
from backlog_runner.orchestrator.watchdog import Watchdog

logger = logging.getLogger(__name__)


class Orchestrator:
    """Owns one reconciler and the scheduler that serializes its passes."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: TaskStore | None = None,
        executor: AgentExecutor | None = None,
        history: RunHistoryRepository | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or LocalBoardStore(settings.board.board_dir)
        self.executor = executor or CliAgentBackend(
            settings.agent,
            logs_dir=settings.state.logs_dir,
        )
        if history is None:
            history = RunHistoryRepository(settings.state.db_path)
            history.init_schema()
        self.history = history
        self.watchdog = Watchdog(settings.watchdog)
        self.scheduler = Scheduler(
            self._reconcile,
            debounce_seconds=settings.queue.debounce_seconds,
        )
        self.reconciler = Reconciler(
            store=self.store,
            executor=self.executor,
            history=self.history,
            watchdog=self.watchdog,
            settings=settings,
            on_task_change=self.scheduler.set_current_task,
        )
        self._stop_event = threading.Event()

    def schedule(self, reason: str, mode: ReconcileMode | None = None) -> bool:
        return self.scheduler.schedule(reason, mode)

    def pause(self) -> bool:
        return self.scheduler.pause()

    def unpause(self) -> bool:
        return self.scheduler.unpause()

    def resume(self) -> bool:
        """Clear a halt and queue a pass so pending work picks up again."""

        if not self.scheduler.resume():
            return False
        self.scheduler.schedule("resume")
        return True

    def is_running(self) -> dict[str, Any]:
        return self.scheduler.snapshot()

    def run_pass(self, mode: ReconcileMode = ReconcileMode.TASKS) -> PassSummary | None:
        """Run one pass synchronously. Returns ``None`` when halted or paused."""

        if not self.scheduler.request("manual", mode):
            return None
        summaries = self.scheduler.run_queued()
        return summaries[-1] if summaries else None

    def serve(self) -> None:
        """Poll the board until SIGINT or SIGTERM."""

        queue = self.settings.queue
        logger.info(
            "Orchestrator serving board %s (poll interval: %ss)",
            self.settings.board.board_dir,
            queue.poll_interval_seconds,
        )
        with self._signal_handlers():
            if queue.run_on_startup:
                self.schedule("startup")
            while not self._stop_event.wait(queue.poll_interval_seconds):
                self.schedule("poll")
        self.scheduler.wait_idle()
        logger.info("Orchestrator stopped")

    def stop(self, reason: str = "stop requested") -> None:
        logger.info("Stopping orchestrator: %s", reason)
        self._stop_event.set()
        self.scheduler.shutdown()
        self.watchdog.abort_current(reason)

    def close(self) -> None:
        self.scheduler.shutdown()
        self.history.close()

    def _reconcile(self, mode: ReconcileMode, reason: str) -> PassSummary:
        return self.reconciler.reconcile(mode, reason)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.stop(f"received {name}")

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
