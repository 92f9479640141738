"""Staleness timer for running executions and the consecutive failure ledger."""

from __future__ import annotations

import logging
import threading

from backlog_runner.config import WatchdogSettings
from backlog_runner.orchestrator.models import Task, WatchdogEntry

logger = logging.getLogger(__name__)


class Watchdog:
    """Warns on long executions, aborts after ``max_warnings`` and tracks repeated failures.

    The failure ledger is keyed per task but the halt it signals is global:
    one task failing over and over usually means the environment is broken.
    """

    def __init__(self, settings: WatchdogSettings) -> None:
        self.settings = settings
        self._lock = threading.Lock()
        self._current: WatchdogEntry | None = None
        self._task_name = ""
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._consecutive_failures: dict[str, int] = {}

    @property
    def current(self) -> WatchdogEntry | None:
        return self._current

    def start(self, task: Task) -> WatchdogEntry:
        """Begin supervising one execution. Any previous timer is stopped first."""

        self.stop()
        entry = WatchdogEntry(task_id=task.id)
        with self._lock:
            self._current = entry
            self._task_name = task.name
        if not self.settings.enabled:
            return entry

        stop_event = threading.Event()
        self._stop_event = stop_event
        self._thread = threading.Thread(
            target=self._run,
            args=(entry, stop_event),
            name=f"watchdog-{task.id}",
            daemon=True,
        )
        self._thread.start()
        return entry

    def check(self, entry: WatchdogEntry) -> bool:
        """Register one elapsed interval. Returns true when the execution was aborted."""

        entry.warning_count += 1
        max_warnings = self.settings.max_warnings
        elapsed_min = round(entry.warning_count * self.settings.interval_seconds / 60)
        if entry.warning_count >= max_warnings:
            entry.abort_reason = (
                f"Watchdog: task exceeded {elapsed_min}min "
                f"({entry.warning_count}/{max_warnings} warnings)"
            )
            logger.error(
                "Watchdog: task %s exceeded %smin (%s/%s warnings). Aborting execution.",
                entry.task_id,
                elapsed_min,
                entry.warning_count,
                max_warnings,
            )
            entry.abort_event.set()
            return True
        logger.warning(
            "Watchdog: task %s running for %smin (warning %s/%s).",
            entry.task_id,
            elapsed_min,
            entry.warning_count,
            max_warnings,
        )
        return False

    def stop(self) -> None:
        """Clear the timer of the current execution."""

        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._thread = None
        with self._lock:
            self._current = None
            self._task_name = ""

    def abort_current(self, reason: str) -> bool:
        """Abort whatever is running now, e.g. on shutdown."""

        with self._lock:
            entry = self._current
        if entry is None:
            return False
        entry.abort_reason = reason
        entry.abort_event.set()
        return True

    def record_failure(self, task_id: str, task_name: str = "") -> bool:
        """Count one more consecutive failure. True means the orchestrator must halt."""

        with self._lock:
            current = self._consecutive_failures.get(task_id, 0) + 1
            self._consecutive_failures[task_id] = current
        max_failures = self.settings.max_consecutive_failures
        label = task_name or task_id
        if current >= max_failures:
            logger.error(
                "Watchdog: task %r has failed %s consecutive times. "
                "Orchestrator halted, manual intervention required.",
                label,
                current,
            )
            return True
        logger.warning(
            "Watchdog: task %r failed (%s/%s consecutive failures).",
            label,
            current,
            max_failures,
        )
        return False

    def record_success(self, task_id: str) -> None:
        with self._lock:
            self._consecutive_failures.pop(task_id, None)

    def failure_count(self, task_id: str) -> int:
        with self._lock:
            return self._consecutive_failures.get(task_id, 0)

    def _run(self, entry: WatchdogEntry, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.settings.interval_seconds):
            if self.check(entry):
                return
