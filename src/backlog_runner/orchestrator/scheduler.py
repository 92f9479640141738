"""Debounced, coalescing scheduler that keeps at most one pass in flight."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from backlog_runner.orchestrator.models import (
    OrchestratorState,
    PassSummary,
    ReconcileMode,
)
from backlog_runner.storage.database import utc_now

logger = logging.getLogger(__name__)

ReconcileCallable = Callable[[ReconcileMode, str], PassSummary]


class Scheduler:
    """Owns ``OrchestratorState`` and turns bursts of triggers into serial passes.

    ``schedule`` while idle (re)arms the debounce timer. ``schedule`` while a
    pass runs only sets ``pending``; ``run_queued`` loops on that flag, so any
    number of triggers during a pass collapse into one follow-up pass.
    """

    def __init__(self, reconcile: ReconcileCallable, *, debounce_seconds: float) -> None:
        self._reconcile = reconcile
        self.debounce_seconds = debounce_seconds
        self.state = OrchestratorState()
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._closed = False
        self._idle = threading.Event()
        self._idle.set()

    def schedule(self, reason: str, mode: ReconcileMode | None = None) -> bool:
        """Queue a pass and (re)arm the debounce timer. False when the request was dropped."""

        with self._lock:
            if not self._enqueue(reason, mode):
                return False
            if self.state.running:
                return True

            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._on_timer)
            self._timer.daemon = True
            self._timer.start()
        return True

    def request(self, reason: str, mode: ReconcileMode | None = None) -> bool:
        """Queue a pass without arming the timer; the caller drains it with ``run_queued``."""

        with self._lock:
            return self._enqueue(reason, mode)

    def run_queued(self) -> list[PassSummary]:
        """Drain queued requests, one pass at a time, until nothing is pending."""

        with self._lock:
            if self.state.running:
                self.state.pending = True
                return []
            if not (self.state.pending or self.state.pending_reasons):
                return []
            self._cancel_timer()
            self.state.running = True
            self._idle.clear()
        summaries: list[PassSummary] = []
        try:
            while True:
                with self._lock:
                    self.state.pending = False
                    reasons = self.state.pending_reasons
                    self.state.pending_reasons = []
                    mode = self.state.pending_mode or ReconcileMode.TASKS
                    self.state.pending_mode = None
                reason = ", ".join(reasons) if reasons else "manual"

                summary = self._run_pass(mode, reason)
                if summary is not None:
                    summaries.append(summary)

                with self._lock:
                    if self.state.halted or self.state.paused:
                        break
                    if not (self.state.pending or self.state.pending_reasons):
                        break
        finally:
            with self._lock:
                self.state.running = False
                self._idle.set()
        return summaries

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no pass is running."""

        return self._idle.wait(timeout)

    def pause(self) -> bool:
        with self._lock:
            if self.state.paused:
                return False
            self.state.paused = True
            self._cancel_timer()
        logger.info("Orchestrator paused")
        return True

    def unpause(self) -> bool:
        with self._lock:
            if not self.state.paused:
                return False
            self.state.paused = False
        logger.info("Orchestrator unpaused")
        return True

    def resume(self) -> bool:
        """Clear a halt. Only an explicit resume does this."""

        with self._lock:
            if not self.state.halted:
                return False
            self.state.halted = False
            self.state.halt_reason = ""
        logger.info("Orchestrator resumed from halted state")
        return True

    def halt(self, reason: str) -> None:
        with self._lock:
            self.state.halted = True
            self.state.halt_reason = reason
            self._cancel_timer()
        logger.error("Orchestrator halted: %s", reason)

    def set_current_task(self, task_id: str | None) -> None:
        with self._lock:
            self.state.current_task_id = task_id

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return self.state.snapshot()

    def shutdown(self) -> None:
        """Stop accepting requests and cancel a pending debounce timer."""

        with self._lock:
            self._closed = True
            self._cancel_timer()

    def _run_pass(self, mode: ReconcileMode, reason: str) -> PassSummary | None:
        try:
            summary = self._reconcile(mode, reason)
        except Exception as error:
            logger.exception("Reconciliation pass failed")
            with self._lock:
                self.state.last_error = str(error)
                self.state.last_run_at = utc_now()
            return None
        with self._lock:
            self.state.last_run_at = utc_now()
            self.state.last_error = ""
        if summary.halted:
            self.halt(summary.stop_reason or "halted by reconciliation pass")
        return summary

    def _on_timer(self) -> None:
        with self._lock:
            self._timer = None
        try:
            self.run_queued()
        except Exception:
            logger.exception("Automation loop failed")

    def _enqueue(self, reason: str, mode: ReconcileMode | None) -> bool:
        if self._closed:
            return False
        if self.state.halted:
            logger.warning("Orchestrator halted, ignoring schedule request (%s)", reason)
            return False
        if self.state.paused:
            logger.info("Orchestrator paused, ignoring schedule request (%s)", reason)
            return False

        self.state.pending_reasons.append(reason)
        if mode is not None:
            self.state.pending_mode = mode
        if self.state.running:
            self.state.pending = True
        return True

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
