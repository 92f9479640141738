"""Executor interface for running one task through an external agent."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from backlog_runner.orchestrator.models import ExecutionResult, Task

ProgressPayload = dict[str, Any] | str


@dataclass(slots=True)
class ExecutionRequest:
    """Inputs required to execute one agent run."""

    task: Task
    prompt: str
    timeout_seconds: int
    abort_event: threading.Event = field(default_factory=threading.Event)
    on_ac_complete: Callable[[str], None] | None = None
    on_progress: Callable[[ProgressPayload], None] | None = None
    model_override: str | None = None
    label: str = "task"


class AgentExecutor(Protocol):
    """Protocol implemented by agent runners and by test doubles."""

    def run(self, request: ExecutionRequest) -> ExecutionResult:
        """Run the agent and return its parsed self-report.

        Raises ``ExecutionError`` (or ``QuotaError``) when the run fails.
        """
