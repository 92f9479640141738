"""Domain models for backlog tasks, agent results and orchestrator state."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states as written to the board."""

    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    DONE = "Done"

    @classmethod
    def parse(cls, value: str | None) -> TaskStatus:
        """Tolerant parse: case, separators and spacing are ignored."""

        normalized = "".join(ch for ch in str(value or "").lower() if ch.isalnum())
        for status in cls:
            if status.value.replace(" ", "").lower() == normalized:
                return status
        if not normalized:
            return cls.NOT_STARTED
        raise ValueError(f"Unknown task status: {value!r}")


class TaskType(str, Enum):
    """Known task types. Free text is tolerated on the board."""

    EPIC = "Epic"
    USER_STORY = "UserStory"
    BUG = "Bug"
    CHORE = "Chore"
    DISCOVERY = "Discovery"


class ReconcileMode(str, Enum):
    """Which selection policy a reconciliation pass uses."""

    TASKS = "tasks"
    EPIC = "epic"


class RunEvent(str, Enum):
    """Append-only run history events."""

    STARTED = "started"
    DONE = "done"
    FAILED = "failed"


class ResultStatus(str, Enum):
    """Agent self-reported outcome."""

    DONE = "done"
    BLOCKED = "blocked"


@dataclass(slots=True)
class Task:
    """Snapshot of one board task."""

    id: str
    name: str
    status: TaskStatus = TaskStatus.NOT_STARTED
    type: str = ""
    priority: str = ""
    model: str = ""
    agents: list[str] = field(default_factory=list)
    parent_id: str | None = None
    body: str = ""


@dataclass(slots=True, frozen=True)
class AcceptanceCriterion:
    """One checkbox in a task body. ``index`` is 1-based document order."""

    index: int
    text: str
    checked: bool


@dataclass(slots=True)
class ExecutionResult:
    """Agent self-report parsed from the terminal JSON object."""

    status: ResultStatus = ResultStatus.DONE
    summary: str = ""
    notes: str = ""
    files: list[str] = field(default_factory=list)
    tests: str = ""
    completed_acs: list[str] = field(default_factory=list)
    contract_found: bool = False
    stdout: str = ""
    stderr: str = ""

    @property
    def is_done(self) -> bool:
        return self.status == ResultStatus.DONE


@dataclass(slots=True)
class RunRecord:
    """Run history entry."""

    record_id: int
    task_id: str
    task_name: str
    parent_id: str | None
    event: RunEvent
    created_at: datetime
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class EpicSummary:
    """Aggregated run history across the children of one epic."""

    rows: list[dict[str, Any]]
    earliest: datetime | None
    latest: datetime | None
    total_duration_seconds: float


@dataclass(slots=True)
class WatchdogEntry:
    """Per-execution staleness state."""

    task_id: str
    warning_count: int = 0
    abort_event: threading.Event = field(default_factory=threading.Event)
    abort_reason: str = ""

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()


@dataclass(slots=True)
class HallucinationCheck:
    """Outcome of comparing a self-report with observable workdir state."""

    valid: bool
    reason: str = ""


@dataclass(slots=True)
class OrchestratorState:
    """Mutable scheduler state owned by a single scheduler instance."""

    running: bool = False
    paused: bool = False
    halted: bool = False
    pending: bool = False
    pending_reasons: list[str] = field(default_factory=list)
    pending_mode: ReconcileMode | None = None
    current_task_id: str | None = None
    halt_reason: str = ""
    last_run_at: datetime | None = None
    last_error: str = ""

    def snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "paused": self.paused,
            "halted": self.halted,
            "pending": self.pending,
            "pending_reasons": list(self.pending_reasons),
            "pending_mode": self.pending_mode.value if self.pending_mode else None,
            "current_task_id": self.current_task_id,
            "halt_reason": self.halt_reason,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


@dataclass(slots=True)
class PassSummary:
    """What one reconciliation pass did."""

    mode: ReconcileMode
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    closed_epics: list[str] = field(default_factory=list)
    halted: bool = False
    stop_reason: str = ""
