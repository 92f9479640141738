"""Pure selection policy over a board snapshot."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum

from backlog_runner.orchestrator.models import Task, TaskStatus, TaskType

_PRIORITY_RE = re.compile(r"p(\d+)", re.IGNORECASE)


class SelectionSource(str, Enum):
    """Whether the pick resumes existing work or starts new work."""

    IN_PROGRESS = "in_progress"
    NOT_STARTED = "not_started"


@dataclass(slots=True, frozen=True)
class Selection:
    task: Task
    source: SelectionSource

    @property
    def resumed(self) -> bool:
        return self.source == SelectionSource.IN_PROGRESS


@dataclass(slots=True, frozen=True)
class EpicKickoff:
    """Status stamps applied when an epic is started for the first time."""

    epic: Task
    active_child: Task | None
    waiting_children: list[Task]


def parse_priority(priority: str | None) -> float:
    """``P0`` sorts first; a missing or unparseable priority sorts last."""

    if not priority:
        return math.inf
    match = _PRIORITY_RE.search(str(priority))
    if not match:
        return math.inf
    return float(match.group(1))


def sort_candidates(tasks: list[Task], order: str) -> list[Task]:
    if order == "priority_then_alphabetical":
        return sorted(tasks, key=lambda task: (parse_priority(task.priority), task.id.lower()))
    return sorted(tasks, key=lambda task: task.id.lower())


def is_epic_task(task: Task, tasks: list[Task]) -> bool:
    """Epic by type, or any task that has children."""

    if task.type.strip().lower() == TaskType.EPIC.value.lower():
        return True
    return any(candidate.parent_id == task.id for candidate in tasks)


def epic_children(epic: Task, tasks: list[Task]) -> list[Task]:
    return [
        task for task in tasks if task.parent_id == epic.id and not is_epic_task(task, tasks)
    ]


def pick_next_task(tasks: list[Task], order: str) -> Selection | None:
    """Next standalone leaf task. Epic children are only picked in epic mode."""

    candidates = [
        task for task in tasks if task.parent_id is None and not is_epic_task(task, tasks)
    ]
    return _pick_resume_first(candidates, order)


def pick_next_epic(tasks: list[Task], order: str) -> Selection | None:
    """One epic at a time.

    An ``In Progress`` epic is resumed. Otherwise the first epic that is not
    ``Done`` is started, and only if it is ``Not Started``: a later epic is
    never started ahead of an earlier one.
    """

    epics = [task for task in tasks if is_epic_task(task, tasks)]
    in_progress = sort_candidates(
        [epic for epic in epics if epic.status == TaskStatus.IN_PROGRESS],
        order,
    )
    if in_progress:
        return Selection(in_progress[0], SelectionSource.IN_PROGRESS)
    for epic in sort_candidates(epics, order):
        if epic.status == TaskStatus.DONE:
            continue
        if epic.status == TaskStatus.NOT_STARTED:
            return Selection(epic, SelectionSource.NOT_STARTED)
        return None
    return None


def pick_next_epic_child(tasks: list[Task], epic_id: str, order: str) -> Selection | None:
    children = [
        task for task in tasks if task.parent_id == epic_id and not is_epic_task(task, tasks)
    ]
    return _pick_resume_first(children, order)


def plan_epic_kickoff(epic: Task, tasks: list[Task], order: str) -> EpicKickoff:
    """Exactly one child becomes active, every other unfinished child waits."""

    children = sort_candidates(
        [child for child in epic_children(epic, tasks) if child.status != TaskStatus.DONE],
        order,
    )
    if not children:
        return EpicKickoff(epic=epic, active_child=None, waiting_children=[])
    return EpicKickoff(epic=epic, active_child=children[0], waiting_children=children[1:])


def has_incomplete_epic(tasks: list[Task]) -> bool:
    return any(
        is_epic_task(task, tasks) and task.status != TaskStatus.DONE for task in tasks
    )


def _pick_resume_first(candidates: list[Task], order: str) -> Selection | None:
    for status, source in (
        (TaskStatus.IN_PROGRESS, SelectionSource.IN_PROGRESS),
        (TaskStatus.NOT_STARTED, SelectionSource.NOT_STARTED),
    ):
        matching = sort_candidates([task for task in candidates if task.status == status], order)
        if matching:
            return Selection(matching[0], source)
    return None
