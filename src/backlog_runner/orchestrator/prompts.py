"""Prompt templates and markdown notes exchanged with the agent and the board."""

from __future__ import annotations

from datetime import datetime

from backlog_runner.orchestrator import acceptance
from backlog_runner.orchestrator.contracts import (
    AC_COMPLETE_MARKER,
    PROGRESS_MARKER,
    RESULT_SCHEMA_EXAMPLE,
)
from backlog_runner.orchestrator.models import EpicSummary, ExecutionResult, Task
from backlog_runner.storage.database import utc_now

_EXECUTION_RULES = """\
Execution rules:
- Complete the acceptance criteria of the task.
- When you finish successfully, create a commit with a clear, objective message.
- Do not put secrets in code, commits or logs.
"""

_MARKER_RULES = f"""\
Progress reporting:
- As soon as an acceptance criterion is satisfied, print one line:
  {AC_COMPLETE_MARKER} AC-<number>
- You may print short status lines while working:
  {PROGRESS_MARKER} <what you are doing>
- Markers are read while you run. Do not batch them at the end.
"""

_RESPONSE_RULES = f"""\
Response requirements:
- Finish with ONLY a valid JSON object on a single line.
- Required structure:
{RESULT_SCHEMA_EXAMPLE}
- Use "done" only when the implementation is complete.
- If you are blocked, use "blocked" and explain why in notes.
- List in completed_acs every acceptance criterion you satisfied.
"""

_REVIEW_RULES = f"""\
Review instructions:
- Check that every acceptance criterion in the task description is met.
- Review the changed files for correctness, code quality and project conventions.
- If you find problems, fix them directly and commit your fixes.
- Return "done" when everything is correct or you fixed every problem.
- Use "blocked" only for problems you cannot solve (missing access, external
  dependency, ambiguous requirements) and explain them in notes.
- Do not expose secrets in code, commits or logs.

Response requirements:
- Finish with ONLY a valid JSON object on a single line.
- Required structure:
{RESULT_SCHEMA_EXAMPLE}
"""

_EPIC_REVIEW_RULES = f"""\
Review instructions:
1. Run the full automated test suite of the project.
2. Review the complete epic implementation for consistency across sub-tasks.
3. Check code quality, project conventions and the absence of regressions.
4. If you find problems (failing tests, bugs, inconsistencies), fix them directly.
5. Commit your fixes if you changed anything.

Approval criteria:
- All automated tests pass.
- The implementation is consistent and free of regressions.
- The code follows the project conventions.

Response requirements:
- Finish with ONLY a valid JSON object on a single line.
- Required structure:
{RESULT_SCHEMA_EXAMPLE}
- Put the test run outcome in the "tests" field.
"""


def build_task_prompt(  # noqa: PLR0913
    task: Task,
    body: str,
    *,
    extra_prompt: str = "",
    force_test_creation: bool = False,
    force_test_run: bool = False,
    force_commit: bool = False,
) -> str:
    """Deterministic prompt for one task execution."""

    lines = [
        "Execute the task described below.",
        "",
        "Task context:",
        *_task_context(task),
        "",
        _or_placeholder(body, "(no description)"),
        "",
    ]
    ac_table = acceptance.format_acs_for_prompt(acceptance.parse_acs(body))
    if ac_table:
        lines.extend([ac_table, ""])
    lines.append(_EXECUTION_RULES)

    mandatory = []
    if force_test_creation:
        mandatory.append("- Make sure automated tests were created for this task where sensible.")
    if force_test_run:
        mandatory.append("- Run the tests and make sure all of them pass.")
    if force_commit:
        mandatory.append("- If everything is fine, commit the work before reporting done.")
    if mandatory:
        lines.extend(["Mandatory rules before finishing:", *mandatory, ""])

    lines.append(_MARKER_RULES)
    lines.append(_RESPONSE_RULES)

    if extra_prompt.strip():
        lines.extend(["Additional operator instructions:", extra_prompt.strip(), ""])
    return "\n".join(lines)


def build_corrective_prompt(original_prompt: str, reason: str) -> str:
    """Original prompt plus a correction section naming why the report was rejected."""

    return "\n".join(
        [
            original_prompt.rstrip(),
            "",
            "=" * 80,
            "CORRECTION REQUIRED",
            "=" * 80,
            "Your previous attempt reported the task as done, but it was rejected:",
            f"- {reason}",
            "",
            "Actually perform the work in the repository this time. Change the files the",
            "task requires and list them in the `files` field of your final JSON object.",
            'If you cannot do the work, report "blocked" and explain why in notes.',
            "",
        ],
    )


def build_review_prompt(task: Task, body: str, result: ExecutionResult) -> str:
    files = ", ".join(result.files) if result.files else "(none)"
    lines = [
        "You are reviewing work another model did on the task below.",
        "Verify the implementation meets the acceptance criteria, find problems and fix them.",
        "",
        "Task context:",
        *_task_context(task),
        "",
        "## Original task description",
        _or_placeholder(body, "(no description)"),
        "",
        "## Previous execution result",
        f"- Status: {result.status.value}",
        f"- Summary: {result.summary or '(none)'}",
        f"- Notes: {result.notes or '(none)'}",
        f"- Tests: {result.tests or '(none)'}",
        f"- Changed files: {files}",
        "",
        _REVIEW_RULES,
    ]
    return "\n".join(lines)


def build_epic_review_prompt(epic: Task, children: list[Task], summary: EpicSummary) -> str:
    durations = {row["id"]: row.get("duration_seconds") for row in summary.rows}
    child_lines = []
    for child in children:
        seconds = durations.get(child.id)
        duration = format_duration(seconds) if seconds else "(no data)"
        child_lines.append(f"- {child.name} (duration: {duration})")
    lines = [
        "You are reviewing a complete epic. Every sub-task was finished by other models.",
        "Make sure the epic implementation as a whole is correct and working.",
        "",
        "Epic context:",
        *_task_context(epic),
        f"- Total accumulated duration: {format_duration(summary.total_duration_seconds)}",
        "",
        "## Completed sub-tasks",
        *child_lines,
        "",
        _EPIC_REVIEW_RULES,
    ]
    return "\n".join(lines)


def build_completion_notes(
    task: Task,
    result: ExecutionResult,
    *,
    title: str = "Execution Notes",
    now: datetime | None = None,
) -> str:
    stamp = (now or utc_now()).isoformat()
    lines = [f"## {title} ({stamp})", f"Task: {task.name}"]
    for heading, value in (
        ("Summary", result.summary),
        ("Notes", result.notes),
        ("Tests", result.tests),
    ):
        if value:
            lines.extend(["", f"### {heading}", value])
    if result.completed_acs:
        lines.extend(["", "### Completed ACs", ", ".join(result.completed_acs)])
    if result.files:
        lines.extend(["", "### Files", *(f"- {name}" for name in result.files)])
    return "\n".join(lines)


def build_block_notes(
    task: Task,
    reason: str,
    *,
    detail: str = "",
    title: str = "Automation Blocked",
    now: datetime | None = None,
) -> str:
    stamp = (now or utc_now()).isoformat()
    lines = [f"## {title} ({stamp})", f"Task: {task.name}", f"Reason: {reason}"]
    if detail.strip():
        lines.extend(["", "```", detail.strip(), "```"])
    return "\n".join(lines)


def build_epic_summary(epic: Task, summary: EpicSummary, *, now: datetime | None = None) -> str:
    stamp = (now or utc_now()).isoformat()
    lines = [f"## Automation Summary ({stamp})", f"Epic: {epic.name}"]
    if summary.earliest:
        lines.append(f"Estimated start: {summary.earliest.isoformat()}")
    if summary.latest:
        lines.append(f"Estimated end: {summary.latest.isoformat()}")
    lines.append(f"Accumulated duration: {format_duration(summary.total_duration_seconds)}")
    lines.extend(["", "Completed tasks:"])
    lines.extend(
        f"- {row['name']} ({format_duration(row.get('duration_seconds') or 0)})"
        for row in summary.rows
    )
    return "\n".join(lines)


def format_duration(seconds: float | None) -> str:
    """``0m``, ``42m`` or ``3h 5m``."""

    if not seconds or seconds <= 0:
        return "0m"
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes = remainder // 60
    if hours == 0:
        return f"{minutes}m"
    return f"{hours}h {minutes}m"


def _task_context(task: Task) -> list[str]:
    agents = ", ".join(task.agents) if task.agents else "(no agents specified)"
    return [
        f"- Name: {_or_placeholder(task.name)}",
        f"- ID: {_or_placeholder(task.id)}",
        f"- Type: {_or_placeholder(task.type)}",
        f"- Priority: {_or_placeholder(task.priority)}",
        f"- Agents to run for this task: {agents}",
    ]


def _or_placeholder(value: str | None, placeholder: str = "(not provided)") -> str:
    text = str(value or "").strip()
    return text or placeholder
