"""Reconciliation passes: select, execute, validate and record one task at a time."""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import partial
from pathlib import Path

from backlog_runner.board.base import TaskStore
from backlog_runner.config import Settings
from backlog_runner.orchestrator import acceptance, prompts, selector
from backlog_runner.orchestrator.acceptance import AcRef
from backlog_runner.orchestrator.backend.base import (
    AgentExecutor,
    ExecutionRequest,
    ProgressPayload,
)
from backlog_runner.orchestrator.errors import (
    ExecutionError,
    QuotaError,
    ReviewError,
    ValidationError,
)
from backlog_runner.orchestrator.failure_classifier import FailureClass
from backlog_runner.orchestrator.models import (
    EpicSummary,
    ExecutionResult,
    PassSummary,
    ReconcileMode,
    RunEvent,
    Task,
    TaskStatus,
)
from backlog_runner.orchestrator.repository import RunHistoryRepository
from backlog_runner.orchestrator.sanitization import sanitize_preview
from backlog_runner.orchestrator.validator import validate_execution
from backlog_runner.orchestrator.watchdog import Watchdog
from backlog_runner.orchestrator.workdir import capture_snapshot

logger = logging.getLogger(__name__)

_MAX_MODE_SWITCHES = 4


class Reconciler:
    """Runs reconciliation passes against a task store.

    A pass repeatedly snapshots the store, picks the next candidate, runs it
    under the watchdog and only marks it ``Done`` once the self-report is
    corroborated and no acceptance criterion is left unchecked. The first
    failure stops the pass.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        executor: AgentExecutor,
        history: RunHistoryRepository,
        watchdog: Watchdog,
        settings: Settings,
        on_task_change: Callable[[str | None], None] | None = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.history = history
        self.watchdog = watchdog
        self.settings = settings
        self.on_task_change = on_task_change
        self._remaining = 0

    @property
    def workdir(self) -> Path:
        return self.settings.agent.workdir

    @property
    def order(self) -> str:
        return self.settings.queue.order

    def reconcile(
        self,
        mode: ReconcileMode = ReconcileMode.TASKS,
        reason: str = "manual",
    ) -> PassSummary:
        """Run one pass. ``StoreError`` propagates and aborts the pass."""

        logger.info("Starting reconciliation (mode: %s, reason: %s)", mode.value, reason)
        summary = PassSummary(mode=mode)
        self._remaining = self.settings.queue.max_tasks_per_run

        current: ReconcileMode | None = mode
        for _ in range(_MAX_MODE_SWITCHES):
            if current is None:
                break
            if current == ReconcileMode.EPIC:
                current = self._run_epic_mode(summary)
            else:
                current = self._run_task_mode(summary)

        if not summary.halted:
            summary.closed_epics.extend(
                self.close_completed_epics(self.store.list_tasks(), summary),
            )
        logger.info(
            "Reconciliation finished (completed: %s, failed: %s, closed epics: %s, reason: %s)",
            len(summary.completed),
            len(summary.failed),
            len(summary.closed_epics),
            reason,
        )
        return summary

    def close_completed_epics(
        self,
        tasks: list[Task],
        summary: PassSummary | None = None,
    ) -> list[str]:
        """Close every unfinished epic whose children are all ``Done`` with no open ACs.

        A ``Done`` child that still has unchecked ACs is reset to ``In Progress``
        and its epic stays open.
        """

        closed: list[str] = []
        for epic in tasks:
            if epic.status == TaskStatus.DONE or not selector.is_epic_task(epic, tasks):
                continue
            children = selector.epic_children(epic, tasks)
            if not children or any(child.status != TaskStatus.DONE for child in children):
                continue

            dirty = [
                child
                for child in children
                if acceptance.count_unchecked(self.store.get_body(child.id)) > 0
            ]
            if dirty:
                for child in dirty:
                    logger.warning(
                        "Child %s is Done but has unchecked ACs, resetting to In Progress",
                        child.id,
                    )
                    self.store.update_status(child.id, TaskStatus.IN_PROGRESS)
                continue

            epic_summary = self.history.epic_summary(children)
            if self.settings.agent.epic_review_enabled:
                try:
                    self._review_epic(epic, children, epic_summary)
                except QuotaError as error:
                    self._handle_quota(epic, error, summary, record_history=False)
                    return closed
                except (ReviewError, ExecutionError) as error:
                    logger.warning("Epic review blocked %r: %s", epic.name, error)
                    detail = error.summary if isinstance(error, ReviewError) else ""
                    self.store.append_to_body(
                        epic.id,
                        prompts.build_block_notes(
                            epic,
                            str(error),
                            detail=detail,
                            title="Epic Review Blocked",
                        ),
                    )
                    continue

            for child in children:
                self.store.update_status(child.id, TaskStatus.DONE)
            self.store.update_status(epic.id, TaskStatus.DONE)
            self.store.append_to_body(epic.id, prompts.build_epic_summary(epic, epic_summary))
            self.history.mark_done(
                epic,
                ExecutionResult(summary=f"Epic closed with {len(children)} children"),
            )
            logger.info("Epic moved to Done: %r (children: %s)", epic.name, len(children))
            closed.append(epic.id)
        return closed

    def _run_task_mode(self, summary: PassSummary) -> ReconcileMode | None:
        while self._remaining > 0:
            tasks = self.store.list_tasks()
            if selector.has_incomplete_epic(tasks):
                logger.info("Unfinished epic on the board, delegating to epic mode")
                return ReconcileMode.EPIC
            selection = selector.pick_next_task(tasks, self.order)
            if selection is None:
                logger.info("No standalone task left to run")
                return None
            if not self._process(selection, summary):
                return None
        return None

    def _run_epic_mode(self, summary: PassSummary) -> ReconcileMode | None:
        while self._remaining > 0:
            tasks = self.store.list_tasks()
            selection = selector.pick_next_epic(tasks, self.order)
            if selection is None:
                if selector.has_incomplete_epic(tasks):
                    logger.warning("Next epic is in an unexpected state, not starting later epics")
                    return None
                logger.info("No unfinished epic left, falling back to task mode")
                return ReconcileMode.TASKS

            epic = selection.task
            if not selection.resumed:
                self._kickoff_epic(epic, tasks)
                tasks = self.store.list_tasks()

            child = selector.pick_next_epic_child(tasks, epic.id, self.order)
            if child is None:
                closed = self.close_completed_epics(tasks, summary)
                summary.closed_epics.extend(closed)
                if epic.id in closed:
                    continue
                if not selector.epic_children(epic, tasks):
                    logger.warning(
                        "Epic %r has no child tasks and can never close. "
                        "Later epics and standalone tasks wait until it gets children or is Done.",
                        epic.name,
                    )
                else:
                    logger.info("Epic %r has no runnable child and cannot close yet", epic.name)
                return None
            if not self._process(child, summary):
                return None
        return None

    def _kickoff_epic(self, epic: Task, tasks: list[Task]) -> None:
        plan = selector.plan_epic_kickoff(epic, tasks, self.order)
        self.store.update_status(epic.id, TaskStatus.IN_PROGRESS)
        self.history.mark_started(epic)
        if plan.active_child is not None:
            self.store.update_status(plan.active_child.id, TaskStatus.IN_PROGRESS)
        for child in plan.waiting_children:
            if child.status != TaskStatus.NOT_STARTED:
                self.store.update_status(child.id, TaskStatus.NOT_STARTED)
        logger.info(
            "Epic started: %r (active child: %s, waiting: %s)",
            epic.name,
            plan.active_child.id if plan.active_child else None,
            len(plan.waiting_children),
        )

    def _process(self, selection: selector.Selection, summary: PassSummary) -> bool:
        self._remaining -= 1
        task = selection.task
        self._set_current(task.id)
        try:
            return self._execute_task(task, summary, in_progress=selection.resumed)
        finally:
            self._set_current(None)

    def _execute_task(  # noqa: C901, PLR0911
        self,
        task: Task,
        summary: PassSummary,
        *,
        in_progress: bool,
    ) -> bool:
        if in_progress and self._finalize_if_already_done(task, summary):
            return True

        if not in_progress:
            self.store.update_status(task.id, TaskStatus.IN_PROGRESS)
            logger.info("Moved to In Progress: %r", task.name)
        else:
            logger.info("Resuming In Progress task: %r", task.name)
        resumed = in_progress and self.history.latest_event(task.id) is not None
        self.history.mark_started(task, resumed=resumed)

        body = self.store.get_body(task.id)
        agent = self.settings.agent
        prompt = prompts.build_task_prompt(
            task,
            body,
            extra_prompt=agent.extra_prompt,
            force_test_creation=agent.force_test_creation,
            force_test_run=agent.force_test_run,
            force_commit=agent.force_commit,
        )
        if agent.log_prompt:
            logger.info("Prompt for %r:\n%s", task.name, prompt)

        before = capture_snapshot(self.workdir)
        try:
            result = self._run_agent(task, prompt, label="task")
            check = validate_execution(before, result, self.workdir)
            if not check.valid:
                logger.warning(
                    "Unsupported done report for %r: %s. Retrying once with a correction.",
                    task.name,
                    check.reason,
                )
                self.history.mark_failed(task, check.reason, stage="validation", retrying=True)
                corrective = prompts.build_corrective_prompt(prompt, check.reason)
                result = self._run_agent(task, corrective, label="corrective")
                check = validate_execution(before, result, self.workdir)
                if not check.valid:
                    raise ValidationError(
                        f"Agent reported done twice without evidence: {check.reason}",
                        reason=check.reason,
                    )
        except QuotaError as error:
            self._handle_quota(task, error, summary)
            return False
        except ExecutionError as error:
            logger.error("Failed to execute task %r: %s", task.name, error)
            self._handle_failure(
                task,
                str(error),
                summary,
                detail=error.stderr or error.stdout,
                failure_class=error.failure_class,
            )
            return False
        except ValidationError as error:
            logger.error("Task %r rejected: %s", task.name, error.reason)
            self._handle_failure(task, str(error), summary, failure_class="hallucination")
            return False

        if not result.is_done:
            logger.warning("Task blocked by agent: %r (status: %s)", task.name, result.status.value)
            self._handle_failure(
                task,
                f"Agent returned status={result.status.value}",
                summary,
                detail=result.notes,
            )
            return False

        if agent.review_enabled and "opus" not in task.model.lower():
            try:
                result = self._review_task(task, body, result)
            except QuotaError as error:
                self._handle_quota(task, error, summary)
                return False
            except (ReviewError, ExecutionError) as error:
                logger.warning("Review blocked task %r: %s", task.name, error)
                detail = error.summary if isinstance(error, ReviewError) else ""
                self.history.mark_failed(task, str(error), stage="review")
                self.store.append_to_body(
                    task.id,
                    prompts.build_block_notes(
                        task,
                        str(error),
                        detail=detail,
                        title="Review Blocked",
                    ),
                )
                summary.failed.append(task.id)
                summary.stop_reason = str(error)
                return False

        refs = [acceptance.resolve_ac_ref(raw) for raw in result.completed_acs]
        self._apply_ac_refs(task.id, refs)
        unchecked = acceptance.count_unchecked(self.store.get_body(task.id))
        if unchecked:
            reason = f"{unchecked} acceptance criteria still unchecked after a done report"
            logger.warning("Keeping %r In Progress: %s", task.name, reason)
            self._handle_failure(task, reason, summary, allow_reset=False)
            return False

        self.watchdog.record_success(task.id)
        # A done record on an In Progress task marks a finished run whose status write was lost.
        self.history.mark_done(task, result)
        self.store.append_to_body(task.id, prompts.build_completion_notes(task, result))
        self.store.update_status(task.id, TaskStatus.DONE)
        summary.completed.append(task.id)
        logger.info("Moved to Done: %r", task.name)
        return True

    def _finalize_if_already_done(self, task: Task, summary: PassSummary) -> bool:
        """Crash recovery: the last run finished but the status write did not."""

        if self.history.latest_event(task.id) != RunEvent.DONE:
            return False
        if acceptance.count_unchecked(self.store.get_body(task.id)) > 0:
            return False
        logger.info("Task %r already completed in run history, finalizing", task.name)
        self.watchdog.record_success(task.id)
        self.store.update_status(task.id, TaskStatus.DONE)
        summary.completed.append(task.id)
        return True

    def _run_agent(
        self,
        task: Task,
        prompt: str,
        *,
        label: str,
        model_override: str | None = None,
        timeout_seconds: int | None = None,
    ) -> ExecutionResult:
        entry = self.watchdog.start(task)
        request = ExecutionRequest(
            task=task,
            prompt=prompt,
            timeout_seconds=timeout_seconds or self.settings.agent.timeout_seconds,
            abort_event=entry.abort_event,
            on_ac_complete=partial(self._on_ac_complete, task.id),
            on_progress=partial(self._on_progress, task.id),
            model_override=model_override,
            label=label,
        )
        try:
            return self.executor.run(request)
        except QuotaError:
            raise
        except ExecutionError as error:
            if error.aborted and entry.abort_reason:
                raise ExecutionError(
                    f"{error} ({entry.abort_reason})",
                    exit_code=error.exit_code,
                    signal_name=error.signal_name,
                    aborted=True,
                    failure_class=FailureClass.ABORTED.value,
                    stdout=error.stdout,
                    stderr=error.stderr,
                ) from error
            raise
        finally:
            self.watchdog.stop()

    def _review_task(self, task: Task, body: str, result: ExecutionResult) -> ExecutionResult:
        model = self.settings.agent.review_model
        logger.info("Starting review for %r with model %s", task.name, model)
        review = self._run_agent(
            task,
            prompts.build_review_prompt(task, body, result),
            label="review",
            model_override=model,
        )
        if not review.is_done:
            raise ReviewError(
                f"Review returned status={review.status.value}",
                summary=review.notes or review.summary,
            )
        logger.info("Review approved: %r", task.name)
        review.completed_acs = list(dict.fromkeys([*result.completed_acs, *review.completed_acs]))
        review.files = list(dict.fromkeys([*result.files, *review.files]))
        return review

    def _review_epic(self, epic: Task, children: list[Task], epic_summary: EpicSummary) -> None:
        agent = self.settings.agent
        logger.info("Starting epic review for %r (%s children)", epic.name, len(children))
        self._set_current(epic.id)
        try:
            review = self._run_agent(
                epic,
                prompts.build_epic_review_prompt(epic, children, epic_summary),
                label="epic-review",
                model_override=agent.review_model,
                timeout_seconds=agent.epic_review_timeout_seconds,
            )
        finally:
            self._set_current(None)
        if not review.is_done:
            raise ReviewError(
                f"Epic review returned status={review.status.value}",
                summary=review.notes or review.summary,
            )
        logger.info("Epic review approved: %r", epic.name)
        self.store.append_to_body(
            epic.id,
            prompts.build_completion_notes(epic, review, title="Epic Review Approved"),
        )

    def _on_ac_complete(self, task_id: str, raw: str) -> None:
        ref = acceptance.resolve_ac_ref(raw)
        changed = self._apply_ac_refs(task_id, [ref])
        logger.info("AC complete for %s: %s (newly checked: %s)", task_id, ref, changed or "none")

    def _on_progress(self, task_id: str, payload: ProgressPayload) -> None:
        logger.info("Progress %s: %s", task_id, payload)

    def _apply_ac_refs(self, task_id: str, refs: list[AcRef]) -> list[int]:
        indices = [ref.index for ref in refs if ref.index is not None]
        texts = [ref.text for ref in refs if not ref.is_index and ref.text]
        changed: list[int] = []
        if indices:
            changed.extend(self.store.update_checkboxes_by_index(task_id, indices))
        if texts:
            changed.extend(self.store.update_checkboxes_by_text(task_id, texts))
        return changed

    def _handle_failure(  # noqa: PLR0913
        self,
        task: Task,
        reason: str,
        summary: PassSummary,
        *,
        detail: str = "",
        failure_class: str | None = None,
        allow_reset: bool = True,
    ) -> None:
        self.history.mark_failed(task, reason, failure_class=failure_class)
        summary.failed.append(task.id)
        summary.stop_reason = reason
        self.store.append_to_body(
            task.id,
            prompts.build_block_notes(
                task,
                sanitize_preview(reason),
                detail=sanitize_preview(detail),
            ),
        )
        if self.watchdog.record_failure(task.id, task.name):
            summary.halted = True
            summary.stop_reason = (
                f"Task {task.id} failed {self.watchdog.failure_count(task.id)} consecutive times"
            )
            return
        if allow_reset and self.settings.state.auto_reset_failed_task:
            self.store.update_status(task.id, TaskStatus.NOT_STARTED)
            logger.warning("Returned to Not Started after failure: %r", task.name)

    def _handle_quota(
        self,
        task: Task,
        error: QuotaError,
        summary: PassSummary | None,
        *,
        record_history: bool = True,
    ) -> None:
        hint = error.reset_hint or "unknown reset time"
        logger.warning("Agent usage limit reached. Orchestrator halted until %s.", hint)
        if record_history:
            self.history.mark_failed(
                task,
                str(error),
                failure_class=FailureClass.QUOTA_OR_LIMIT.value,
            )
        self.store.append_to_body(
            task.id,
            prompts.build_block_notes(
                task,
                f"Usage limit reached, resets: {hint}",
                title="Usage Limit Reached",
            ),
        )
        if summary is not None:
            summary.failed.append(task.id)
            summary.halted = True
            summary.stop_reason = f"Usage limit reached (resets: {hint})"

    def _set_current(self, task_id: str | None) -> None:
        if self.on_task_change is not None:
            self.on_task_change(task_id)
