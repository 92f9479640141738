"""Append-only run history backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from backlog_runner.orchestrator.errors import StoreError
from backlog_runner.orchestrator.models import (
    EpicSummary,
    ExecutionResult,
    RunEvent,
    RunRecord,
    Task,
)
from backlog_runner.orchestrator.sanitization import sanitize_preview
from backlog_runner.storage.database import create_history_engine, ensure_utc, migrate, utc_now
from backlog_runner.storage.sqlmodel_models import RunRecordRow

logger = logging.getLogger(__name__)


class RunHistoryRepository:
    """Run history persistence facade.

    Rows are only ever inserted. The start of a task is its first ``started``
    row, so resuming an interrupted task keeps the original start time.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = create_history_engine(db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        migrate(self.db_path)

    def mark_started(self, task: Task, *, resumed: bool = False) -> RunRecord:
        return self._append(task, RunEvent.STARTED, {"resumed": resumed})

    def mark_done(self, task: Task, result: ExecutionResult) -> RunRecord:
        now = utc_now()
        started_at = self.first_started_at(task.id)
        duration = (now - started_at).total_seconds() if started_at else None
        detail = {
            "summary": result.summary,
            "notes": result.notes,
            "files": list(result.files),
            "tests": result.tests,
            "completed_acs": list(result.completed_acs),
            "contract_found": result.contract_found,
            "duration_seconds": duration,
            "stdout_preview": sanitize_preview(result.stdout),
            "stderr_preview": sanitize_preview(result.stderr),
        }
        return self._append(task, RunEvent.DONE, detail, created_at=now)

    def mark_failed(self, task: Task, error: str, **extra: Any) -> RunRecord:
        detail = {"error": sanitize_preview(error), **extra}
        return self._append(task, RunEvent.FAILED, detail)

    def list_records(self, *, task_id: str | None = None, limit: int = 50) -> list[RunRecord]:
        """Newest first."""

        statement = select(RunRecordRow)
        if task_id is not None:
            statement = statement.where(RunRecordRow.task_id == task_id)
        statement = statement.order_by(
            col(RunRecordRow.created_at).desc(),
            col(RunRecordRow.record_id).desc(),
        ).limit(limit)
        with self._session() as session:
            rows = session.exec(statement).all()
        return [_to_record(row) for row in rows]

    def latest_event(self, task_id: str) -> RunEvent | None:
        records = self.list_records(task_id=task_id, limit=1)
        if not records:
            return None
        return records[0].event

    def first_started_at(self, task_id: str) -> datetime | None:
        statement = (
            select(RunRecordRow)
            .where(RunRecordRow.task_id == task_id)
            .where(RunRecordRow.event == RunEvent.STARTED.value)
            .order_by(col(RunRecordRow.created_at).asc(), col(RunRecordRow.record_id).asc())
            .limit(1)
        )
        with self._session() as session:
            row = session.exec(statement).first()
        return ensure_utc(row.created_at) if row is not None else None

    def epic_summary(self, children: list[Task]) -> EpicSummary:
        """Per-child durations plus the overall time window of an epic."""

        rows: list[dict[str, Any]] = []
        earliest: datetime | None = None
        latest: datetime | None = None
        total = 0.0
        for child in children:
            started_at = self.first_started_at(child.id)
            done = self._latest_done(child.id)
            completed_at = done.created_at if done is not None else None
            duration = done.detail.get("duration_seconds") if done is not None else None

            if started_at is not None and (earliest is None or started_at < earliest):
                earliest = started_at
            if completed_at is not None and (latest is None or completed_at > latest):
                latest = completed_at
            if duration:
                total += float(duration)
            rows.append(
                {
                    "id": child.id,
                    "name": child.name,
                    "status": child.status.value,
                    "duration_seconds": duration,
                },
            )
        return EpicSummary(
            rows=rows,
            earliest=earliest,
            latest=latest,
            total_duration_seconds=total,
        )

    def _latest_done(self, task_id: str) -> RunRecord | None:
        statement = (
            select(RunRecordRow)
            .where(RunRecordRow.task_id == task_id)
            .where(RunRecordRow.event == RunEvent.DONE.value)
            .order_by(col(RunRecordRow.created_at).desc(), col(RunRecordRow.record_id).desc())
            .limit(1)
        )
        with self._session() as session:
            row = session.exec(statement).first()
        return _to_record(row) if row is not None else None

    def _append(
        self,
        task: Task,
        event: RunEvent,
        detail: dict[str, Any],
        *,
        created_at: datetime | None = None,
    ) -> RunRecord:
        row = RunRecordRow(
            task_id=task.id,
            task_name=task.name,
            parent_id=task.parent_id,
            event=event.value,
            detail_json=json.dumps(detail, ensure_ascii=False, sort_keys=True, default=str),
            created_at=created_at or utc_now(),
        )
        try:
            with self._session() as session:
                session.add(row)
                session.commit()
                session.refresh(row)
                record = _to_record(row)
        except SQLAlchemyError as error:
            raise StoreError(
                f"Cannot record {event.value} for {task.id}: {error}",
                task_id=task.id,
            ) from error
        logger.debug("Run history: %s %s", task.id, event.value)
        return record

    def _session(self) -> Session:
        return Session(self.engine)


def _to_record(row: RunRecordRow) -> RunRecord:
    try:
        detail = json.loads(row.detail_json or "{}")
    except json.JSONDecodeError:
        detail = {"raw": row.detail_json}
    return RunRecord(
        record_id=row.record_id or 0,
        task_id=row.task_id,
        task_name=row.task_name,
        parent_id=row.parent_id,
        event=RunEvent(row.event),
        created_at=ensure_utc(row.created_at),
        detail=detail if isinstance(detail, dict) else {"raw": detail},
    )
