"""SQLModel ORM tables for run history storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class RunRecordRow(SQLModel, table=True):
    __tablename__ = "run_records"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_run_records_task_time", "task_id", "created_at"),)

    record_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    task_name: str = ""
    parent_id: str | None = Field(default=None, index=True)
    event: str = Field(index=True)
    detail_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
