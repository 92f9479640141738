"""Create append-only run history table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "run_records",
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("task_name", sa.String(), nullable=False, server_default=""),
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("detail_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("record_id"),
    )
    op.create_index("ix_run_records_task_id", "run_records", ["task_id"], unique=False)
    op.create_index("ix_run_records_parent_id", "run_records", ["parent_id"], unique=False)
    op.create_index("ix_run_records_event", "run_records", ["event"], unique=False)
    op.create_index(
        "idx_run_records_task_time",
        "run_records",
        ["task_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_run_records_task_time", table_name="run_records")
    op.drop_index("ix_run_records_event", table_name="run_records")
    op.drop_index("ix_run_records_parent_id", table_name="run_records")
    op.drop_index("ix_run_records_task_id", table_name="run_records")
    op.drop_table("run_records")
