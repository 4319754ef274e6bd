"""Initial schema — job runs and their steps.

Revision ID: v001
Revises:
Create Date: 2026-10-17 00:00:00.000000

Runs on both SQLite (dev) and PostgreSQL (production).  Status and scenario
columns are plain strings (non-native enums) so new values need no type
migration.
"""
from __future__ import annotations
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "v001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── job_runs ────────────────────────────────────────────────────────────
    op.create_table(
        "job_runs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("scenario", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_job_runs_started_at", "job_runs", ["started_at"])
    op.create_index("ix_job_runs_scenario_started_at", "job_runs", ["scenario", "started_at"])

    # ── job_run_steps ───────────────────────────────────────────────────────
    op.create_table(
        "job_run_steps",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("run_id", sa.String(64), sa.ForeignKey("job_runs.id"), nullable=False),
        sa.Column("step", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("run_id", "step"),
    )
    op.create_index("ix_job_run_steps_run_id", "job_run_steps", ["run_id"])


def downgrade() -> None:
    op.drop_index("ix_job_run_steps_run_id", table_name="job_run_steps")
    op.drop_table("job_run_steps")
    op.drop_index("ix_job_runs_scenario_started_at", table_name="job_runs")
    op.drop_index("ix_job_runs_started_at", table_name="job_runs")
    op.drop_table("job_runs")
