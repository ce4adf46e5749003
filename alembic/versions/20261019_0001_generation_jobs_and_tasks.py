"""Generation jobs, per-unit render tasks and task event trail."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "generation_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("total_units", sa.Integer(), nullable=False),
        sa.Column("completed_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("shared_payload_json", sa.Text(), nullable=True),
        sa.Column("unit_params_json", sa.Text(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"])
    op.create_index("ix_generation_jobs_updated_at", "generation_jobs", ["updated_at"])

    op.create_table(
        "render_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("unit_index", sa.Integer(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("external_task_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("result_ref", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("replay_of", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.job_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["replay_of"], ["render_tasks.task_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_render_tasks_job_id", "render_tasks", ["job_id"])
    op.create_index("ix_render_tasks_status", "render_tasks", ["status"])
    op.create_index("ix_render_tasks_external_task_id", "render_tasks", ["external_task_id"])
    op.create_index(
        "idx_render_tasks_status_created",
        "render_tasks",
        ["status", "created_at"],
    )
    op.create_index(
        "uq_render_tasks_job_unit_original",
        "render_tasks",
        ["job_id", "unit_index"],
        unique=True,
        sqlite_where=sa.text("replay_of IS NULL"),
    )
    op.create_index("uq_render_tasks_replay_of", "render_tasks", ["replay_of"], unique=True)

    op.create_table(
        "render_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["render_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_render_task_events_task_id", "render_task_events", ["task_id"])
    op.create_index("ix_render_task_events_event_type", "render_task_events", ["event_type"])


def downgrade() -> None:
    op.drop_table("render_task_events")
    op.drop_table("render_tasks")
    op.drop_table("generation_jobs")
