"""SQLModel ORM tables for generation-job storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class GenerationJob(SQLModel, table=True):
    __tablename__ = "generation_jobs"  # type: ignore[bad-override]

    job_id: str = Field(primary_key=True)
    total_units: int
    completed_units: int = 0
    status: str = Field(index=True)
    shared_payload_json: str | None = Field(default=None, sa_column=Column(Text))
    unit_params_json: str | None = Field(default=None, sa_column=Column(Text))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )


class RenderTask(SQLModel, table=True):
    __tablename__ = "render_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_render_tasks_job_unit_original",
            "job_id",
            "unit_index",
            unique=True,
            sqlite_where=text("replay_of IS NULL"),
        ),
        Index("uq_render_tasks_replay_of", "replay_of", unique=True),
        Index("idx_render_tasks_status_created", "status", "created_at"),
    )

    task_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    unit_index: int
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    external_task_id: str | None = Field(default=None, index=True)
    status: str = Field(index=True)
    attempts: int = 0
    result_ref: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    replay_of: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("render_tasks.task_id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RenderTaskEvent(SQLModel, table=True):
    __tablename__ = "render_task_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("render_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProcessedMessage(SQLModel, table=True):
    __tablename__ = "processed_messages"  # type: ignore[bad-override]

    message_id: str = Field(primary_key=True)
    job_id: str = Field(index=True)
    processed_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )


class DeadLetter(SQLModel, table=True):
    __tablename__ = "dead_letters"  # type: ignore[bad-override]

    entry_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("render_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )
    job_id: str = Field(index=True)
    unit_index: int
    external_task_id: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    attempts: int
    context_json: str | None = Field(default=None, sa_column=Column(Text))
    resolved: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, index=True, server_default=text("0")),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    resolved_by: str | None = None
    resolution_note: str | None = Field(default=None, sa_column=Column(Text))
