"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections import deque
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from render_batch.orchestrator.models import (
    Accepted,
    CreateOutcome,
    OutputShape,
    RenderTaskState,
    SharedPayload,
    TaskStatusReport,
)
from render_batch.orchestrator.repository import JobRepository
from render_batch.storage.common import to_db_datetime, utc_now
from render_batch.storage.sqlmodel_models import GenerationJob, ProcessedMessage, RenderTask

PENDING = TaskStatusReport(state=RenderTaskState.PENDING)


class ScriptedRenderClient:
    """Render client whose outcomes are scripted per prompt and per external id.

    The last scripted entry for a key is sticky; unscripted prompts are accepted
    and unscripted external ids report ``default_status``.
    """

    def __init__(self, *, default_status: TaskStatusReport = PENDING) -> None:
        self.default_status = default_status
        self.create_script: dict[str, deque[CreateOutcome]] = {}
        self.status_script: dict[str, deque[TaskStatusReport]] = {}
        self.created: list[tuple[str, str | None]] = []
        self.status_calls: list[str] = []
        self._counter = 0
        self._lock = threading.Lock()

    def script_create(self, prompt: str, *outcomes: CreateOutcome) -> None:
        self.create_script[prompt] = deque(outcomes)

    def script_status(self, external_task_id: str, *reports: TaskStatusReport) -> None:
        self.status_script[external_task_id] = deque(reports)

    def create_task(
        self,
        *,
        prompt: str,
        reference_assets: tuple[str, ...],
        output_shape: OutputShape,
    ) -> CreateOutcome:
        del reference_assets, output_shape
        with self._lock:
            outcomes = self.create_script.get(prompt)
            if outcomes:
                outcome = outcomes.popleft() if len(outcomes) > 1 else outcomes[0]
            else:
                self._counter += 1
                outcome = Accepted(external_task_id=f"ext-{self._counter}")
            external_id = outcome.external_task_id if isinstance(outcome, Accepted) else None
            self.created.append((prompt, external_id))
            return outcome

    def get_task_status(self, external_task_id: str) -> TaskStatusReport:
        with self._lock:
            self.status_calls.append(external_task_id)
            reports = self.status_script.get(external_task_id)
            if reports:
                return reports.popleft() if len(reports) > 1 else reports[0]
            return self.default_status

    def close(self) -> None:
        return None


def success(result_ref: str = "https://cdn.example.com/out.jpg") -> TaskStatusReport:
    return TaskStatusReport(state=RenderTaskState.SUCCESS, result_ref=result_ref)


def failed(error: str = "generation failed") -> TaskStatusReport:
    return TaskStatusReport(state=RenderTaskState.FAILED, error=error)


def age_task(repository: JobRepository, task_id: str, *, seconds: float) -> None:
    """Push a task's ``updated_at`` into the past."""

    with Session(repository.engine) as session:
        session.exec(
            sa_update(RenderTask)
            .where(col(RenderTask.task_id) == task_id)
            .values(updated_at=to_db_datetime(utc_now() - timedelta(seconds=seconds))),
        )
        session.commit()


def age_job(repository: JobRepository, job_id: str, *, seconds: float) -> None:
    with Session(repository.engine) as session:
        session.exec(
            sa_update(GenerationJob)
            .where(col(GenerationJob.job_id) == job_id)
            .values(updated_at=to_db_datetime(utc_now() - timedelta(seconds=seconds))),
        )
        session.commit()


def age_ledger_entry(repository: JobRepository, message_id: str, *, days: float) -> None:
    with Session(repository.engine) as session:
        session.exec(
            sa_update(ProcessedMessage)
            .where(col(ProcessedMessage.message_id) == message_id)
            .values(processed_at=to_db_datetime(utc_now() - timedelta(days=days))),
        )
        session.commit()


@pytest.fixture()
def repository(tmp_path: Path):
    repo = JobRepository(tmp_path / "render_batch.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def render_client() -> ScriptedRenderClient:
    return ScriptedRenderClient()


@pytest.fixture()
def shared_payload() -> SharedPayload:
    return SharedPayload(
        reference_assets=("https://assets.example.com/ref-1.jpg",),
        output_shape=OutputShape(aspect_ratio="3:4", resolution="1K", output_format="jpg"),
    )
