"""Persistent job and task repository backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import and_, exists, func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from render_batch.orchestrator.models import (
    JobStatus,
    JobTaskCounts,
    JobView,
    SharedPayload,
    TaskDetails,
    TaskEventView,
    TaskFailureWrite,
    TaskStatus,
    TaskView,
)
from render_batch.storage.alembic_runner import upgrade_head
from render_batch.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    dump_json,
    load_json_dict,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from render_batch.storage.sqlmodel_models import (
    DeadLetter,
    GenerationJob,
    RenderTask,
    RenderTaskEvent,
)

logger = logging.getLogger(__name__)

_OPEN_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


class JobRepository:
    """Job and task persistence facade.

    Every transition is an ``UPDATE ... WHERE <expected prior state>`` whose
    ``rowcount`` tells the caller whether it won. Methods return ``False``
    (or ``None``) when the row was already moved by someone else.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(
        self,
        *,
        total_units: int,
        shared: SharedPayload,
        unit_params: tuple[str, ...],
    ) -> JobView:
        """Create a pending job; unit params are kept for re-submission of lost units."""

        if total_units <= 0:
            raise ValueError(f"total_units must be positive, got {total_units}")
        if len(unit_params) != total_units:
            raise ValueError(f"Expected {total_units} unit params, got {len(unit_params)}")
        now = utc_now()
        with Session(self.engine) as session:
            row = GenerationJob(
                job_id=str(uuid4()),
                total_units=total_units,
                completed_units=0,
                status=JobStatus.PENDING.value,
                shared_payload_json=json.dumps(shared.to_dict(), ensure_ascii=False, sort_keys=True),
                unit_params_json=json.dumps(list(unit_params), ensure_ascii=False),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_unit_params(self, *, job_id: str) -> tuple[str, ...]:
        with Session(self.engine) as session:
            row = session.get(GenerationJob, job_id)
            if row is None:
                raise RuntimeError(f"Job not found: {job_id}")
            raw = json.loads(row.unit_params_json) if row.unit_params_json else []
        return tuple(str(value) for value in raw)

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(GenerationJob, job_id)
            if row is None:
                return None
            return _to_job_view(row)

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(GenerationJob).order_by(col(GenerationJob.created_at).desc()).limit(limit)
            )
            if status is not None:
                statement = statement.where(GenerationJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def mark_job_processing(self, *, job_id: str) -> bool:
        """Move a pending job to processing once a chunk is accepted."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == JobStatus.PENDING.value,
                )
                .values(status=JobStatus.PROCESSING.value, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def insert_pending_task(
        self,
        *,
        job_id: str,
        unit_index: int,
        prompt: str,
        external_task_id: str | None,
        attempts: int = 0,
        error_message: str | None = None,
    ) -> TaskView | None:
        """Insert a pending task; ``None`` if the unit already has one."""

        return self._insert_task(
            job_id=job_id,
            unit_index=unit_index,
            prompt=prompt,
            status=TaskStatus.PENDING,
            external_task_id=external_task_id,
            attempts=attempts,
            error_message=error_message,
            event_type="created",
        )

    def insert_failed_task(
        self,
        *,
        job_id: str,
        unit_index: int,
        prompt: str,
        error_message: str,
        attempts: int = 1,
    ) -> TaskView | None:
        """Insert a unit that failed before any external task was accepted."""

        return self._insert_task(
            job_id=job_id,
            unit_index=unit_index,
            prompt=prompt,
            status=TaskStatus.FAILED,
            external_task_id=None,
            attempts=attempts,
            error_message=error_message,
            event_type="rejected",
        )

    def insert_failed_tasks(self, *, job_id: str, failures: list[TaskFailureWrite]) -> int:
        """Fail-fast a set of units; returns how many rows were new."""

        inserted = 0
        for failure in failures:
            task = self.insert_failed_task(
                job_id=job_id,
                unit_index=failure.unit_index,
                prompt=failure.prompt,
                error_message=failure.error_message,
            )
            if task is not None:
                inserted += 1
        return inserted

    def existing_unit_indices(self, *, job_id: str) -> set[int]:
        """Unit indices that already have an original (non-replay) task."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(RenderTask.unit_index).where(
                    RenderTask.job_id == job_id,
                    col(RenderTask.replay_of).is_(None),
                ),
            ).all()
        return set(rows)

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(RenderTask, task_id)
            if row is None:
                return None
            return _to_task_view(row)

    def list_pending_tasks(self, *, limit: int) -> list[TaskView]:
        """Oldest-created pending tasks first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(RenderTask)
                .where(RenderTask.status == TaskStatus.PENDING.value)
                .order_by(col(RenderTask.created_at).asc(), col(RenderTask.unit_index).asc())
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_tasks(
        self,
        *,
        job_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 100,
    ) -> list[TaskView]:
        with Session(self.engine) as session:
            statement = select(RenderTask)
            if job_id is not None:
                statement = statement.where(RenderTask.job_id == job_id)
            if status is not None:
                statement = statement.where(RenderTask.status == status.value)
            statement = statement.order_by(
                col(RenderTask.unit_index).asc(),
                col(RenderTask.created_at).asc(),
            ).limit(limit)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.get(RenderTask, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(RenderTaskEvent)
                .where(RenderTaskEvent.task_id == task_id)
                .order_by(col(RenderTaskEvent.created_at).asc(), col(RenderTaskEvent.id).asc()),
            ).all()
            events = [
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=load_json_dict(row.details_json),
                )
                for row in event_rows
            ]
            return TaskDetails(task=_to_task_view(task), events=events)

    def complete_task(self, *, task_id: str, result_ref: str) -> bool:
        """Mark a pending task completed and bump its job counter atomically."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RenderTask)
                .where(
                    col(RenderTask.task_id) == task_id,
                    col(RenderTask.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    result_ref=result_ref,
                    error_message=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            row = session.get(RenderTask, task_id)
            if row is None:
                raise RuntimeError(f"Task not found after update: {task_id}")
            bumped = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == row.job_id,
                    col(GenerationJob.completed_units) < col(GenerationJob.total_units),
                )
                .values(
                    completed_units=col(GenerationJob.completed_units) + 1,
                    updated_at=now,
                ),
            )
            if bumped.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    f"Job {row.job_id} counter is already at total_units; "
                    f"refusing to complete task {task_id}.",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.COMPLETED,
                details={"result_ref": result_ref, "external_task_id": row.external_task_id},
            )
            session.commit()
            return True

    def begin_resubmit(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        expected_attempts: int,
        error_message: str,
        reason: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Count one failed attempt and detach the old external task.

        The task stays pending with no external id until
        :meth:`attach_external_task` records the replacement.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RenderTask)
                .where(
                    col(RenderTask.task_id) == task_id,
                    col(RenderTask.status) == TaskStatus.PENDING.value,
                    col(RenderTask.attempts) == expected_attempts,
                )
                .values(
                    attempts=expected_attempts + 1,
                    external_task_id=None,
                    error_message=error_message,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="retry_scheduled",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.PENDING,
                details={
                    **(details or {}),
                    "attempts": expected_attempts + 1,
                    "reason": reason,
                    "error": error_message,
                },
            )
            session.commit()
            return True

    def attach_external_task(
        self,
        *,
        task_id: str,
        expected_attempts: int,
        external_task_id: str,
    ) -> bool:
        """Record the external task created for a task awaiting submission."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RenderTask)
                .where(
                    col(RenderTask.task_id) == task_id,
                    col(RenderTask.status) == TaskStatus.PENDING.value,
                    col(RenderTask.attempts) == expected_attempts,
                    col(RenderTask.external_task_id).is_(None),
                )
                .values(external_task_id=external_task_id, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="submitted",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.PENDING,
                details={"external_task_id": external_task_id, "attempts": expected_attempts},
            )
            session.commit()
            return True

    def fail_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        expected_attempts: int,
        attempts: int,
        error_message: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Move a pending task to its terminal failed state."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RenderTask)
                .where(
                    col(RenderTask.task_id) == task_id,
                    col(RenderTask.status) == TaskStatus.PENDING.value,
                    col(RenderTask.attempts) == expected_attempts,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    attempts=attempts,
                    error_message=error_message,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="failed",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.FAILED,
                details={**(details or {}), "attempts": attempts, "error": error_message},
            )
            session.commit()
            return True

    def count_job_tasks(self, *, job_id: str) -> JobTaskCounts:
        """Tally tasks by status; a failed task superseded by a replay is not counted."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(RenderTask.status, func.count())
                .where(RenderTask.job_id == job_id)
                .group_by(RenderTask.status),
            ).all()
            replays = int(
                session.exec(
                    select(func.count())
                    .select_from(RenderTask)
                    .where(
                        col(RenderTask.job_id) == job_id,
                        col(RenderTask.replay_of).is_not(None),
                    ),
                ).one(),
            )

        counts = JobTaskCounts()
        for status, count in rows:
            if status == TaskStatus.PENDING.value:
                counts.pending = int(count)
            elif status == TaskStatus.COMPLETED.value:
                counts.completed = int(count)
            elif status == TaskStatus.FAILED.value:
                counts.failed = int(count)
        counts.failed = max(0, counts.failed - replays)
        counts.total = counts.pending + counts.completed + counts.failed
        return counts

    def finalize_job_if_done(self, *, job_id: str) -> JobView | None:
        """Move an open job to its terminal status once every unit is terminal.

        Returns the updated job when this call made the transition.
        """

        counts = self.count_job_tasks(job_id=job_id)
        job = self.get_job(job_id=job_id)
        if job is None or job.is_terminal:
            return None
        if counts.pending > 0 or counts.total < job.total_units:
            return None

        if counts.failed == 0:
            status = JobStatus.COMPLETED
            error_summary = None
        elif counts.completed == 0:
            status = JobStatus.FAILED
            error_summary = f"All {counts.failed} units failed."
        else:
            status = JobStatus.COMPLETED_WITH_ERRORS
            error_summary = f"{counts.failed}/{job.total_units} units failed."

        now = to_db_datetime(utc_now())
        pending_task = aliased(RenderTask)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status).in_(_OPEN_JOB_STATUSES),
                    ~exists().where(
                        and_(
                            pending_task.job_id == job_id,
                            pending_task.status == TaskStatus.PENDING.value,
                        ),
                    ),
                )
                .values(status=status.value, error_summary=error_summary, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()

        logger.info(
            "Job %s finished: status=%s completed=%d failed=%d total=%d",
            job_id,
            status.value,
            counts.completed,
            counts.failed,
            job.total_units,
        )
        return self.get_job(job_id=job_id)

    def list_open_job_ids(self, *, limit: int = 100) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationJob.job_id)
                .where(col(GenerationJob.status).in_(_OPEN_JOB_STATUSES))
                .order_by(col(GenerationJob.created_at).asc())
                .limit(limit),
            ).all()
        return list(rows)

    def list_stalled_jobs(self, *, updated_before: datetime, limit: int = 50) -> list[JobView]:
        """Open jobs whose row has not changed since ``updated_before``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationJob)
                .where(
                    col(GenerationJob.status).in_(_OPEN_JOB_STATUSES),
                    col(GenerationJob.updated_at) < to_db_datetime(updated_before),
                )
                .order_by(col(GenerationJob.updated_at).asc())
                .limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_exhausted_tasks_without_dead_letter(
        self,
        *,
        min_attempts: int,
        limit: int = 100,
    ) -> list[TaskView]:
        """Failed tasks that used the whole retry budget but have no dead-letter entry."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(RenderTask)
                .where(
                    RenderTask.status == TaskStatus.FAILED.value,
                    col(RenderTask.attempts) >= min_attempts,
                    ~exists().where(DeadLetter.task_id == RenderTask.task_id),
                )
                .order_by(col(RenderTask.updated_at).asc())
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def create_replay_task(self, *, failed_task_id: str, operator: str, reason: str) -> TaskView:
        """Create a fresh pending task for a failed unit and reopen its job.

        Any open dead-letter entry for the failed task is resolved in the same
        transaction.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            original = session.get(RenderTask, failed_task_id)
            if original is None:
                raise RuntimeError(f"Task not found: {failed_task_id}")
            if original.status != TaskStatus.FAILED.value:
                raise RuntimeError(
                    f"Only failed tasks can be replayed, got status={original.status} "
                    f"(task_id={failed_task_id}).",
                )
            replay = RenderTask(
                task_id=str(uuid4()),
                job_id=original.job_id,
                unit_index=original.unit_index,
                prompt=original.prompt,
                external_task_id=None,
                status=TaskStatus.PENDING.value,
                attempts=0,
                replay_of=original.task_id,
                created_at=now,
                updated_at=now,
            )
            session.add(replay)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise RuntimeError(f"Task {failed_task_id} was already replayed.") from error

            session.exec(
                sa_update(GenerationJob)
                .where(col(GenerationJob.job_id) == original.job_id)
                .values(
                    status=JobStatus.PROCESSING.value,
                    error_summary=None,
                    updated_at=now,
                ),
            )
            session.exec(
                sa_update(DeadLetter)
                .where(
                    col(DeadLetter.task_id) == original.task_id,
                    col(DeadLetter.resolved).is_(False),
                )
                .values(
                    resolved=True,
                    resolved_at=now,
                    resolved_by=operator,
                    resolution_note=f"Replayed as task {replay.task_id}",
                ),
            )
            self._add_event(
                session=session,
                task_id=replay.task_id,
                event_type="replay_created",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={"replay_of": original.task_id, "reason": reason, "operator": operator},
            )
            session.commit()
            session.refresh(replay)
            return _to_task_view(replay)

    def _insert_task(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        unit_index: int,
        prompt: str,
        status: TaskStatus,
        external_task_id: str | None,
        attempts: int,
        error_message: str | None,
        event_type: str,
    ) -> TaskView | None:
        now = utc_now()
        with Session(self.engine) as session:
            row = RenderTask(
                task_id=str(uuid4()),
                job_id=job_id,
                unit_index=unit_index,
                prompt=prompt,
                external_task_id=external_task_id,
                status=status.value,
                attempts=attempts,
                error_message=error_message,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                logger.info(
                    "Task for job %s unit %d already exists; insert skipped",
                    job_id,
                    unit_index,
                )
                return None
            self._add_event(
                session=session,
                task_id=row.task_id,
                event_type=event_type,
                status_from=None,
                status_to=status,
                details={
                    "unit_index": unit_index,
                    "external_task_id": external_task_id,
                    "attempts": attempts,
                    "error": error_message,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            RenderTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(
                    {key: value for key, value in details.items() if value is not None},
                ),
                created_at=utc_now(),
            ),
        )


def _to_job_view(row: GenerationJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        total_units=row.total_units,
        completed_units=row.completed_units,
        status=JobStatus(row.status),
        shared=SharedPayload.from_dict(load_json_dict(row.shared_payload_json)),
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_task_view(row: RenderTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        job_id=row.job_id,
        unit_index=row.unit_index,
        prompt=row.prompt,
        external_task_id=row.external_task_id,
        status=TaskStatus(row.status),
        attempts=row.attempts,
        result_ref=row.result_ref,
        error_message=row.error_message,
        replay_of=row.replay_of,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
