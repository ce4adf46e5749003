"""Dead-letter store for units that exhausted their retry budget."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from render_batch.orchestrator.models import DeadLetterView, TaskView
from render_batch.orchestrator.repository import JobRepository
from render_batch.storage.common import (
    load_json_dict,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from render_batch.storage.sqlmodel_models import DeadLetter

logger = logging.getLogger(__name__)


class DeadLetterStore:
    """Operator-facing record of permanently failed units.

    One entry per failed task; recording twice is a no-op so the poller and the
    maintenance reconciliation can both write safely.
    """

    def __init__(self, repository: JobRepository) -> None:
        self._repository = repository
        self._engine = repository.engine

    def record(
        self,
        task: TaskView,
        *,
        last_error: str | None,
        attempts: int,
        context: dict[str, Any] | None = None,
    ) -> DeadLetterView | None:
        """Store a dead-letter entry; ``None`` when the task already has one."""

        with Session(self._engine) as session:
            row = DeadLetter(
                task_id=task.task_id,
                job_id=task.job_id,
                unit_index=task.unit_index,
                external_task_id=task.external_task_id,
                last_error=last_error,
                attempts=attempts,
                context_json=json.dumps(
                    {"prompt": task.prompt, **(context or {})},
                    ensure_ascii=False,
                    sort_keys=True,
                ),
                resolved=False,
                created_at=utc_now(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.debug("Dead letter for task %s already recorded", task.task_id)
                return None
            session.refresh(row)
            logger.warning(
                "Dead-lettered job %s unit %d after %d attempts: %s",
                task.job_id,
                task.unit_index,
                attempts,
                last_error,
            )
            return _to_view(row)

    def list(
        self,
        *,
        resolved: bool | None = False,
        job_id: str | None = None,
        limit: int = 50,
    ) -> list[DeadLetterView]:
        with Session(self._engine) as session:
            statement = select(DeadLetter)
            if resolved is not None:
                statement = statement.where(DeadLetter.resolved == resolved)
            if job_id is not None:
                statement = statement.where(DeadLetter.job_id == job_id)
            rows = session.exec(
                statement.order_by(col(DeadLetter.created_at).desc()).limit(limit),
            ).all()
        return [_to_view(row) for row in rows]

    def get(self, entry_id: int) -> DeadLetterView | None:
        with Session(self._engine) as session:
            row = session.get(DeadLetter, entry_id)
            if row is None:
                return None
            return _to_view(row)

    def resolve(self, entry_id: int, *, resolved_by: str, note: str | None = None) -> bool:
        """Mark an open entry resolved; ``False`` if missing or already resolved."""

        with Session(self._engine) as session:
            result = session.exec(
                sa_update(DeadLetter)
                .where(
                    col(DeadLetter.entry_id) == entry_id,
                    col(DeadLetter.resolved).is_(False),
                )
                .values(
                    resolved=True,
                    resolved_at=to_db_datetime(utc_now()),
                    resolved_by=resolved_by,
                    resolution_note=note,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def replay(self, entry_id: int, *, operator: str) -> TaskView:
        """Re-queue the unit behind an open entry as a fresh pending task."""

        entry = self.get(entry_id)
        if entry is None:
            raise RuntimeError(f"Dead letter not found: {entry_id}")
        if entry.resolved:
            raise RuntimeError(f"Dead letter {entry_id} is already resolved.")
        task = self._repository.create_replay_task(
            failed_task_id=entry.task_id,
            operator=operator,
            reason=f"dead_letter:{entry_id}",
        )
        logger.info(
            "Replayed dead letter %d (job %s unit %d) as task %s",
            entry_id,
            entry.job_id,
            entry.unit_index,
            task.task_id,
        )
        return task


def _to_view(row: DeadLetter) -> DeadLetterView:
    return DeadLetterView(
        entry_id=row.entry_id or 0,
        task_id=row.task_id,
        job_id=row.job_id,
        unit_index=row.unit_index,
        external_task_id=row.external_task_id,
        last_error=row.last_error,
        attempts=row.attempts,
        context=load_json_dict(row.context_json),
        resolved=bool(row.resolved),
        created_at=to_utc_aware_datetime(row.created_at),
        resolved_at=optional_utc(row.resolved_at),
        resolved_by=row.resolved_by,
        resolution_note=row.resolution_note,
    )
