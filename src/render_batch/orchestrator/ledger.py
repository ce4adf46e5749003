"""Idempotency ledger of fully processed channel messages."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, delete, select

from render_batch.storage.common import to_db_datetime, utc_now
from render_batch.storage.sqlmodel_models import ProcessedMessage

logger = logging.getLogger(__name__)


class IdempotencyLedger:
    """Set of message ids whose chunk work was durably completed.

    A message is marked only after its chunk finished, so a crash mid-chunk
    leaves the id unmarked and the redelivery is processed again.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def has_processed(self, message_id: str) -> bool:
        with Session(self._engine) as session:
            return session.get(ProcessedMessage, message_id) is not None

    def mark_processed(self, message_id: str, *, job_id: str) -> bool:
        """Record a message id; ``False`` when it was already recorded."""

        with Session(self._engine) as session:
            session.add(
                ProcessedMessage(message_id=message_id, job_id=job_id, processed_at=utc_now()),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.debug("Message %s already marked processed", message_id)
                return False
        return True

    def count_older_than(self, *, older_than: datetime) -> int:
        with Session(self._engine) as session:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(ProcessedMessage)
                    .where(col(ProcessedMessage.processed_at) < to_db_datetime(older_than)),
                ).one(),
            )

    def purge(self, *, older_than: datetime) -> int:
        """Delete entries processed before ``older_than``; returns deleted count."""

        with Session(self._engine) as session:
            result = session.exec(
                delete(ProcessedMessage).where(
                    col(ProcessedMessage.processed_at) < to_db_datetime(older_than),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def purge_expired(self, *, retention_days: int) -> int:
        if retention_days < 1:
            raise ValueError(f"retention_days must be >= 1, got {retention_days}")
        return self.purge(older_than=utc_now() - timedelta(days=retention_days))
