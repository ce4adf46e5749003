"""Consume chunk messages and create one external render task per unit."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime

from render_batch.orchestrator.ledger import IdempotencyLedger
from render_batch.orchestrator.models import (
    Accepted,
    ChunkMessage,
    ChunkPayload,
    PermanentError,
    TransientError,
)
from render_batch.orchestrator.render.base import RenderClient
from render_batch.orchestrator.repository import JobRepository
from render_batch.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChunkResult:
    """Per-delivery counters."""

    message_id: str
    job_id: str
    duplicate: bool = False
    skipped: bool = False
    accepted: int = 0
    transient: int = 0
    permanent: int = 0
    already_present: int = 0
    expired: int = 0


class ChunkProcessor:
    """Handles one chunk delivery.

    Redelivered messages are absorbed by the ledger; a crash before the ledger
    write is absorbed by skipping units that already have a task. Exceptions
    propagate so the channel redelivers.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        ledger: IdempotencyLedger,
        render_client: RenderClient,
        unit_delay_seconds: float = 0.0,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.render_client = render_client
        self.unit_delay_seconds = unit_delay_seconds

    def handle_delivery(
        self,
        body: str | bytes,
        message_id: str,
        *,
        deliver_by: datetime | None = None,
        delivery_attempt: int = 1,
    ) -> ChunkResult:
        """Entry point for a raw channel delivery, e.g. a QStash callback body."""

        if not message_id:
            raise ValueError("message_id is required.")
        return self.handle(
            ChunkMessage(
                message_id=message_id,
                payload=ChunkPayload.from_json(body),
                deliver_by=deliver_by,
                delivery_attempt=delivery_attempt,
            ),
        )

    def handle(self, message: ChunkMessage) -> ChunkResult:
        payload = message.payload
        result = ChunkResult(message_id=message.message_id, job_id=payload.job_id)

        if self.ledger.has_processed(message.message_id):
            logger.info("Message %s already processed; skipping", message.message_id)
            result.duplicate = True
            return result

        job = self.repository.get_job(job_id=payload.job_id)
        if job is None or job.is_terminal:
            logger.warning(
                "Skipping chunk %s for job %s: %s",
                message.message_id,
                payload.job_id,
                "unknown job" if job is None else f"job is {job.status.value}",
            )
            result.skipped = True
            self.ledger.mark_processed(message.message_id, job_id=payload.job_id)
            return result

        existing = self.repository.existing_unit_indices(job_id=payload.job_id)
        submitted = 0
        for unit_index, prompt in zip(payload.unit_indices(), payload.unit_params, strict=True):
            if unit_index in existing:
                result.already_present += 1
                continue
            if message.deliver_by is not None and utc_now() >= message.deliver_by:
                self.repository.insert_failed_task(
                    job_id=payload.job_id,
                    unit_index=unit_index,
                    prompt=prompt,
                    error_message="Delivery deadline passed before the unit was submitted.",
                )
                result.expired += 1
                continue
            if submitted > 0 and self.unit_delay_seconds > 0:
                time.sleep(self.unit_delay_seconds)
            submitted += 1
            self._submit_unit(payload=payload, unit_index=unit_index, prompt=prompt, result=result)

        self.ledger.mark_processed(message.message_id, job_id=payload.job_id)
        logger.info(
            "Chunk %s (job %s, start %d) processed: accepted=%d transient=%d permanent=%d "
            "already_present=%d expired=%d",
            message.message_id,
            payload.job_id,
            payload.start_index,
            result.accepted,
            result.transient,
            result.permanent,
            result.already_present,
            result.expired,
        )
        return result

    def _submit_unit(
        self,
        *,
        payload: ChunkPayload,
        unit_index: int,
        prompt: str,
        result: ChunkResult,
    ) -> None:
        outcome = self.render_client.create_task(
            prompt=prompt,
            reference_assets=payload.shared.reference_assets,
            output_shape=payload.shared.output_shape,
        )
        if isinstance(outcome, Accepted):
            task = self.repository.insert_pending_task(
                job_id=payload.job_id,
                unit_index=unit_index,
                prompt=prompt,
                external_task_id=outcome.external_task_id,
            )
            if task is None:
                logger.warning(
                    "External task %s for job %s unit %d is orphaned by a concurrent insert",
                    outcome.external_task_id,
                    payload.job_id,
                    unit_index,
                )
            result.accepted += 1
        elif isinstance(outcome, TransientError):
            self.repository.insert_pending_task(
                job_id=payload.job_id,
                unit_index=unit_index,
                prompt=prompt,
                external_task_id=None,
                attempts=1,
                error_message=outcome.message,
            )
            result.transient += 1
        elif isinstance(outcome, PermanentError):
            self.repository.insert_failed_task(
                job_id=payload.job_id,
                unit_index=unit_index,
                prompt=prompt,
                error_message=outcome.message,
            )
            result.permanent += 1
        else:
            raise RuntimeError(f"Unexpected render outcome: {outcome!r}")
