"""Split generation requests into chunks and publish them to the dispatch channel."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from render_batch.config import DispatchSettings
from render_batch.orchestrator.channel.base import DispatchChannel, PublishError
from render_batch.orchestrator.models import (
    ChunkPayload,
    GenerationRequest,
    JobView,
    TaskFailureWrite,
)
from render_batch.orchestrator.repository import JobRepository

logger = logging.getLogger(__name__)

_MAX_PUBLISH_BACKOFF_SECONDS = 30.0


@dataclass(slots=True)
class ChunkDispatch:
    """Publish outcome for one chunk."""

    start_index: int
    chunk_size: int
    message_id: str | None = None
    publish_attempts: int = 0
    error: str | None = None

    @property
    def accepted(self) -> bool:
        return self.message_id is not None


@dataclass(slots=True)
class DispatchReport:
    """Aggregate dispatch result for CLI reporting."""

    job: JobView
    chunks: list[ChunkDispatch] = field(default_factory=list)
    failed_units: int = 0

    @property
    def accepted_chunks(self) -> int:
        return sum(1 for chunk in self.chunks if chunk.accepted)

    @property
    def failed_chunks(self) -> int:
        return sum(1 for chunk in self.chunks if not chunk.accepted)


class JobDispatcher:
    """Creates a job and publishes its chunks without waiting for render results."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        channel: DispatchChannel,
        settings: DispatchSettings,
        redelivery_attempts: int = 3,
    ) -> None:
        self.repository = repository
        self.channel = channel
        self.settings = settings
        self.redelivery_attempts = redelivery_attempts

    def dispatch(self, request: GenerationRequest) -> DispatchReport:
        """Create the job row and publish every chunk.

        Chunks whose publish budget runs out, or that are still unpublished
        when the dispatch timeout expires, have their units written as failed
        tasks immediately.
        """

        chunk_size = request.chunk_size or self.settings.chunk_size
        request.validate(chunk_size=chunk_size)

        job = self.repository.create_job(
            total_units=request.total_units,
            shared=request.shared,
            unit_params=request.unit_params,
        )
        payloads = [
            ChunkPayload(
                job_id=job.job_id,
                start_index=start,
                chunk_size=min(chunk_size, request.total_units - start),
                shared=request.shared,
                unit_params=request.unit_params[start : start + chunk_size],
            )
            for start in range(0, request.total_units, chunk_size)
        ]
        logger.info(
            "Dispatching job %s: %d units in %d chunks",
            job.job_id,
            request.total_units,
            len(payloads),
        )

        outcomes = self._publish_all(payloads)

        report = DispatchReport(job=job)
        for payload in payloads:
            outcome = outcomes.get(payload.start_index) or ChunkDispatch(
                start_index=payload.start_index,
                chunk_size=payload.chunk_size,
                error="Dispatch timeout expired before the chunk was published.",
            )
            report.chunks.append(outcome)
            if outcome.accepted:
                continue
            report.failed_units += self.repository.insert_failed_tasks(
                job_id=job.job_id,
                failures=[
                    TaskFailureWrite(
                        unit_index=unit_index,
                        prompt=prompt,
                        error_message=f"Chunk publish failed: {outcome.error}",
                    )
                    for unit_index, prompt in zip(
                        payload.unit_indices(),
                        payload.unit_params,
                        strict=True,
                    )
                ],
            )

        if report.accepted_chunks == 0:
            self.repository.finalize_job_if_done(job_id=job.job_id)
        report.job = self.repository.get_job(job_id=job.job_id) or job
        logger.info(
            "Job %s dispatched: accepted_chunks=%d failed_chunks=%d failed_units=%d",
            job.job_id,
            report.accepted_chunks,
            report.failed_chunks,
            report.failed_units,
        )
        return report

    def _publish_all(self, payloads: list[ChunkPayload]) -> dict[int, ChunkDispatch]:
        deadline = time.monotonic() + self.settings.dispatch_timeout_seconds
        executor = ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_chunks,
            thread_name_prefix="render-batch-dispatch",
        )
        futures: dict[Future[ChunkDispatch], int] = {}
        try:
            for index, payload in enumerate(payloads):
                if index > 0 and self.settings.chunk_delay_seconds > 0:
                    time.sleep(self.settings.chunk_delay_seconds)
                if time.monotonic() >= deadline:
                    logger.warning(
                        "Dispatch timeout reached; %d chunks left unpublished",
                        len(payloads) - index,
                    )
                    break
                future = executor.submit(self._publish_chunk, payload, deadline)
                futures[future] = payload.start_index

            done, not_done = wait(futures, timeout=max(0.0, deadline - time.monotonic()))
            for future in not_done:
                future.cancel()
            return {futures[future]: future.result() for future in done}
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _publish_chunk(self, payload: ChunkPayload, deadline: float) -> ChunkDispatch:
        outcome = ChunkDispatch(start_index=payload.start_index, chunk_size=payload.chunk_size)
        for attempt in range(1, self.settings.publish_attempts + 1):
            outcome.publish_attempts = attempt
            try:
                outcome.message_id = self.channel.publish(
                    payload,
                    retries=self.redelivery_attempts,
                    timeout_seconds=self.settings.chunk_timeout_seconds,
                )
            except PublishError as error:
                outcome.error = str(error)
                logger.warning(
                    "Publish attempt %d/%d for job %s chunk %d failed: %s",
                    attempt,
                    self.settings.publish_attempts,
                    payload.job_id,
                    payload.start_index,
                    error,
                )
                if attempt < self.settings.publish_attempts:
                    delay = min(
                        _MAX_PUBLISH_BACKOFF_SECONDS,
                        self.settings.publish_backoff_seconds * (2 ** (attempt - 1)),
                    )
                    if time.monotonic() + delay >= deadline:
                        break
                    time.sleep(delay)
                continue
            outcome.error = None
            self.repository.mark_job_processing(job_id=payload.job_id)
            return outcome
        return outcome
