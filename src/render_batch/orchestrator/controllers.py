"""Controllers for render-batch CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from render_batch.config import Settings
from render_batch.orchestrator.channel import (
    DispatchChannel,
    LocalDispatchChannel,
    QStashDispatchChannel,
)
from render_batch.orchestrator.chunk_processor import ChunkProcessor
from render_batch.orchestrator.dead_letters import DeadLetterStore
from render_batch.orchestrator.dispatcher import JobDispatcher
from render_batch.orchestrator.ledger import IdempotencyLedger
from render_batch.orchestrator.maintenance import MaintenanceService
from render_batch.orchestrator.models import (
    GenerationRequest,
    JobStatus,
    OutputShape,
    SharedPayload,
    TaskStatus,
)
from render_batch.orchestrator.poller import TaskPoller
from render_batch.orchestrator.render import RenderClient, build_render_client
from render_batch.orchestrator.repository import JobRepository


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    prompts: tuple[str, ...]
    prompts_file: Path | None
    reference_assets: tuple[str, ...]
    aspect_ratio: str | None
    resolution: str
    output_format: str | None
    chunk_size: int | None
    drain_timeout_seconds: float | None = None


@dataclass(slots=True)
class JobStatusCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    job_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class PollCommand:
    """CLI input for poller execution."""

    db_path: Path | None
    once: bool
    max_passes: int | None


@dataclass(slots=True)
class DeadLetterListCommand:
    db_path: Path | None
    include_resolved: bool
    job_id: str | None
    limit: int


@dataclass(slots=True)
class DeadLetterResolveCommand:
    db_path: Path | None
    entry_id: int
    operator: str
    note: str | None


@dataclass(slots=True)
class DeadLetterReplayCommand:
    db_path: Path | None
    entry_id: int
    operator: str


@dataclass(slots=True)
class SweepCommand:
    db_path: Path | None
    dry_run: bool


class BatchCliController:
    """Coordinates dispatch, polling, dead-letter and maintenance CLI operations."""

    def submit_job(self, command: JobSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        prompts = _collect_prompts(command.prompts, command.prompts_file)
        if not prompts:
            raise ValueError("At least one prompt is required (--prompt or --prompts-file).")
        request = GenerationRequest(
            total_units=len(prompts),
            unit_params=prompts,
            shared=SharedPayload(
                reference_assets=command.reference_assets,
                output_shape=OutputShape(
                    aspect_ratio=command.aspect_ratio or settings.render.aspect_ratio,
                    resolution=command.resolution,
                    output_format=command.output_format or settings.render.output_format,
                ),
            ),
            chunk_size=command.chunk_size,
        )

        with _repository(settings) as repository, _render_client(settings) as render_client:
            processor = ChunkProcessor(
                repository=repository,
                ledger=IdempotencyLedger(repository.engine),
                render_client=render_client,
                unit_delay_seconds=settings.dispatch.unit_delay_seconds,
            )
            channel = _build_channel(settings, processor)
            try:
                if isinstance(channel, LocalDispatchChannel):
                    channel.start()
                report = JobDispatcher(
                    repository=repository,
                    channel=channel,
                    settings=settings.dispatch,
                    redelivery_attempts=settings.channel.redelivery_attempts,
                ).dispatch(request)
                drained = True
                if isinstance(channel, LocalDispatchChannel):
                    drained = channel.drain(
                        timeout_seconds=command.drain_timeout_seconds
                        or float(settings.dispatch.chunk_timeout_seconds),
                    )
            finally:
                channel.close()
            job = repository.get_job(job_id=report.job.job_id) or report.job

        lines = [
            f"Job submitted: job_id={job.job_id} units={job.total_units} "
            f"status={job.status.value}",
            f"Chunks: accepted={report.accepted_chunks} failed={report.failed_chunks} "
            f"failed_units={report.failed_units}",
        ]
        if not drained:
            lines.append("Warning: local channel did not drain before timeout.")
        return lines

    def job_status(self, command: JobStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.get_job(job_id=command.job_id)
            if job is None:
                return [f"Job not found: {command.job_id}"]
            counts = repository.count_job_tasks(job_id=command.job_id)
        return [
            f"Job: {job.job_id}",
            f"Status: {job.status.value}",
            f"Progress: {job.completed_units}/{job.total_units}",
            f"Tasks: pending={counts.pending} completed={counts.completed} "
            f"failed={counts.failed} missing={max(0, job.total_units - counts.total)}",
            f"Error summary: {job.error_summary or '-'}",
            f"Created: {job.created_at.isoformat()}",
            f"Updated: {job.updated_at.isoformat()}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = JobStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status, limit=command.limit)
        if not jobs:
            return ["No jobs found."]
        return [
            f"{job.job_id} status={job.status.value} "
            f"progress={job.completed_units}/{job.total_units} "
            f"created_at={job.created_at.isoformat()}"
            for job in jobs
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(job_id=command.job_id, status=status, limit=command.limit)
        if not tasks:
            return ["No tasks found."]
        return [
            f"{task.task_id} job={task.job_id} unit={task.unit_index} "
            f"status={task.status.value} attempts={task.attempts} "
            f"external={task.external_task_id or '-'} result={task.result_ref or '-'}"
            for task in tasks
        ]

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Job: {task.job_id}",
            f"Unit: {task.unit_index}",
            f"Status: {task.status.value}",
            f"Attempts: {task.attempts}",
            f"External task: {task.external_task_id or '-'}",
            f"Result: {task.result_ref or '-'}",
            f"Error: {task.error_message or '-'}",
            f"Replay of: {task.replay_of or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def poll(self, command: PollCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository, _render_client(settings) as render_client:
            poller = TaskPoller(
                repository=repository,
                dead_letters=DeadLetterStore(repository),
                render_client=render_client,
                settings=settings.poller,
            )
            summary = (
                poller.run_once()
                if command.once
                else poller.run_loop(max_passes=command.max_passes)
            )

        return [
            "Poll summary: "
            f"passes={summary.passes} checked={summary.checked} "
            f"completed={summary.completed} submitted={summary.submitted} "
            f"retried={summary.retried} failed={summary.failed} "
            f"dead_lettered={summary.dead_lettered} still_pending={summary.still_pending} "
            f"check_errors={summary.check_errors} jobs_finalized={summary.jobs_finalized}",
        ]

    def list_dead_letters(self, command: DeadLetterListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            entries = DeadLetterStore(repository).list(
                resolved=None if command.include_resolved else False,
                job_id=command.job_id,
                limit=command.limit,
            )
        if not entries:
            return ["No dead letters."]
        lines = []
        for entry in entries:
            state = f"resolved by {entry.resolved_by}" if entry.resolved else "open"
            lines.append(
                f"#{entry.entry_id} task={entry.task_id} job={entry.job_id} "
                f"unit={entry.unit_index} attempts={entry.attempts} [{state}] "
                f"error={entry.last_error or '-'}",
            )
        return lines

    def resolve_dead_letter(self, command: DeadLetterResolveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            resolved = DeadLetterStore(repository).resolve(
                command.entry_id,
                resolved_by=command.operator,
                note=command.note,
            )
        if not resolved:
            return [f"Dead letter #{command.entry_id} not found or already resolved."]
        return [f"Dead letter #{command.entry_id} resolved by {command.operator}."]

    def replay_dead_letter(self, command: DeadLetterReplayCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = DeadLetterStore(repository).replay(command.entry_id, operator=command.operator)
        return [
            f"Dead letter #{command.entry_id} replayed as task {task.task_id} "
            f"(job={task.job_id} unit={task.unit_index}).",
        ]

    def sweep(self, command: SweepCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            report = MaintenanceService(
                repository=repository,
                ledger=IdempotencyLedger(repository.engine),
                dead_letters=DeadLetterStore(repository),
                retention=settings.retention,
                max_attempts=settings.poller.max_attempts,
            ).sweep(dry_run=command.dry_run)
        prefix = "Maintenance sweep (dry run)" if report.dry_run else "Maintenance sweep"
        return [
            f"{prefix}: ledger_purged={report.ledger_purged} "
            f"dead_letters_recorded={report.dead_letters_recorded} "
            f"stalled_jobs={report.stalled_jobs} "
            f"stalled_units_failed={report.stalled_units_failed} "
            f"jobs_finalized={report.jobs_finalized}",
        ]


def _collect_prompts(prompts: tuple[str, ...], prompts_file: Path | None) -> tuple[str, ...]:
    collected = [prompt.strip() for prompt in prompts if prompt.strip()]
    if prompts_file is not None:
        for line in prompts_file.read_text(encoding="utf-8").splitlines():
            if line.strip():
                collected.append(line.strip())
    return tuple(collected)


def _build_channel(settings: Settings, processor: ChunkProcessor) -> DispatchChannel:
    if settings.channel.backend == "qstash":
        return QStashDispatchChannel(
            base_url=settings.channel.qstash_url,
            token=settings.channel.qstash_token,
            callback_url=settings.channel.callback_url,
        )
    return LocalDispatchChannel(
        processor.handle,
        workers=settings.channel.workers,
        queue_size=settings.channel.queue_size,
    )


@contextmanager
def _render_client(settings: Settings) -> Iterator[RenderClient]:
    client = build_render_client(settings.render, settings.poller)
    try:
        yield client
    finally:
        client.close()


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(db_path=settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
