from __future__ import annotations

import allure
from conftest import age_job, age_ledger_entry

from render_batch.config import RetentionSettings
from render_batch.orchestrator.dead_letters import DeadLetterStore
from render_batch.orchestrator.ledger import IdempotencyLedger
from render_batch.orchestrator.maintenance import STALLED_UNIT_ERROR, MaintenanceService
from render_batch.orchestrator.models import JobStatus, SharedPayload, TaskStatus
from render_batch.orchestrator.repository import JobRepository

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Maintenance Sweep"),
]


def _service(repository: JobRepository) -> MaintenanceService:
    return MaintenanceService(
        repository=repository,
        ledger=IdempotencyLedger(repository.engine),
        dead_letters=DeadLetterStore(repository),
        retention=RetentionSettings(ledger_retention_days=7, stalled_job_after_seconds=1_800),
        max_attempts=3,
    )


def test_sweep_purges_expired_ledger_entries(repository: JobRepository) -> None:
    service = _service(repository)
    service.ledger.mark_processed("old", job_id="job-1")
    service.ledger.mark_processed("recent", job_id="job-1")
    age_ledger_entry(repository, "old", days=10)

    preview = service.sweep(dry_run=True)
    assert preview.ledger_purged == 1
    assert service.ledger.has_processed("old")

    report = service.sweep()
    assert report.ledger_purged == 1
    assert not service.ledger.has_processed("old")
    assert service.ledger.has_processed("recent")


def test_exhausted_task_without_entry_is_dead_lettered(
    repository: JobRepository,
    shared_payload: SharedPayload,
) -> None:
    job = repository.create_job(total_units=2, shared=shared_payload, unit_params=("a", "b"))
    exhausted = repository.insert_pending_task(
        job_id=job.job_id,
        unit_index=0,
        prompt="a",
        external_task_id="kie-a",
        attempts=2,
    )
    repository.fail_task(
        task_id=exhausted.task_id,
        expected_attempts=2,
        attempts=3,
        error_message="gave up",
    )
    repository.insert_failed_task(
        job_id=job.job_id,
        unit_index=1,
        prompt="b",
        error_message="content policy violation",
    )
    service = _service(repository)

    assert service.reconcile_dead_letters(dry_run=True) == 1
    assert service.reconcile_dead_letters() == 1
    assert service.reconcile_dead_letters() == 0

    entries = service.dead_letters.list()
    assert [entry.task_id for entry in entries] == [exhausted.task_id]
    assert entries[0].context["reason"] == "reconciled"
    assert entries[0].last_error == "gave up"


def test_stalled_job_gets_missing_units_failed_and_finalized(
    repository: JobRepository,
    shared_payload: SharedPayload,
) -> None:
    job = repository.create_job(
        total_units=3,
        shared=shared_payload,
        unit_params=("a", "b", "c"),
    )
    repository.mark_job_processing(job_id=job.job_id)
    task = repository.insert_pending_task(
        job_id=job.job_id,
        unit_index=0,
        prompt="a",
        external_task_id="kie-a",
    )
    repository.complete_task(task_id=task.task_id, result_ref="https://cdn/a.jpg")
    age_job(repository, job.job_id, seconds=3_600)
    service = _service(repository)

    assert service.reconcile_stalled_jobs(dry_run=True) == (1, 2, 0)
    assert repository.existing_unit_indices(job_id=job.job_id) == {0}

    report = service.sweep()

    assert (report.stalled_jobs, report.stalled_units_failed, report.jobs_finalized) == (1, 2, 1)
    failed = repository.list_tasks(job_id=job.job_id, status=TaskStatus.FAILED)
    assert [(task.unit_index, task.prompt) for task in failed] == [(1, "b"), (2, "c")]
    assert all(task.error_message == STALLED_UNIT_ERROR for task in failed)
    stored = repository.get_job(job_id=job.job_id)
    assert stored.status == JobStatus.COMPLETED_WITH_ERRORS
    assert stored.error_summary == "2/3 units failed."


def test_recent_or_fully_tasked_jobs_are_left_alone(
    repository: JobRepository,
    shared_payload: SharedPayload,
) -> None:
    recent = repository.create_job(total_units=1, shared=shared_payload, unit_params=("a",))
    tasked = repository.create_job(total_units=1, shared=shared_payload, unit_params=("b",))
    repository.insert_pending_task(
        job_id=tasked.job_id,
        unit_index=0,
        prompt="b",
        external_task_id="kie-b",
    )
    age_job(repository, tasked.job_id, seconds=3_600)

    assert _service(repository).reconcile_stalled_jobs() == (0, 0, 0)
    assert repository.existing_unit_indices(job_id=recent.job_id) == set()
