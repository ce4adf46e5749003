from __future__ import annotations

import queue
import threading
from pathlib import Path

import allure
import pytest

from render_batch.orchestrator.models import (
    JobStatus,
    SharedPayload,
    TaskFailureWrite,
    TaskStatus,
)
from render_batch.orchestrator.repository import JobRepository

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Conditional Writes"),
]


def _job(repository: JobRepository, shared: SharedPayload, units: int = 2):
    return repository.create_job(
        total_units=units,
        shared=shared,
        unit_params=tuple(f"prompt {index}" for index in range(units)),
    )


def test_create_job_round_trips_shared_payload(
    repository: JobRepository,
    shared_payload: SharedPayload,
) -> None:
    job = _job(repository, shared_payload, units=3)

    loaded = repository.get_job(job_id=job.job_id)
    assert loaded is not None
    assert loaded.status == JobStatus.PENDING
    assert loaded.total_units == 3
    assert loaded.completed_units == 0
    assert loaded.shared == shared_payload
    assert repository.get_unit_params(job_id=job.job_id) == ("prompt 0", "prompt 1", "prompt 2")
    assert repository.get_job(job_id="missing") is None


def test_create_job_rejects_mismatched_unit_params(
    repository: JobRepository,
    shared_payload: SharedPayload,
) -> None:
    with pytest.raises(ValueError, match="Expected 2 unit params"):
        repository.create_job(total_units=2, shared=shared_payload, unit_params=("a",))
    assert repository.list_jobs() == []


def test_mark_job_processing_is_conditional(
    repository: JobRepository,
    shared_payload: SharedPayload,
) -> None:
    job = _job(repository, shared_payload)

    assert repository.mark_job_processing(job_id=job.job_id) is True
    assert repository.mark_job_processing(job_id=job.job_id) is False
    assert repository.get_job(job_id=job.job_id).status == JobStatus.PROCESSING


def test_second_task_for_same_unit_is_a_noop(
    repository: JobRepository,
    shared_payload: SharedPayload,
) -> None:
    job = _job(repository, shared_payload)

    first = repository.insert_pending_task(
        job_id=job.job_id,
        unit_index=0,
        prompt="prompt 0",
        external_task_id="ext-1",
    )
    second = repository.insert_pending_task(
        job_id=job.job_id,
        unit_index=0,
        prompt="prompt 0",
        external_task_id="ext-2",
    )

    assert first is not None
    assert second is None
    assert repository.existing_unit_indices(job_id=job.job_id) == {0}
    inserted = repository.insert_failed_tasks(
        job_id=job.job_id,
        failures=[
            TaskFailureWrite(unit_index=0, prompt="prompt 0", error_message="lost"),
            TaskFailureWrite(unit_index=1, prompt="prompt 1", error_message="lost"),
        ],
    )
    assert inserted == 1


def test_complete_task_increments_job_counter_once(
    repository: JobRepository,
    shared_payload: SharedPayload,
) -> None:
    job = _job(repository, shared_payload)
    task = repository.insert_pending_task(
        job_id=job.job_id,
        unit_index=0,
        prompt="prompt 0",
        external_task_id="ext-1",
    )
    assert task is not None

    assert repository.complete_task(task_id=task.task_id, result_ref="https://cdn/a.jpg") is True
    assert repository.complete_task(task_id=task.task_id, result_ref="https://cdn/b.jpg") is False

    stored = repository.get_task(task_id=task.task_id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.result_ref == "https://cdn/a.jpg"
    assert repository.get_job(job_id=job.job_id).completed_units == 1

    details = repository.get_task_details(task_id=task.task_id)
    assert [event.event_type for event in details.events] == ["created", "completed"]
    assert details.events[-1].details["result_ref"] == "https://cdn/a.jpg"


def _complete_in_thread(
    db_path: Path,
    task_id: str,
    start_event: threading.Event,
    results: queue.Queue[bool | str],
) -> None:
    repository = JobRepository(db_path)
    try:
        start_event.wait(timeout=5)
        results.put(repository.complete_task(task_id=task_id, result_ref="https://cdn/race.jpg"))
    except Exception as error:  # noqa: BLE001
        results.put(f"error: {error}")
    finally:
        repository.close()


def test_concurrent_completions_make_one_transition(
    repository: JobRepository,
    shared_payload: SharedPayload,
) -> None:
    job = _job(repository, shared_payload)
    task = repository.insert_pending_task(
        job_id=job.job_id,
        unit_index=0,
        prompt="prompt 0",
        external_task_id="ext-1",
    )
    assert task is not None

    start_event = threading.Event()
    results: queue.Queue[bool | str] = queue.Queue()
    threads = [
        threading.Thread(
            target=_complete_in_thread,
            args=(repository.db_path, task.task_id, start_event, results),
        )
        for _ in range(4)
    ]
    for thread in threads:
        thread.start()
    start_event.set()
    for thread in threads:
        thread.join(timeout=15)

    outcomes = [results.get_nowait() for _ in range(4)]
    assert sorted(outcomes, key=str) == [False, False, False, True]
    assert repository.get_job(job_id=job.job_id).completed_units == 1


def test_resubmit_and_attach_are_guarded_by_attempts(
    repository: JobRepository,
    shared_payload: SharedPayload,
) -> None:
    job = _job(repository, shared_payload)
    task = repository.insert_pending_task(
        job_id=job.job_id,
        unit_index=0,
        prompt="prompt 0",
        external_task_id="ext-1",
    )
    assert task is not None

    assert repository.begin_resubmit(
        task_id=task.task_id,
        expected_attempts=0,
        error_message="boom",
        reason="render_failed",
    )
    assert not repository.begin_resubmit(
        task_id=task.task_id,
        expected_attempts=0,
        error_message="boom",
        reason="render_failed",
    )
    detached = repository.get_task(task_id=task.task_id)
    assert detached.attempts == 1
    assert detached.external_task_id is None
    assert detached.status == TaskStatus.PENDING

    assert not repository.attach_external_task(
        task_id=task.task_id,
        expected_attempts=0,
        external_task_id="ext-stale",
    )
    assert repository.attach_external_task(
        task_id=task.task_id,
        expected_attempts=1,
        external_task_id="ext-2",
    )
    assert not repository.attach_external_task(
        task_id=task.task_id,
        expected_attempts=1,
        external_task_id="ext-3",
    )
    assert repository.get_task(task_id=task.task_id).external_task_id == "ext-2"


def test_terminal_tasks_never_transition_again(
    repository: JobRepository,
    shared_payload: SharedPayload,
) -> None:
    job = _job(repository, shared_payload)
    task = repository.insert_pending_task(
        job_id=job.job_id,
        unit_index=0,
        prompt="prompt 0",
        external_task_id="ext-1",
    )
    assert task is not None

    assert repository.fail_task(
        task_id=task.task_id,
        expected_attempts=0,
        attempts=3,
        error_message="gave up",
    )
    assert not repository.complete_task(task_id=task.task_id, result_ref="https://cdn/late.jpg")
    assert not repository.begin_resubmit(
        task_id=task.task_id,
        expected_attempts=3,
        error_message="again",
        reason="stale",
    )
    stored = repository.get_task(task_id=task.task_id)
    assert stored.status == TaskStatus.FAILED
    assert stored.attempts == 3


@pytest.mark.parametrize(
    ("completed", "failed", "expected"),
    [
        (2, 0, JobStatus.COMPLETED),
        (1, 1, JobStatus.COMPLETED_WITH_ERRORS),
        (0, 2, JobStatus.FAILED),
    ],
)
def test_finalize_job_picks_terminal_status(
    repository: JobRepository,
    shared_payload: SharedPayload,
    completed: int,
    failed: int,
    expected: JobStatus,
) -> None:
    job = _job(repository, shared_payload)
    repository.mark_job_processing(job_id=job.job_id)
    for unit_index in range(completed):
        task = repository.insert_pending_task(
            job_id=job.job_id,
            unit_index=unit_index,
            prompt=f"prompt {unit_index}",
            external_task_id=f"ext-{unit_index}",
        )
        repository.complete_task(task_id=task.task_id, result_ref=f"https://cdn/{unit_index}.jpg")
    for unit_index in range(completed, completed + failed):
        repository.insert_failed_task(
            job_id=job.job_id,
            unit_index=unit_index,
            prompt=f"prompt {unit_index}",
            error_message="rejected",
        )

    finalized = repository.finalize_job_if_done(job_id=job.job_id)

    assert finalized is not None
    assert finalized.status == expected
    assert finalized.completed_units == completed
    if failed:
        assert str(failed) in (finalized.error_summary or "")
    assert repository.finalize_job_if_done(job_id=job.job_id) is None


def test_finalize_waits_for_missing_and_pending_units(
    repository: JobRepository,
    shared_payload: SharedPayload,
) -> None:
    job = _job(repository, shared_payload)
    repository.insert_failed_task(
        job_id=job.job_id,
        unit_index=0,
        prompt="prompt 0",
        error_message="rejected",
    )
    assert repository.finalize_job_if_done(job_id=job.job_id) is None

    repository.insert_pending_task(
        job_id=job.job_id,
        unit_index=1,
        prompt="prompt 1",
        external_task_id="ext-1",
    )
    assert repository.finalize_job_if_done(job_id=job.job_id) is None
    assert repository.get_job(job_id=job.job_id).status == JobStatus.PENDING


def test_replay_task_supersedes_failed_task_and_reopens_job(
    repository: JobRepository,
    shared_payload: SharedPayload,
) -> None:
    job = _job(repository, shared_payload, units=1)
    failed = repository.insert_failed_task(
        job_id=job.job_id,
        unit_index=0,
        prompt="prompt 0",
        error_message="rejected",
    )
    assert repository.finalize_job_if_done(job_id=job.job_id).status == JobStatus.FAILED

    replay = repository.create_replay_task(
        failed_task_id=failed.task_id,
        operator="ops",
        reason="manual",
    )

    assert replay.replay_of == failed.task_id
    assert replay.status == TaskStatus.PENDING
    assert replay.attempts == 0
    assert replay.external_task_id is None
    assert repository.get_job(job_id=job.job_id).status == JobStatus.PROCESSING
    counts = repository.count_job_tasks(job_id=job.job_id)
    assert (counts.total, counts.pending, counts.failed) == (1, 1, 0)

    with pytest.raises(RuntimeError, match="already replayed"):
        repository.create_replay_task(failed_task_id=failed.task_id, operator="ops", reason="x")
    with pytest.raises(RuntimeError, match="Only failed tasks can be replayed"):
        repository.create_replay_task(failed_task_id=replay.task_id, operator="ops", reason="x")

    repository.attach_external_task(
        task_id=replay.task_id,
        expected_attempts=0,
        external_task_id="ext-replay",
    )
    repository.complete_task(task_id=replay.task_id, result_ref="https://cdn/replay.jpg")
    finalized = repository.finalize_job_if_done(job_id=job.job_id)
    assert finalized.status == JobStatus.COMPLETED
    assert finalized.completed_units == 1


def test_list_pending_tasks_is_oldest_first_and_bounded(
    repository: JobRepository,
    shared_payload: SharedPayload,
) -> None:
    job = _job(repository, shared_payload, units=3)
    created = [
        repository.insert_pending_task(
            job_id=job.job_id,
            unit_index=index,
            prompt=f"prompt {index}",
            external_task_id=f"ext-{index}",
        )
        for index in range(3)
    ]

    pending = repository.list_pending_tasks(limit=2)

    assert [task.task_id for task in pending] == [task.task_id for task in created[:2]]
