"""Daily housekeeping: ledger retention and reconciliation of lost work."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from render_batch.config import RetentionSettings
from render_batch.orchestrator.dead_letters import DeadLetterStore
from render_batch.orchestrator.ledger import IdempotencyLedger
from render_batch.orchestrator.models import TaskFailureWrite
from render_batch.orchestrator.repository import JobRepository
from render_batch.storage.common import utc_now

logger = logging.getLogger(__name__)

STALLED_UNIT_ERROR = "No task was created for this unit before the stall threshold."


@dataclass(slots=True)
class SweepReport:
    """Counts produced by one maintenance sweep."""

    dry_run: bool
    ledger_purged: int = 0
    dead_letters_recorded: int = 0
    stalled_jobs: int = 0
    stalled_units_failed: int = 0
    jobs_finalized: int = 0


class MaintenanceService:
    """Purges the ledger and closes gaps left by crashes or lost chunks."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        ledger: IdempotencyLedger,
        dead_letters: DeadLetterStore,
        retention: RetentionSettings,
        max_attempts: int,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.dead_letters = dead_letters
        self.retention = retention
        self.max_attempts = max_attempts

    def purge_ledger(self, *, dry_run: bool = False) -> int:
        if dry_run:
            cutoff = utc_now() - timedelta(days=self.retention.ledger_retention_days)
            return self.ledger.count_older_than(older_than=cutoff)
        purged = self.ledger.purge_expired(retention_days=self.retention.ledger_retention_days)
        if purged:
            logger.info("Purged %d processed-message entries", purged)
        return purged

    def reconcile_dead_letters(self, *, dry_run: bool = False) -> int:
        """Write missing dead-letter entries for exhausted failed tasks."""

        tasks = self.repository.list_exhausted_tasks_without_dead_letter(
            min_attempts=self.max_attempts,
        )
        if dry_run:
            return len(tasks)
        recorded = 0
        for task in tasks:
            entry = self.dead_letters.record(
                task,
                last_error=task.error_message,
                attempts=task.attempts,
                context={"reason": "reconciled"},
            )
            if entry is not None:
                recorded += 1
        return recorded

    def reconcile_stalled_jobs(self, *, dry_run: bool = False) -> tuple[int, int, int]:
        """Fail units of stalled jobs that never got a task.

        Returns ``(stalled_jobs, units_failed, jobs_finalized)``.
        """

        cutoff = utc_now() - timedelta(seconds=self.retention.stalled_job_after_seconds)
        stalled_jobs = 0
        units_failed = 0
        jobs_finalized = 0
        for job in self.repository.list_stalled_jobs(updated_before=cutoff):
            existing = self.repository.existing_unit_indices(job_id=job.job_id)
            missing = sorted(set(range(job.total_units)) - existing)
            if not missing:
                continue
            stalled_jobs += 1
            if dry_run:
                units_failed += len(missing)
                continue
            unit_params = self.repository.get_unit_params(job_id=job.job_id)
            units_failed += self.repository.insert_failed_tasks(
                job_id=job.job_id,
                failures=[
                    TaskFailureWrite(
                        unit_index=unit_index,
                        prompt=unit_params[unit_index] if unit_index < len(unit_params) else "",
                        error_message=STALLED_UNIT_ERROR,
                    )
                    for unit_index in missing
                ],
            )
            logger.warning(
                "Job %s stalled: failed %d units that never got a task",
                job.job_id,
                len(missing),
            )
            if self.repository.finalize_job_if_done(job_id=job.job_id) is not None:
                jobs_finalized += 1
        return stalled_jobs, units_failed, jobs_finalized

    def sweep(self, *, dry_run: bool = False) -> SweepReport:
        report = SweepReport(dry_run=dry_run)
        report.ledger_purged = self.purge_ledger(dry_run=dry_run)
        report.dead_letters_recorded = self.reconcile_dead_letters(dry_run=dry_run)
        (
            report.stalled_jobs,
            report.stalled_units_failed,
            report.jobs_finalized,
        ) = self.reconcile_stalled_jobs(dry_run=dry_run)
        return report
