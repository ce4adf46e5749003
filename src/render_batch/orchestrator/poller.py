"""Periodic reconciliation of pending render tasks against the render API."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, fields

from render_batch.config import PollerSettings
from render_batch.orchestrator.dead_letters import DeadLetterStore
from render_batch.orchestrator.failure_classifier import classify_render_failure
from render_batch.orchestrator.models import (
    Accepted,
    JobView,
    PermanentError,
    RenderTaskState,
    TaskView,
    TransientError,
)
from render_batch.orchestrator.render.base import RenderClient
from render_batch.orchestrator.repository import JobRepository
from render_batch.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PollSummary:
    """Aggregate poller counters for CLI reporting."""

    passes: int = 0
    checked: int = 0
    completed: int = 0
    submitted: int = 0
    retried: int = 0
    failed: int = 0
    dead_lettered: int = 0
    still_pending: int = 0
    check_errors: int = 0
    lost_races: int = 0
    jobs_finalized: int = 0
    budget_exhausted: int = 0

    def merge(self, other: PollSummary) -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))


class TaskPoller:
    """Reconciles a bounded batch of pending tasks per pass.

    Several pollers may overlap; each transition is a conditional write, so the
    loser of a race sees ``False`` and moves on.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        dead_letters: DeadLetterStore,
        render_client: RenderClient,
        settings: PollerSettings,
    ) -> None:
        self.repository = repository
        self.dead_letters = dead_letters
        self.render_client = render_client
        self.settings = settings
        self._stop_requested = False
        self._jobs: dict[str, JobView] = {}

    def run_once(self) -> PollSummary:
        """Run one reconciliation pass."""

        summary = PollSummary(passes=1)
        self._jobs = {}
        started = time.monotonic()
        tasks = self.repository.list_pending_tasks(limit=self.settings.batch_size)

        for task in tasks:
            if self._stop_requested:
                break
            if time.monotonic() - started >= self.settings.pass_budget_seconds:
                logger.info(
                    "Poll pass budget of %.1fs exhausted after %d tasks",
                    self.settings.pass_budget_seconds,
                    summary.checked,
                )
                summary.budget_exhausted = 1
                break
            summary.checked += 1
            if self._process_task(task, summary) and self.repository.finalize_job_if_done(
                job_id=task.job_id,
            ):
                summary.jobs_finalized += 1

        for job_id in self.repository.list_open_job_ids():
            if self.repository.finalize_job_if_done(job_id=job_id) is not None:
                summary.jobs_finalized += 1

        logger.info(
            "Poll pass: checked=%d completed=%d submitted=%d retried=%d failed=%d "
            "still_pending=%d check_errors=%d jobs_finalized=%d",
            summary.checked,
            summary.completed,
            summary.submitted,
            summary.retried,
            summary.failed,
            summary.still_pending,
            summary.check_errors,
            summary.jobs_finalized,
        )
        return summary

    def run_loop(self, *, max_passes: int | None = None) -> PollSummary:
        """Repeat passes on the interval until stopped or ``max_passes`` is reached."""

        aggregate = PollSummary()
        with self._signal_handlers():
            while not self._stop_requested:
                aggregate.merge(self.run_once())
                if max_passes is not None and aggregate.passes >= max_passes:
                    break
                self._sleep_with_stop(self.settings.interval_seconds)
        return aggregate

    def _process_task(self, task: TaskView, summary: PollSummary) -> bool:
        """Reconcile one task; returns whether it reached a terminal status."""

        if task.external_task_id is None:
            if task.attempts >= self.settings.max_attempts:
                return self._fail(
                    task,
                    summary,
                    expected_attempts=task.attempts,
                    attempts=task.attempts,
                    error=task.error_message or "Retry budget spent before submission.",
                    reason="attempts_exhausted",
                )
            return self._submit(task, summary, count_transient=True)

        report = self.render_client.get_task_status(task.external_task_id)

        if report.state == RenderTaskState.SUCCESS:
            if not report.result_ref:
                return self._handle_failed_attempt(
                    task,
                    summary,
                    error="Render task succeeded without a result reference.",
                    reason="missing_result",
                )
            if self.repository.complete_task(task_id=task.task_id, result_ref=report.result_ref):
                summary.completed += 1
                return True
            summary.lost_races += 1
            return False

        if report.state == RenderTaskState.FAILED:
            error = report.error or "Render task failed."
            classification = classify_render_failure(status_code=None, message=error)
            return self._handle_failed_attempt(
                task,
                summary,
                error=error,
                reason="render_failed",
                details=classification.to_event_details(),
            )

        if report.error is not None:
            logger.warning(
                "Status check for task %s (%s) failed: %s",
                task.task_id,
                task.external_task_id,
                report.error,
            )
            summary.check_errors += 1
            return False

        age_seconds = (utc_now() - task.updated_at).total_seconds()
        if age_seconds >= self.settings.stale_after_seconds:
            return self._handle_failed_attempt(
                task,
                summary,
                error=f"Render task still pending after {int(age_seconds)}s.",
                reason="stale",
            )
        summary.still_pending += 1
        return False

    def _handle_failed_attempt(  # noqa: PLR0913
        self,
        task: TaskView,
        summary: PollSummary,
        *,
        error: str,
        reason: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        attempts = self._next_attempts(task)
        if attempts >= self.settings.max_attempts:
            return self._fail(
                task,
                summary,
                expected_attempts=task.attempts,
                attempts=attempts,
                error=error,
                reason=reason,
                details=details,
            )

        if not self.repository.begin_resubmit(
            task_id=task.task_id,
            expected_attempts=task.attempts,
            error_message=error,
            reason=reason,
            details=details,
        ):
            summary.lost_races += 1
            return False
        summary.retried += 1
        logger.info(
            "Task %s (job %s unit %d) retry %d/%d: %s",
            task.task_id,
            task.job_id,
            task.unit_index,
            attempts,
            self.settings.max_attempts,
            error,
        )
        resubmitted = TaskView(
            task_id=task.task_id,
            job_id=task.job_id,
            unit_index=task.unit_index,
            prompt=task.prompt,
            external_task_id=None,
            status=task.status,
            attempts=attempts,
            result_ref=None,
            error_message=error,
            replay_of=task.replay_of,
            created_at=task.created_at,
            updated_at=utc_now(),
        )
        return self._submit(resubmitted, summary, count_transient=False)

    def _submit(self, task: TaskView, summary: PollSummary, *, count_transient: bool) -> bool:
        """Create a render task for a task awaiting submission.

        A transient error leaves the task awaiting submission for the next pass;
        it is counted as a failed attempt only when ``count_transient`` is set.
        """

        job = self._job(task.job_id)
        outcome = self.render_client.create_task(
            prompt=task.prompt,
            reference_assets=job.shared.reference_assets,
            output_shape=job.shared.output_shape,
        )
        if isinstance(outcome, Accepted):
            if self.repository.attach_external_task(
                task_id=task.task_id,
                expected_attempts=task.attempts,
                external_task_id=outcome.external_task_id,
            ):
                summary.submitted += 1
            else:
                summary.lost_races += 1
                logger.warning(
                    "External task %s for task %s is orphaned by a concurrent update",
                    outcome.external_task_id,
                    task.task_id,
                )
            return False
        if isinstance(outcome, TransientError):
            if not count_transient:
                return False
            return self._handle_failed_attempt(
                task,
                summary,
                error=outcome.message,
                reason=outcome.reason_code,
                details=outcome.details,
            )
        if isinstance(outcome, PermanentError):
            return self._fail(
                task,
                summary,
                expected_attempts=task.attempts,
                attempts=self._next_attempts(task),
                error=outcome.message,
                reason=outcome.reason_code,
                details=outcome.details,
            )
        raise RuntimeError(f"Unexpected render outcome: {outcome!r}")

    def _fail(  # noqa: PLR0913
        self,
        task: TaskView,
        summary: PollSummary,
        *,
        expected_attempts: int,
        attempts: int,
        error: str,
        reason: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        if not self.repository.fail_task(
            task_id=task.task_id,
            expected_attempts=expected_attempts,
            attempts=attempts,
            error_message=error,
            details=details,
        ):
            summary.lost_races += 1
            return False
        summary.failed += 1
        job = self._job(task.job_id)
        context: dict[str, object] = {"reason": reason, "shared": job.shared.to_dict()}
        if details:
            context["classification"] = details
        entry = self.dead_letters.record(
            task,
            last_error=error,
            attempts=attempts,
            context=context,
        )
        if entry is not None:
            summary.dead_lettered += 1
        return True

    def _next_attempts(self, task: TaskView) -> int:
        return min(task.attempts + 1, self.settings.max_attempts)

    def _job(self, job_id: str) -> JobView:
        job = self._jobs.get(job_id)
        if job is None:
            job = self.repository.get_job(job_id=job_id)
            if job is None:
                raise RuntimeError(f"Job not found: {job_id}")
            self._jobs[job_id] = job
        return job

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping after the current task", name)
            self._stop_requested = True

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def request_stop(self) -> None:
        self._stop_requested = True
