"""CLI entrypoint for render-batch."""

import logging
from pathlib import Path

import rich_click as click

from render_batch import __version__
from render_batch.orchestrator.controllers import (
    BatchCliController,
    DeadLetterListCommand,
    DeadLetterReplayCommand,
    DeadLetterResolveCommand,
    JobListCommand,
    JobStatusCommand,
    JobSubmitCommand,
    PollCommand,
    SweepCommand,
    TaskInspectCommand,
    TaskListCommand,
)
from render_batch.orchestrator.models import JobStatus, TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = BatchCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="render-batch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logging level.",
)
def render_batch(log_level: str) -> None:
    """Batch image generation orchestrator CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@render_batch.group()
def jobs() -> None:
    """Generation job commands."""


@jobs.command("submit")
@_DB_PATH_OPTION
@click.option("--prompt", "prompts", multiple=True, help="Unit prompt. Can be repeated.")
@click.option(
    "--prompts-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="File with one unit prompt per line.",
)
@click.option(
    "--reference",
    "reference_assets",
    multiple=True,
    help="Reference asset URL shared by all units. Can be repeated.",
)
@click.option("--aspect-ratio", default=None, help="Output aspect ratio, for example 3:4.")
@click.option(
    "--resolution",
    type=click.Choice(["1K", "2K", "4K"]),
    default="1K",
    show_default=True,
    help="Output resolution.",
)
@click.option(
    "--output-format",
    type=click.Choice(["jpg", "png"]),
    default=None,
    help="Output image format.",
)
@click.option(
    "--chunk-size",
    type=click.IntRange(min=1),
    default=None,
    help="Units per dispatched chunk (defaults to RENDER_BATCH_CHUNK_SIZE).",
)
def jobs_submit(  # noqa: PLR0913
    db_path: Path | None,
    prompts: tuple[str, ...],
    prompts_file: Path | None,
    reference_assets: tuple[str, ...],
    aspect_ratio: str | None,
    resolution: str,
    output_format: str | None,
    chunk_size: int | None,
) -> None:
    """Create a generation job and dispatch its chunks."""

    try:
        lines = CONTROLLER.submit_job(
            JobSubmitCommand(
                db_path=db_path,
                prompts=prompts,
                prompts_file=prompts_file,
                reference_assets=reference_assets,
                aspect_ratio=aspect_ratio,
                resolution=resolution,
                output_format=output_format,
                chunk_size=chunk_size,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@jobs.command("status")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_status(db_path: Path | None, job_id: str) -> None:
    """Show job progress and task tally."""

    _emit_lines(CONTROLLER.job_status(JobStatusCommand(db_path=db_path, job_id=job_id)))


@jobs.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        CONTROLLER.list_jobs(
            JobListCommand(
                db_path=db_path,
                status=status.lower() if status else None,
                limit=limit,
            ),
        ),
    )


@render_batch.group()
def tasks() -> None:
    """Render task commands."""


@tasks.command("list")
@_DB_PATH_OPTION
@click.option("--job-id", default=None, help="Optional job filter.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_path: Path | None, job_id: str | None, status: str | None, limit: int) -> None:
    """List render tasks."""

    _emit_lines(
        CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                job_id=job_id,
                status=status.lower() if status else None,
                limit=limit,
            ),
        ),
    )


@tasks.command("inspect")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with event history."""

    _emit_lines(CONTROLLER.inspect_task(TaskInspectCommand(db_path=db_path, task_id=task_id)))


@render_batch.command("poll")
@_DB_PATH_OPTION
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one reconciliation pass or loop on the poll interval.",
)
@click.option(
    "--max-passes",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for passes in loop mode.",
)
def poll(db_path: Path | None, once: bool, max_passes: int | None) -> None:
    """Reconcile pending tasks against the render API."""

    try:
        lines = CONTROLLER.poll(PollCommand(db_path=db_path, once=once, max_passes=max_passes))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@render_batch.group("dead-letters")
def dead_letters() -> None:
    """Dead-letter review and replay."""


@dead_letters.command("list")
@_DB_PATH_OPTION
@click.option(
    "--all",
    "include_resolved",
    is_flag=True,
    default=False,
    help="Include resolved entries.",
)
@click.option("--job-id", default=None, help="Optional job filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max entries to print.",
)
def dead_letters_list(
    db_path: Path | None,
    include_resolved: bool,
    job_id: str | None,
    limit: int,
) -> None:
    """List dead-letter entries (open only by default)."""

    _emit_lines(
        CONTROLLER.list_dead_letters(
            DeadLetterListCommand(
                db_path=db_path,
                include_resolved=include_resolved,
                job_id=job_id,
                limit=limit,
            ),
        ),
    )


@dead_letters.command("resolve")
@_DB_PATH_OPTION
@click.option("--entry-id", type=int, required=True, help="Dead-letter entry id.")
@click.option("--operator", required=True, help="Who handled the entry.")
@click.option("--note", default=None, help="Resolution note.")
def dead_letters_resolve(
    db_path: Path | None,
    entry_id: int,
    operator: str,
    note: str | None,
) -> None:
    """Mark a dead-letter entry as handled."""

    _emit_lines(
        CONTROLLER.resolve_dead_letter(
            DeadLetterResolveCommand(
                db_path=db_path,
                entry_id=entry_id,
                operator=operator,
                note=note,
            ),
        ),
    )


@dead_letters.command("replay")
@_DB_PATH_OPTION
@click.option("--entry-id", type=int, required=True, help="Dead-letter entry id.")
@click.option("--operator", required=True, help="Who requested the replay.")
def dead_letters_replay(db_path: Path | None, entry_id: int, operator: str) -> None:
    """Re-queue the failed unit behind a dead-letter entry."""

    try:
        lines = CONTROLLER.replay_dead_letter(
            DeadLetterReplayCommand(db_path=db_path, entry_id=entry_id, operator=operator),
        )
    except RuntimeError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@render_batch.group()
def maintenance() -> None:
    """Housekeeping commands."""


@maintenance.command("sweep")
@_DB_PATH_OPTION
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Report what would change without writing.",
)
def maintenance_sweep(db_path: Path | None, dry_run: bool) -> None:
    """Purge the idempotency ledger and reconcile lost work."""

    _emit_lines(CONTROLLER.sweep(SweepCommand(db_path=db_path, dry_run=dry_run)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    render_batch()
