"""Render API interface used by the chunk processor and task poller."""

from __future__ import annotations

from typing import Protocol

from render_batch.orchestrator.models import CreateOutcome, OutputShape, TaskStatusReport


class RenderClient(Protocol):
    """Protocol implemented by render API clients.

    Implementations never raise for API-level failures: creation failures come
    back as ``TransientError``/``PermanentError`` and unreadable status checks as
    a pending report carrying ``error``.
    """

    def create_task(
        self,
        *,
        prompt: str,
        reference_assets: tuple[str, ...],
        output_shape: OutputShape,
    ) -> CreateOutcome:
        """Submit one render task."""

    def get_task_status(self, external_task_id: str) -> TaskStatusReport:
        """Read external task state."""

    def close(self) -> None:
        """Release client resources."""
