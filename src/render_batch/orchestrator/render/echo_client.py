"""Local deterministic render client for demos and CLI integration tests."""

from __future__ import annotations

from uuid import uuid4

from render_batch.orchestrator.models import (
    Accepted,
    CreateOutcome,
    OutputShape,
    RenderTaskState,
    TaskStatusReport,
)


class EchoRenderClient:
    """Accept every task and report it finished on the first status check."""

    def create_task(
        self,
        *,
        prompt: str,
        reference_assets: tuple[str, ...],
        output_shape: OutputShape,
    ) -> CreateOutcome:
        del prompt, reference_assets
        return Accepted(external_task_id=f"echo-{uuid4().hex}.{output_shape.output_format}")

    def get_task_status(self, external_task_id: str) -> TaskStatusReport:
        return TaskStatusReport(
            state=RenderTaskState.SUCCESS,
            result_ref=f"echo://{external_task_id}",
        )

    def close(self) -> None:
        return None
