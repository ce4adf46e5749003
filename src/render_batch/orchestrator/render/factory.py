"""Render client selection from settings."""

from __future__ import annotations

from render_batch.config import PollerSettings, RenderApiSettings
from render_batch.orchestrator.render.base import RenderClient
from render_batch.orchestrator.render.echo_client import EchoRenderClient
from render_batch.orchestrator.render.kie_client import KieRenderClient


def build_render_client(
    settings: RenderApiSettings,
    poller: PollerSettings | None = None,
) -> RenderClient:
    if settings.backend == "echo":
        return EchoRenderClient()
    if settings.backend == "kie":
        poller = poller or PollerSettings()
        return KieRenderClient(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            timeout_seconds=settings.request_timeout_seconds,
            status_timeout_seconds=poller.status_timeout_seconds,
            max_retries=settings.max_retries,
            max_reference_assets=settings.max_reference_assets,
        )
    raise ValueError(f"Unsupported render backend: {settings.backend!r}")
