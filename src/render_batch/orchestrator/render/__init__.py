"""Render API client implementations."""

from render_batch.orchestrator.render.base import RenderClient
from render_batch.orchestrator.render.echo_client import EchoRenderClient
from render_batch.orchestrator.render.factory import build_render_client
from render_batch.orchestrator.render.kie_client import KieRenderClient

__all__ = [
    "EchoRenderClient",
    "KieRenderClient",
    "RenderClient",
    "build_render_client",
]
