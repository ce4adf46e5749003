"""Dispatch channel interface."""

from __future__ import annotations

from typing import Protocol

from render_batch.orchestrator.models import ChunkPayload


class PublishError(RuntimeError):
    """Raised when a channel refuses or cannot accept a message."""


class DispatchChannel(Protocol):
    """At-least-once message channel carrying chunk payloads to the processor.

    A message may be delivered more than once, always with the same message id.
    """

    def publish(self, payload: ChunkPayload, *, retries: int, timeout_seconds: int) -> str:
        """Publish one chunk and return the channel message id."""

    def close(self) -> None:
        """Release channel resources."""
