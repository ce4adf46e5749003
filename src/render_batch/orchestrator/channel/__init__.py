"""Dispatch channel implementations."""

from render_batch.orchestrator.channel.base import DispatchChannel, PublishError
from render_batch.orchestrator.channel.local import LocalDispatchChannel
from render_batch.orchestrator.channel.qstash import MESSAGE_ID_HEADER, QStashDispatchChannel

__all__ = [
    "MESSAGE_ID_HEADER",
    "DispatchChannel",
    "LocalDispatchChannel",
    "PublishError",
    "QStashDispatchChannel",
]
