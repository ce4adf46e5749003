"""Upstash QStash publisher for hosted deployments."""

from __future__ import annotations

import logging

import httpx

from render_batch.orchestrator.channel.base import PublishError
from render_batch.orchestrator.models import ChunkPayload

logger = logging.getLogger(__name__)

MESSAGE_ID_HEADER = "Upstash-Message-Id"


class QStashDispatchChannel:
    """Publish chunk payloads to a QStash topic that calls back ``callback_url``.

    QStash owns redelivery; the receiving endpoint passes the body and the
    ``Upstash-Message-Id`` header to :meth:`ChunkProcessor.handle_delivery`.
    """

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        callback_url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._callback_url = callback_url
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Authorization": f"Bearer {token}"},
            transport=transport or httpx.HTTPTransport(),
        )

    def publish(self, payload: ChunkPayload, *, retries: int, timeout_seconds: int) -> str:
        try:
            response = self._client.post(
                f"/v2/publish/{self._callback_url}",
                content=payload.to_json().encode("utf-8"),
                headers={
                    "Content-Type": "application/json",
                    "Upstash-Retries": str(max(0, retries)),
                    "Upstash-Timeout": f"{timeout_seconds}s",
                },
            )
        except httpx.HTTPError as exc:
            raise PublishError(f"QStash publish failed: {exc}") from exc
        if not response.is_success:
            raise PublishError(
                f"QStash publish failed: HTTP {response.status_code} - {response.text[:300]}",
            )
        try:
            message_id = response.json().get("messageId")
        except (ValueError, AttributeError) as exc:
            raise PublishError("QStash publish returned an unreadable body.") from exc
        if not message_id:
            raise PublishError("QStash publish returned no messageId.")
        logger.debug(
            "Published chunk job=%s start=%d as %s",
            payload.job_id,
            payload.start_index,
            message_id,
        )
        return str(message_id)

    def close(self) -> None:
        self._client.close()
