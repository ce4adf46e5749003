from __future__ import annotations

import json
import threading
import time

import allure
import httpx
import pytest

from render_batch.orchestrator.channel.base import PublishError
from render_batch.orchestrator.channel.local import LocalDispatchChannel
from render_batch.orchestrator.channel.qstash import QStashDispatchChannel
from render_batch.orchestrator.models import ChunkMessage, ChunkPayload, SharedPayload

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Channels"),
]


def _payload(start_index: int = 0) -> ChunkPayload:
    return ChunkPayload(
        job_id="job-1",
        start_index=start_index,
        chunk_size=1,
        shared=SharedPayload(),
        unit_params=("portrait",),
    )


def test_local_channel_redelivers_with_same_message_id() -> None:
    deliveries: list[ChunkMessage] = []

    def handler(message: ChunkMessage) -> None:
        deliveries.append(message)
        if message.delivery_attempt < 3:
            raise RuntimeError("handler crashed")

    with LocalDispatchChannel(handler, workers=1) as channel:
        message_id = channel.publish(_payload(), retries=3, timeout_seconds=60)
        assert channel.drain(timeout_seconds=10)

    assert [message.delivery_attempt for message in deliveries] == [1, 2, 3]
    assert {message.message_id for message in deliveries} == {message_id}
    assert deliveries[0].deliver_by is not None
    assert channel.delivered == 1
    assert channel.dropped == 0


def test_local_channel_drops_after_delivery_budget() -> None:
    attempts: list[int] = []

    def handler(message: ChunkMessage) -> None:
        attempts.append(message.delivery_attempt)
        raise RuntimeError("always broken")

    with LocalDispatchChannel(handler, workers=2) as channel:
        channel.publish(_payload(), retries=1, timeout_seconds=60)
        assert channel.drain(timeout_seconds=10)

    assert attempts == [1, 2]
    assert channel.dropped == 1
    assert channel.delivered == 0


def test_local_channel_redelivers_failures_with_full_single_slot_queue() -> None:
    attempts: list[tuple[int, int]] = []

    def handler(message: ChunkMessage) -> None:
        attempts.append((message.payload.start_index, message.delivery_attempt))
        raise RuntimeError("always broken")

    with LocalDispatchChannel(
        handler,
        workers=1,
        queue_size=1,
        put_timeout_seconds=5,
    ) as channel:
        channel.publish(_payload(0), retries=2, timeout_seconds=60)
        channel.publish(_payload(1), retries=2, timeout_seconds=60)
        assert channel.drain(timeout_seconds=10)

    assert sorted(attempts) == [(0, 1), (0, 2), (0, 3), (1, 1), (1, 2), (1, 3)]
    assert channel.dropped == 2
    assert channel.delivered == 0


def test_local_channel_close_returns_while_handler_is_stuck() -> None:
    release = threading.Event()

    def handler(message: ChunkMessage) -> None:
        release.wait(timeout=10)

    channel = LocalDispatchChannel(handler, workers=1, queue_size=1, put_timeout_seconds=1)
    channel.start()
    try:
        channel.publish(_payload(0), retries=0, timeout_seconds=60)
        channel.publish(_payload(1), retries=0, timeout_seconds=60)
        started = time.monotonic()
        channel.close(timeout_seconds=0.1)
        elapsed = time.monotonic() - started
    finally:
        release.set()

    assert elapsed < 5


def test_local_channel_rejects_publish_when_queue_is_full() -> None:
    release = threading.Event()

    def handler(message: ChunkMessage) -> None:
        release.wait(timeout=10)

    channel = LocalDispatchChannel(handler, workers=1, queue_size=1, put_timeout_seconds=0.05)
    try:
        channel.publish(_payload(0), retries=0, timeout_seconds=60)
        with pytest.raises(PublishError, match="queue is full"):
            channel.publish(_payload(1), retries=0, timeout_seconds=60)
    finally:
        release.set()
        channel.start()
        assert channel.drain(timeout_seconds=10)
        channel.close()

    assert channel.delivered == 1


def test_local_channel_drain_times_out_while_work_is_outstanding() -> None:
    release = threading.Event()

    def handler(message: ChunkMessage) -> None:
        release.wait(timeout=10)

    with LocalDispatchChannel(handler, workers=1) as channel:
        channel.publish(_payload(), retries=0, timeout_seconds=60)
        assert channel.drain(timeout_seconds=0.05) is False
        release.set()
        assert channel.drain(timeout_seconds=10) is True


def test_qstash_publish_sends_retry_and_timeout_headers() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"messageId": "msg_abc"})

    channel = QStashDispatchChannel(
        base_url="https://qstash.test",
        token="qstash-token",
        callback_url="https://app.test/api/chunks",
        transport=httpx.MockTransport(handler),
    )
    try:
        message_id = channel.publish(_payload(5), retries=3, timeout_seconds=300)
    finally:
        channel.close()

    assert message_id == "msg_abc"
    request = seen[0]
    assert request.url.path == "/v2/publish/https://app.test/api/chunks"
    assert request.headers["Authorization"] == "Bearer qstash-token"
    assert request.headers["Upstash-Retries"] == "3"
    assert request.headers["Upstash-Timeout"] == "300s"
    assert json.loads(request.content)["start_index"] == 5


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="internal"),
        httpx.Response(200, json={}),
        httpx.Response(200, text="not json"),
    ],
)
def test_qstash_publish_failures_raise_publish_error(response: httpx.Response) -> None:
    channel = QStashDispatchChannel(
        base_url="https://qstash.test",
        token="qstash-token",
        callback_url="https://app.test/api/chunks",
        transport=httpx.MockTransport(lambda request: response),
    )
    try:
        with pytest.raises(PublishError):
            channel.publish(_payload(), retries=3, timeout_seconds=300)
    finally:
        channel.close()
