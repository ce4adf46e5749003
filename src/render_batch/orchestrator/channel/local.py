"""In-process dispatch channel backed by a bounded queue and worker threads."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from uuid import uuid4

from render_batch.orchestrator.channel.base import PublishError
from render_batch.orchestrator.models import ChunkMessage, ChunkPayload
from render_batch.storage.common import utc_now

logger = logging.getLogger(__name__)

ChunkHandler = Callable[[ChunkMessage], object]


@dataclass(slots=True)
class _Envelope:
    message: ChunkMessage
    max_deliveries: int


class LocalDispatchChannel:
    """At-least-once local channel.

    A handler exception triggers redelivery of the same message id until the
    delivery budget (``1 + retries``) is spent.
    """

    def __init__(
        self,
        handler: ChunkHandler,
        *,
        workers: int = 2,
        queue_size: int = 100,
        put_timeout_seconds: float = 1.0,
    ) -> None:
        if workers <= 0:
            raise ValueError(f"workers must be positive, got {workers}")
        self._handler = handler
        self._workers = workers
        self._put_timeout = put_timeout_seconds
        self._queue: queue.Queue[_Envelope | None] = queue.Queue(maxsize=queue_size)
        self._threads: list[threading.Thread] = []
        self._outstanding = 0
        self._idle = threading.Condition()
        self.delivered = 0
        self.dropped = 0

    def start(self) -> None:
        if self._threads:
            return
        for index in range(self._workers):
            thread = threading.Thread(
                target=self._run_worker,
                name=f"render-batch-channel-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def publish(self, payload: ChunkPayload, *, retries: int, timeout_seconds: int) -> str:
        message = ChunkMessage(
            message_id=f"local-{uuid4().hex}",
            payload=payload,
            deliver_by=utc_now() + timedelta(seconds=timeout_seconds),
        )
        with self._idle:
            self._outstanding += 1
        try:
            self._queue.put(
                _Envelope(message=message, max_deliveries=1 + max(0, retries)),
                timeout=self._put_timeout,
            )
        except queue.Full as error:
            self._settle()
            raise PublishError("Local channel queue is full.") from error
        return message.message_id

    def drain(self, *, timeout_seconds: float | None = None) -> bool:
        """Wait until every published message settled; ``False`` on timeout."""

        deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        with self._idle:
            while self._outstanding > 0:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(timeout=remaining)
        return True

    def close(self, *, timeout_seconds: float = 5.0) -> None:
        """Stop the workers; a worker stuck in its handler is left to the daemon flag."""

        deadline = time.monotonic() + timeout_seconds
        for _ in self._threads:
            try:
                self._queue.put(None, timeout=max(0.0, deadline - time.monotonic()))
            except queue.Full:
                logger.warning("Local channel queue still full on close; workers left running")
                break
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        self._threads.clear()

    def __enter__(self) -> LocalDispatchChannel:
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _run_worker(self) -> None:
        while True:
            envelope = self._queue.get()
            if envelope is None:
                return
            self._deliver(envelope)

    def _deliver(self, envelope: _Envelope) -> None:
        # Redeliveries stay on this worker; workers never put into their own queue.
        message = envelope.message
        while True:
            try:
                self._handler(message)
            except Exception:
                if message.delivery_attempt >= envelope.max_deliveries:
                    logger.exception(
                        "Message %s dropped after %d deliveries",
                        message.message_id,
                        message.delivery_attempt,
                    )
                    self.dropped += 1
                    self._settle()
                    return
                logger.warning(
                    "Delivery %d of message %s failed; redelivering",
                    message.delivery_attempt,
                    message.message_id,
                    exc_info=True,
                )
                message = ChunkMessage(
                    message_id=message.message_id,
                    payload=message.payload,
                    deliver_by=message.deliver_by,
                    delivery_attempt=message.delivery_attempt + 1,
                )
                continue
            self.delivered += 1
            self._settle()
            return

    def _settle(self) -> None:
        with self._idle:
            self._outstanding -= 1
            self._idle.notify_all()
