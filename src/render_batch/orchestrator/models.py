"""Domain models for generation jobs, render tasks and dispatch messages."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Generation job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.COMPLETED_WITH_ERRORS, JobStatus.FAILED},
)


class TaskStatus(str, Enum):
    """Per-unit render task states."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RenderTaskState(str, Enum):
    """Normalized external render task state."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class FailureKind(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(slots=True)
class OutputShape:
    """Requested output geometry and encoding for every unit of a job."""

    aspect_ratio: str = "3:4"
    resolution: str = "1K"
    output_format: str = "jpg"

    def to_dict(self) -> dict[str, str]:
        return {
            "aspect_ratio": self.aspect_ratio,
            "resolution": self.resolution,
            "output_format": self.output_format,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> OutputShape:
        return cls(
            aspect_ratio=str(payload.get("aspect_ratio", "3:4")),
            resolution=str(payload.get("resolution", "1K")),
            output_format=str(payload.get("output_format", "jpg")),
        )


@dataclass(slots=True)
class SharedPayload:
    """Payload shared by all units of one job."""

    reference_assets: tuple[str, ...] = ()
    output_shape: OutputShape = field(default_factory=OutputShape)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference_assets": list(self.reference_assets),
            "output_shape": self.output_shape.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SharedPayload:
        assets = payload.get("reference_assets") or []
        if not isinstance(assets, list):
            raise ValueError("reference_assets must be a list of strings.")
        shape = payload.get("output_shape") or {}
        if not isinstance(shape, dict):
            raise ValueError("output_shape must be an object.")
        return cls(
            reference_assets=tuple(str(asset) for asset in assets),
            output_shape=OutputShape.from_dict(shape),
        )


@dataclass(slots=True)
class GenerationRequest:
    """Input for one generation job: ordered unit prompts plus shared payload."""

    total_units: int
    unit_params: tuple[str, ...]
    shared: SharedPayload = field(default_factory=SharedPayload)
    chunk_size: int | None = None

    def validate(self, *, chunk_size: int) -> None:
        if self.total_units < 1:
            raise ValueError(f"total_units must be >= 1, got {self.total_units}")
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        if len(self.unit_params) != self.total_units:
            raise ValueError(
                f"Expected {self.total_units} unit params, got {len(self.unit_params)}",
            )


@dataclass(slots=True)
class ChunkPayload:
    """One contiguous slice of a job, published as one channel message."""

    job_id: str
    start_index: int
    chunk_size: int
    shared: SharedPayload
    unit_params: tuple[str, ...]

    def unit_indices(self) -> range:
        return range(self.start_index, self.start_index + self.chunk_size)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "start_index": self.start_index,
            "chunk_size": self.chunk_size,
            "shared": self.shared.to_dict(),
            "unit_params": list(self.unit_params),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, sort_keys=True)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ChunkPayload:
        try:
            job_id = str(payload["job_id"])
            start_index = int(payload["start_index"])
            chunk_size = int(payload["chunk_size"])
            unit_params_raw = payload["unit_params"]
        except (KeyError, TypeError, ValueError) as error:
            raise ValueError(f"Invalid chunk payload: {error}") from error
        if not isinstance(unit_params_raw, list):
            raise ValueError("Invalid chunk payload: unit_params must be a list.")
        if start_index < 0 or chunk_size <= 0:
            raise ValueError(
                "Invalid chunk payload: start_index must be >= 0 and chunk_size > 0.",
            )
        if len(unit_params_raw) != chunk_size:
            raise ValueError(
                "Invalid chunk payload: unit_params length "
                f"{len(unit_params_raw)} does not match chunk_size {chunk_size}.",
            )
        shared_raw = payload.get("shared") or {}
        if not isinstance(shared_raw, dict):
            raise ValueError("Invalid chunk payload: shared must be an object.")
        return cls(
            job_id=job_id,
            start_index=start_index,
            chunk_size=chunk_size,
            shared=SharedPayload.from_dict(shared_raw),
            unit_params=tuple(str(value) for value in unit_params_raw),
        )

    @classmethod
    def from_json(cls, body: str | bytes) -> ChunkPayload:
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as error:
            raise ValueError(f"Invalid chunk payload JSON: {error}") from error
        if not isinstance(parsed, dict):
            raise ValueError("Invalid chunk payload: expected a JSON object.")
        return cls.from_dict(parsed)


@dataclass(slots=True)
class ChunkMessage:
    """A chunk payload as delivered by the channel."""

    message_id: str
    payload: ChunkPayload
    deliver_by: datetime | None = None
    delivery_attempt: int = 1


@dataclass(slots=True)
class Accepted:
    """Render API accepted the task."""

    external_task_id: str


@dataclass(slots=True)
class TransientError:
    """Render API call failed in a way worth retrying."""

    message: str
    reason_code: str = "transient"
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PermanentError:
    """Render API rejected the task; retrying cannot help."""

    message: str
    reason_code: str = "permanent"
    details: dict[str, Any] = field(default_factory=dict)


CreateOutcome = Accepted | TransientError | PermanentError


@dataclass(slots=True)
class TaskStatusReport:
    """External task state as reported by the render API."""

    state: RenderTaskState
    result_ref: str | None = None
    error: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and poller logic."""

    job_id: str
    total_units: int
    completed_units: int
    status: JobStatus
    shared: SharedPayload
    error_summary: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass(slots=True)
class JobTaskCounts:
    """Task tally for one job, counting only tasks not superseded by a replay."""

    total: int = 0
    pending: int = 0
    completed: int = 0
    failed: int = 0


@dataclass(slots=True)
class TaskView:
    """Readable task view."""

    task_id: str
    job_id: str
    unit_index: int
    prompt: str
    external_task_id: str | None
    status: TaskStatus
    attempts: int
    result_ref: str | None
    error_message: str | None
    replay_of: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class TaskFailureWrite:
    """Unit recorded as failed without an external task."""

    unit_index: int
    prompt: str
    error_message: str


@dataclass(slots=True)
class DeadLetterView:
    """Stored dead-letter entry."""

    entry_id: int
    task_id: str
    job_id: str
    unit_index: int
    external_task_id: str | None
    last_error: str | None
    attempts: int
    context: dict[str, Any]
    resolved: bool
    created_at: datetime
    resolved_at: datetime | None
    resolved_by: str | None
    resolution_note: str | None
