from __future__ import annotations

import json

import allure
import pytest

from render_batch.orchestrator.models import (
    ChunkPayload,
    GenerationRequest,
    OutputShape,
    SharedPayload,
)

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Chunk Payloads"),
]


def _payload_dict() -> dict[str, object]:
    return {
        "job_id": "job-1",
        "start_index": 5,
        "chunk_size": 2,
        "shared": {
            "reference_assets": ["https://assets.example.com/a.jpg"],
            "output_shape": {"aspect_ratio": "9:16", "resolution": "2K", "output_format": "png"},
        },
        "unit_params": ["sunset portrait", "studio portrait"],
    }


def test_chunk_payload_parses_wire_json() -> None:
    payload = ChunkPayload.from_json(json.dumps(_payload_dict()))

    assert payload.job_id == "job-1"
    assert list(payload.unit_indices()) == [5, 6]
    assert payload.shared.reference_assets == ("https://assets.example.com/a.jpg",)
    assert payload.shared.output_shape == OutputShape(
        aspect_ratio="9:16",
        resolution="2K",
        output_format="png",
    )
    assert json.loads(payload.to_json()) == _payload_dict()


def test_chunk_payload_rejects_length_mismatch() -> None:
    raw = _payload_dict()
    raw["chunk_size"] = 3

    with pytest.raises(ValueError, match="does not match chunk_size"):
        ChunkPayload.from_dict(raw)


def test_chunk_payload_rejects_missing_fields_and_bad_json() -> None:
    raw = _payload_dict()
    del raw["job_id"]

    with pytest.raises(ValueError, match="Invalid chunk payload"):
        ChunkPayload.from_dict(raw)
    with pytest.raises(ValueError, match="Invalid chunk payload JSON"):
        ChunkPayload.from_json("{not json")
    with pytest.raises(ValueError, match="expected a JSON object"):
        ChunkPayload.from_json("[1, 2]")


def test_shared_payload_defaults_when_fields_absent() -> None:
    shared = SharedPayload.from_dict({})

    assert shared.reference_assets == ()
    assert shared.output_shape == OutputShape()


def test_generation_request_validation() -> None:
    GenerationRequest(total_units=2, unit_params=("a", "b")).validate(chunk_size=1)

    with pytest.raises(ValueError, match="total_units must be >= 1"):
        GenerationRequest(total_units=0, unit_params=()).validate(chunk_size=5)
    with pytest.raises(ValueError, match="chunk_size must be >= 1"):
        GenerationRequest(total_units=1, unit_params=("a",)).validate(chunk_size=0)
    with pytest.raises(ValueError, match="Expected 3 unit params, got 2"):
        GenerationRequest(total_units=3, unit_params=("a", "b")).validate(chunk_size=5)
