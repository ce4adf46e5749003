"""HTTP client for the Kie.ai job API."""

from __future__ import annotations

import json
import logging

import httpx

from render_batch.orchestrator.failure_classifier import classify_render_failure
from render_batch.orchestrator.models import (
    Accepted,
    CreateOutcome,
    OutputShape,
    PermanentError,
    RenderTaskState,
    TaskStatusReport,
    TransientError,
)

logger = logging.getLogger(__name__)

CREATE_TASK_PATH = "/api/v1/jobs/createTask"
RECORD_INFO_PATH = "/api/v1/jobs/recordInfo"
DEFAULT_MAX_REFERENCE_ASSETS = 14

_SUCCESS_STATES = frozenset({"success", "completed"})
_FAILED_STATES = frozenset({"fail", "failed", "error"})
_API_OK_CODE = 200


class KieRenderClient:
    """Synchronous Kie.ai client.

    ``transport`` lets tests plug in ``httpx.MockTransport``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        api_key: str,
        model: str = "nano-banana-pro",
        timeout_seconds: float = 30.0,
        status_timeout_seconds: float = 15.0,
        max_retries: int = 2,
        max_reference_assets: int = DEFAULT_MAX_REFERENCE_ASSETS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._model = model
        self._max_reference_assets = max_reference_assets
        self._status_timeout = httpx.Timeout(status_timeout_seconds, connect=10.0)
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def create_task(
        self,
        *,
        prompt: str,
        reference_assets: tuple[str, ...],
        output_shape: OutputShape,
    ) -> CreateOutcome:
        """Submit one render task and classify any failure."""

        task_input: dict[str, object] = {
            "prompt": prompt,
            "output_format": output_shape.output_format,
            "image_size": output_shape.aspect_ratio,
            "resolution": output_shape.resolution,
        }
        if reference_assets:
            task_input["image_input"] = list(reference_assets[: self._max_reference_assets])

        try:
            response = self._client.post(
                CREATE_TASK_PATH,
                json={"model": self._model, "input": task_input},
            )
        except httpx.TimeoutException:
            logger.warning("Timeout creating render task")
            return TransientError(message="Render task creation timed out.", reason_code="timeout")
        except httpx.HTTPError as exc:
            logger.warning("HTTP error creating render task: %s", exc)
            return TransientError(message=f"Network error: {exc}", reason_code="network")

        if not response.is_success:
            message = f"Task creation failed: HTTP {response.status_code} - {response.text[:300]}"
            return _classified_error(status_code=response.status_code, message=message)

        body = _json_object(response)
        if body is None:
            return TransientError(
                message="Task creation returned a non-JSON body.",
                reason_code="bad_response",
            )
        api_code = body.get("code")
        if isinstance(api_code, int) and api_code != _API_OK_CODE:
            message = f"Task creation failed: code {api_code} - {body.get('msg') or ''}".strip()
            return _classified_error(status_code=api_code, message=message)

        data = body.get("data")
        task_id = data.get("taskId") if isinstance(data, dict) else None
        task_id = task_id or body.get("taskId")
        if not task_id:
            return TransientError(
                message=f"No taskId in response: {json.dumps(body)[:300]}",
                reason_code="missing_task_id",
            )
        logger.debug("Render task created: %s", task_id)
        return Accepted(external_task_id=str(task_id))

    def get_task_status(self, external_task_id: str) -> TaskStatusReport:
        """Read external task state; read failures come back as pending with ``error``."""

        try:
            response = self._client.get(
                RECORD_INFO_PATH,
                params={"taskId": external_task_id},
                timeout=self._status_timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning("Status check for %s failed: %s", external_task_id, exc)
            return TaskStatusReport(state=RenderTaskState.PENDING, error=str(exc) or "http error")

        if not response.is_success:
            return TaskStatusReport(
                state=RenderTaskState.PENDING,
                error=f"Status check failed: HTTP {response.status_code}",
            )
        body = _json_object(response)
        data = body.get("data") if body is not None else None
        if not isinstance(data, dict):
            return TaskStatusReport(
                state=RenderTaskState.PENDING,
                error="Status check returned no task data.",
            )

        state = str(data.get("state") or data.get("status") or "").lower()
        if state in _SUCCESS_STATES:
            return TaskStatusReport(
                state=RenderTaskState.SUCCESS,
                result_ref=_first_result_url(data.get("resultJson")),
            )
        if state in _FAILED_STATES:
            return TaskStatusReport(
                state=RenderTaskState.FAILED,
                error=str(data.get("failMsg") or data.get("failCode") or "Unknown error"),
            )
        return TaskStatusReport(state=RenderTaskState.PENDING)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> KieRenderClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _classified_error(*, status_code: int, message: str) -> CreateOutcome:
    classification = classify_render_failure(status_code=status_code, message=message)
    details = classification.to_event_details()
    if classification.is_transient:
        return TransientError(
            message=message,
            reason_code=classification.reason_code,
            details=details,
        )
    return PermanentError(
        message=message,
        reason_code=classification.reason_code,
        details=details,
    )


def _json_object(response: httpx.Response) -> dict[str, object] | None:
    try:
        parsed = response.json()
    except ValueError:
        return None
    if isinstance(parsed, dict):
        return parsed
    return None


def _first_result_url(raw: object) -> str | None:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return None
    if not isinstance(raw, dict):
        return None
    urls = raw.get("resultUrls")
    if isinstance(urls, list) and urls and isinstance(urls[0], str) and urls[0]:
        return urls[0]
    return None
