"""Runtime configuration for dispatch, polling and render API access."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_RENDER_BACKENDS = ("kie", "echo")
SUPPORTED_CHANNEL_BACKENDS = ("local", "qstash")


@dataclass(slots=True)
class DispatchSettings:
    """Chunking and publish policy used by the job dispatcher."""

    chunk_size: int = 5
    max_concurrent_chunks: int = 2
    chunk_delay_seconds: float = 1.0
    publish_attempts: int = 3
    publish_backoff_seconds: float = 0.5
    chunk_timeout_seconds: int = 300
    dispatch_timeout_seconds: float = 600.0
    unit_delay_seconds: float = 0.0


@dataclass(slots=True)
class PollerSettings:
    """Task poller cadence and retry budget."""

    interval_seconds: float = 60.0
    batch_size: int = 10
    max_attempts: int = 3
    stale_after_seconds: int = 600
    status_timeout_seconds: float = 15.0
    pass_budget_seconds: float = 45.0


@dataclass(slots=True)
class RetentionSettings:
    """Retention and reconciliation horizons for the daily sweep."""

    ledger_retention_days: int = 7
    stalled_job_after_seconds: int = 1_800


@dataclass(slots=True)
class RenderApiSettings:
    """Render API client settings."""

    backend: str = "kie"
    base_url: str = "https://api.kie.ai"
    api_key: str = ""
    model: str = "nano-banana-pro"
    output_format: str = "jpg"
    aspect_ratio: str = "3:4"
    max_reference_assets: int = 14
    request_timeout_seconds: float = 30.0
    max_retries: int = 2


@dataclass(slots=True)
class ChannelSettings:
    """Dispatch channel settings."""

    backend: str = "local"
    workers: int = 2
    queue_size: int = 100
    redelivery_attempts: int = 3
    qstash_url: str = "https://qstash.upstash.io"
    qstash_token: str = ""
    callback_url: str = ""


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".render_batch.db")
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    poller: PollerSettings = field(default_factory=PollerSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)
    render: RenderApiSettings = field(default_factory=RenderApiSettings)
    channel: ChannelSettings = field(default_factory=ChannelSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("RENDER_BATCH_DB_PATH", ".render_batch.db")),
            dispatch=DispatchSettings(
                chunk_size=int(os.getenv("RENDER_BATCH_CHUNK_SIZE", "5")),
                max_concurrent_chunks=int(os.getenv("RENDER_BATCH_MAX_CONCURRENT_CHUNKS", "2")),
                chunk_delay_seconds=float(os.getenv("RENDER_BATCH_CHUNK_DELAY_SECONDS", "1.0")),
                publish_attempts=int(os.getenv("RENDER_BATCH_PUBLISH_ATTEMPTS", "3")),
                publish_backoff_seconds=float(
                    os.getenv("RENDER_BATCH_PUBLISH_BACKOFF_SECONDS", "0.5"),
                ),
                chunk_timeout_seconds=int(os.getenv("RENDER_BATCH_CHUNK_TIMEOUT_SECONDS", "300")),
                dispatch_timeout_seconds=float(
                    os.getenv("RENDER_BATCH_DISPATCH_TIMEOUT_SECONDS", "600"),
                ),
                unit_delay_seconds=float(os.getenv("RENDER_BATCH_UNIT_DELAY_SECONDS", "0.0")),
            ),
            poller=PollerSettings(
                interval_seconds=float(os.getenv("RENDER_BATCH_POLL_INTERVAL_SECONDS", "60")),
                batch_size=int(os.getenv("RENDER_BATCH_POLL_BATCH_SIZE", "10")),
                max_attempts=int(os.getenv("RENDER_BATCH_MAX_ATTEMPTS", "3")),
                stale_after_seconds=int(os.getenv("RENDER_BATCH_STALE_AFTER_SECONDS", "600")),
                status_timeout_seconds=float(
                    os.getenv("RENDER_BATCH_STATUS_TIMEOUT_SECONDS", "15.0"),
                ),
                pass_budget_seconds=float(os.getenv("RENDER_BATCH_PASS_BUDGET_SECONDS", "45.0")),
            ),
            retention=RetentionSettings(
                ledger_retention_days=int(os.getenv("RENDER_BATCH_LEDGER_RETENTION_DAYS", "7")),
                stalled_job_after_seconds=int(
                    os.getenv("RENDER_BATCH_STALLED_JOB_AFTER_SECONDS", "1800"),
                ),
            ),
            render=RenderApiSettings(
                backend=os.getenv("RENDER_BATCH_RENDER_BACKEND", "kie").strip().lower(),
                base_url=os.getenv("RENDER_BATCH_RENDER_BASE_URL", "https://api.kie.ai"),
                api_key=os.getenv("RENDER_BATCH_RENDER_API_KEY", os.getenv("KIE_API_KEY", "")),
                model=os.getenv("RENDER_BATCH_RENDER_MODEL", "nano-banana-pro"),
                output_format=os.getenv("RENDER_BATCH_RENDER_OUTPUT_FORMAT", "jpg"),
                aspect_ratio=os.getenv("RENDER_BATCH_RENDER_ASPECT_RATIO", "3:4"),
                max_reference_assets=int(
                    os.getenv("RENDER_BATCH_RENDER_MAX_REFERENCE_ASSETS", "14"),
                ),
                request_timeout_seconds=float(
                    os.getenv("RENDER_BATCH_RENDER_TIMEOUT_SECONDS", "30.0"),
                ),
                max_retries=int(os.getenv("RENDER_BATCH_RENDER_MAX_RETRIES", "2")),
            ),
            channel=ChannelSettings(
                backend=os.getenv("RENDER_BATCH_CHANNEL_BACKEND", "local").strip().lower(),
                workers=int(os.getenv("RENDER_BATCH_CHANNEL_WORKERS", "2")),
                queue_size=int(os.getenv("RENDER_BATCH_CHANNEL_QUEUE_SIZE", "100")),
                redelivery_attempts=int(os.getenv("RENDER_BATCH_CHANNEL_REDELIVERY_ATTEMPTS", "3")),
                qstash_url=os.getenv("RENDER_BATCH_QSTASH_URL", "https://qstash.upstash.io"),
                qstash_token=os.getenv("RENDER_BATCH_QSTASH_TOKEN", ""),
                callback_url=os.getenv("RENDER_BATCH_CALLBACK_URL", ""),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the orchestrator cannot run with."""

        if self.dispatch.chunk_size <= 0:
            raise ValueError("RENDER_BATCH_CHUNK_SIZE must be a positive integer.")
        if self.dispatch.max_concurrent_chunks <= 0:
            raise ValueError("RENDER_BATCH_MAX_CONCURRENT_CHUNKS must be a positive integer.")
        if self.dispatch.publish_attempts <= 0:
            raise ValueError("RENDER_BATCH_PUBLISH_ATTEMPTS must be a positive integer.")
        if self.dispatch.chunk_delay_seconds < 0:
            raise ValueError("RENDER_BATCH_CHUNK_DELAY_SECONDS must be >= 0.")
        if self.dispatch.dispatch_timeout_seconds <= 0:
            raise ValueError("RENDER_BATCH_DISPATCH_TIMEOUT_SECONDS must be > 0.")
        if self.poller.max_attempts <= 0:
            raise ValueError("RENDER_BATCH_MAX_ATTEMPTS must be a positive integer.")
        if self.poller.batch_size <= 0:
            raise ValueError("RENDER_BATCH_POLL_BATCH_SIZE must be a positive integer.")
        if self.poller.stale_after_seconds <= 0:
            raise ValueError("RENDER_BATCH_STALE_AFTER_SECONDS must be > 0.")
        if self.retention.ledger_retention_days < 1:
            raise ValueError("RENDER_BATCH_LEDGER_RETENTION_DAYS must be >= 1.")
        if self.channel.workers <= 0:
            raise ValueError("RENDER_BATCH_CHANNEL_WORKERS must be a positive integer.")
        if self.channel.redelivery_attempts < 0:
            raise ValueError("RENDER_BATCH_CHANNEL_REDELIVERY_ATTEMPTS must be >= 0.")
        if self.render.backend not in SUPPORTED_RENDER_BACKENDS:
            raise ValueError(
                f"Unsupported render backend: {self.render.backend!r}. "
                f"Expected one of: {', '.join(SUPPORTED_RENDER_BACKENDS)}.",
            )
        if self.channel.backend not in SUPPORTED_CHANNEL_BACKENDS:
            raise ValueError(
                f"Unsupported channel backend: {self.channel.backend!r}. "
                f"Expected one of: {', '.join(SUPPORTED_CHANNEL_BACKENDS)}.",
            )
        if self.render.backend == "kie":
            _validate_http_url("RENDER_BATCH_RENDER_BASE_URL", self.render.base_url)
            if not self.render.api_key.strip():
                raise ValueError(
                    "RENDER_BATCH_RENDER_API_KEY is required for the kie render backend.",
                )
        if self.channel.backend == "qstash":
            _validate_http_url("RENDER_BATCH_QSTASH_URL", self.channel.qstash_url)
            _validate_http_url("RENDER_BATCH_CALLBACK_URL", self.channel.callback_url)
            if not self.channel.qstash_token.strip():
                raise ValueError("RENDER_BATCH_QSTASH_TOKEN is required for the qstash channel.")


def _validate_http_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
