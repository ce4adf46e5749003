from __future__ import annotations

from pathlib import Path

import allure
import pytest

from render_batch.config import ChannelSettings, DispatchSettings, RenderApiSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "RENDER_BATCH_DB_PATH",
        "RENDER_BATCH_CHUNK_SIZE",
        "RENDER_BATCH_RENDER_API_KEY",
        "KIE_API_KEY",
        "RENDER_BATCH_RENDER_BACKEND",
        "RENDER_BATCH_CHANNEL_BACKEND",
        "RENDER_BATCH_MAX_ATTEMPTS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)

    settings = Settings.from_env()

    assert settings.db_path == Path(".render_batch.db")
    assert settings.dispatch.chunk_size == 5
    assert settings.dispatch.max_concurrent_chunks == 2
    assert settings.dispatch.publish_attempts == 3
    assert settings.dispatch.chunk_timeout_seconds == 300
    assert settings.poller.batch_size == 10
    assert settings.poller.max_attempts == 3
    assert settings.poller.stale_after_seconds == 600
    assert settings.retention.ledger_retention_days == 7
    assert settings.render.backend == "kie"
    assert settings.render.model == "nano-banana-pro"
    assert settings.channel.backend == "local"


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("RENDER_BATCH_CHUNK_SIZE", "8")
    monkeypatch.setenv("RENDER_BATCH_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("RENDER_BATCH_RENDER_BACKEND", " Echo ")

    settings = Settings.from_env(db_path=tmp_path / "x.db")

    assert settings.db_path == tmp_path / "x.db"
    assert settings.dispatch.chunk_size == 8
    assert settings.poller.max_attempts == 5
    assert settings.render.backend == "echo"


def test_api_key_falls_back_to_kie_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("KIE_API_KEY", "kie-secret")

    settings = Settings.from_env()

    assert settings.render.api_key == "kie-secret"
    settings.validate()


def test_validate_requires_api_key_for_kie_backend() -> None:
    settings = Settings(render=RenderApiSettings(backend="kie", api_key=" "))

    with pytest.raises(ValueError, match="RENDER_BATCH_RENDER_API_KEY is required"):
        settings.validate()


def test_validate_accepts_echo_backend_without_key() -> None:
    Settings(render=RenderApiSettings(backend="echo")).validate()


def test_validate_rejects_non_positive_chunk_size() -> None:
    settings = Settings(
        dispatch=DispatchSettings(chunk_size=0),
        render=RenderApiSettings(backend="echo"),
    )

    with pytest.raises(ValueError, match="RENDER_BATCH_CHUNK_SIZE must be a positive integer"):
        settings.validate()


def test_validate_rejects_unknown_backends() -> None:
    with pytest.raises(ValueError, match="Unsupported render backend"):
        Settings(render=RenderApiSettings(backend="dalle")).validate()
    with pytest.raises(ValueError, match="Unsupported channel backend"):
        Settings(
            render=RenderApiSettings(backend="echo"),
            channel=ChannelSettings(backend="sqs"),
        ).validate()


def test_validate_qstash_requires_token_and_callback_url() -> None:
    settings = Settings(
        render=RenderApiSettings(backend="echo"),
        channel=ChannelSettings(backend="qstash", callback_url="ftp://example.com/hook"),
    )
    with pytest.raises(ValueError, match="Invalid RENDER_BATCH_CALLBACK_URL"):
        settings.validate()

    settings = Settings(
        render=RenderApiSettings(backend="echo"),
        channel=ChannelSettings(backend="qstash", callback_url="https://example.com/hook"),
    )
    with pytest.raises(ValueError, match="RENDER_BATCH_QSTASH_TOKEN is required"):
        settings.validate()
