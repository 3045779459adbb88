"""Tests for mailsync configuration settings."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import SecretStr, ValidationError

from mailsync.configuration.settings import (
    ImapSettings,
    Settings,
    SyncSettings,
    bootstrap_settings,
    load_settings,
    save_settings,
)
from mailsync.errors import ConfigurationError


def _paths(tmp_path: Path) -> dict:
    return {
        "home": tmp_path / "home",
        "database": {"path": tmp_path / "data" / "mail.db"},
        "attachments": {"root": tmp_path / "blobs"},
        "security": {"key_path": tmp_path / "home" / "secret.key"},
    }


def test_bootstrap_creates_default_config(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"

    settings = bootstrap_settings(path=config_path, overrides=_paths(tmp_path))

    assert config_path.exists()
    assert settings.sync.interval_seconds == 300
    assert settings.sync.priority_folders == ["INBOX", "Sent", "Drafts"]
    assert settings.database.path == tmp_path / "data" / "mail.db"
    assert (tmp_path / "data").is_dir()
    assert (tmp_path / "blobs").is_dir()


def test_bootstrap_reads_existing_file(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    settings = Settings.model_validate({**_paths(tmp_path), "sync": {"batch_size": 25}})
    save_settings(settings, config_path)

    loaded = bootstrap_settings(path=config_path)

    assert loaded.sync.batch_size == 25
    assert loaded.attachments.root == tmp_path / "blobs"


def test_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAILSYNC_BATCH_SIZE", "10")
    monkeypatch.setenv("MAILSYNC_WORKERS", "7")
    monkeypatch.setenv("MAILSYNC_IMAP_TIMEOUT", "12.5")
    monkeypatch.setenv("MAILSYNC_SECRET_KEY", "from-env")

    settings = bootstrap_settings(path=tmp_path / "config.json", overrides=_paths(tmp_path))

    assert settings.sync.batch_size == 10
    assert settings.sync.worker_count == 7
    assert settings.imap.socket_timeout == 12.5
    assert settings.security.secret_key.get_secret_value() == "from-env"


def test_invalid_environment_value(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAILSYNC_SYNC_INTERVAL", "often")

    with pytest.raises(ConfigurationError):
        bootstrap_settings(path=tmp_path / "config.json", overrides=_paths(tmp_path))


def test_out_of_range_environment_value(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAILSYNC_SYNC_INTERVAL", "5")

    with pytest.raises(ConfigurationError):
        bootstrap_settings(path=tmp_path / "config.json", overrides=_paths(tmp_path))


def test_secrets_are_masked_on_disk(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    settings = Settings.model_validate(_paths(tmp_path))
    settings.security.secret_key = SecretStr("very-secret")
    settings.security.signing_key = SecretStr("also-secret")

    save_settings(settings, config_path)

    payload = json.loads(config_path.read_text())
    assert payload["security"]["secret_key"] == "***"
    assert payload["security"]["signing_key"] == "***"
    assert "very-secret" not in config_path.read_text()

    reloaded = bootstrap_settings(path=config_path)
    assert reloaded.security.secret_key is None
    assert reloaded.security.signing_key is None


def test_load_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_settings(tmp_path / "absent.json")


@pytest.mark.parametrize(
    "content",
    ["{not json", json.dumps({"sync": {"batch_size": 0}}), json.dumps({"imap": {"max_sessions": "many"}})],
)
def test_load_invalid_file(tmp_path: Path, content: str) -> None:
    path = tmp_path / "config.json"
    path.write_text(content)

    with pytest.raises(ConfigurationError):
        load_settings(path)


def test_field_validation() -> None:
    with pytest.raises(ValidationError):
        SyncSettings(interval_seconds=10)
    with pytest.raises(ValidationError):
        SyncSettings(job_timeout_seconds=1)
    with pytest.raises(ValidationError):
        ImapSettings(socket_timeout=0.5)
    assert ImapSettings(socket_timeout=1).socket_timeout == 1
