"""Typed settings management for the mailsync engine.

This module wraps runtime configuration in Pydantic models so the CLI, the
scheduler and the sync pipeline can rely on validated settings. Secrets are
kept as ``SecretStr`` and are masked whenever settings are written to disk.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from mailsync.errors import ConfigurationError


DEFAULT_HOME = Path.home() / ".mailsync"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.json"


class DatabaseSettings(BaseModel):
    """Location and tuning of the SQLite store."""

    path: Path = Field(default=DEFAULT_HOME / "mailsync.db", description="SQLite database file")
    busy_timeout_ms: int = Field(default=5000, ge=0, le=600_000)


class ImapSettings(BaseModel):
    """IMAP session limits."""

    socket_timeout: float = Field(default=30.0, gt=0, le=600, description="Per-operation socket timeout")
    max_sessions: int = Field(default=10, ge=1, le=200, description="Process-wide concurrent sessions")
    connect_retries: int = Field(default=2, ge=0, le=10)
    connect_retry_delay: float = Field(default=1.0, ge=0, le=60)

    @field_validator("socket_timeout")
    def _validate_timeout(cls, value: float) -> float:
        if value < 1:
            raise ValueError("socket_timeout must be at least one second")
        return value


class SyncSettings(BaseModel):
    """Sync pipeline and scheduling behaviour."""

    interval_seconds: int = Field(default=300, ge=30, le=86_400)
    batch_size: int = Field(default=50, ge=1, le=1000)
    initial_fetch_limit: int = Field(default=500, ge=1, le=100_000)
    initial_lookback_days: Optional[int] = Field(
        default=None, ge=1, le=3650, description="Limit the first sync of a folder to recent mail"
    )
    job_timeout_seconds: int = Field(default=900, ge=10, le=86_400)
    timeout_grace_seconds: int = Field(default=30, ge=0, le=600)
    lease_seconds: int = Field(default=120, ge=10, le=3600)
    worker_count: int = Field(default=3, ge=1, le=64)
    poll_seconds: float = Field(default=5.0, gt=0, le=300)
    large_message_bytes: int = Field(default=2_000_000, ge=1024)
    snippet_length: int = Field(default=200, ge=20, le=2000)
    subject_window_days: int = Field(default=30, ge=1, le=365)
    priority_folders: List[str] = Field(default_factory=lambda: ["INBOX", "Sent", "Drafts"])
    excluded_folders: List[str] = Field(
        default_factory=lambda: ["[Gmail]/All Mail", "Junk", "Spam", "Trash"]
    )


class AttachmentSettings(BaseModel):
    """Attachment persistence policy."""

    root: Path = Field(default=DEFAULT_HOME / "attachments")
    max_eager_bytes: int = Field(default=10_000_000, ge=0, description="Larger parts are deferred")
    link_ttl_seconds: int = Field(default=600, ge=10, le=86_400)


class RetrySettings(BaseModel):
    """Backoff applied to transient sync failures."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: int = Field(default=60, ge=1, le=3600)
    max_delay_seconds: int = Field(default=3600, ge=1, le=86_400)
    jitter_factor: float = Field(default=0.2, ge=0.0, le=1.0)
    policy_path: Optional[Path] = Field(default=None, description="Optional YAML retry policy")


class SecuritySettings(BaseModel):
    """Credential encryption and download link signing."""

    secret_key: Optional[SecretStr] = Field(
        default=None, description="Base64 AES-256 key used for account secrets"
    )
    key_path: Path = Field(default=DEFAULT_HOME / "secret.key")
    signing_key: Optional[SecretStr] = Field(
        default=None, description="Key used to sign attachment download references"
    )


class Settings(BaseModel):
    """Root configuration state."""

    home: Path = Field(default=DEFAULT_HOME)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    imap: ImapSettings = Field(default_factory=ImapSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    attachments: AttachmentSettings = Field(default_factory=AttachmentSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)


def load_settings(path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from disk or raise if invalid."""

    if not path.exists():
        raise ConfigurationError(f"Settings file not found at {path}")
    try:
        payload = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Settings file is not valid JSON: {exc}") from exc
    try:
        return Settings.model_validate(payload)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def save_settings(settings: Settings, path: Path = DEFAULT_CONFIG_PATH) -> None:
    """Persist settings to disk with masked secrets."""

    payload = settings.model_dump(mode="json")
    payload = _mask_secret_fields(payload)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2))


def bootstrap_settings(
    *,
    path: Path = DEFAULT_CONFIG_PATH,
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Create or load settings respecting overrides and environment variables."""

    overrides = overrides or {}

    if path.exists():
        settings = load_settings(path)
    else:
        settings = Settings()
        save_settings(settings, path)

    merged = settings.model_dump(mode="python")
    merged = _strip_masked(merged)
    merged = _apply_overrides(merged, overrides)
    merged = _apply_env_overrides(merged)

    try:
        resolved = Settings.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
    _ensure_directories(resolved)
    return resolved


def _apply_overrides(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = base.copy()
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    _set_env_override(data, "home", "MAILSYNC_HOME")

    database = data.setdefault("database", {})
    _set_env_override(database, "path", "MAILSYNC_DB_PATH")

    imap = data.setdefault("imap", {})
    _set_env_override(imap, "socket_timeout", "MAILSYNC_IMAP_TIMEOUT", cast_float=True)
    _set_env_override(imap, "max_sessions", "MAILSYNC_IMAP_MAX_SESSIONS", cast_int=True)

    sync = data.setdefault("sync", {})
    _set_env_override(sync, "interval_seconds", "MAILSYNC_SYNC_INTERVAL", cast_int=True)
    _set_env_override(sync, "batch_size", "MAILSYNC_BATCH_SIZE", cast_int=True)
    _set_env_override(sync, "job_timeout_seconds", "MAILSYNC_JOB_TIMEOUT", cast_int=True)
    _set_env_override(sync, "worker_count", "MAILSYNC_WORKERS", cast_int=True)

    attachments = data.setdefault("attachments", {})
    _set_env_override(attachments, "root", "MAILSYNC_ATTACHMENT_ROOT")

    retry = data.setdefault("retry", {})
    _set_env_override(retry, "max_attempts", "MAILSYNC_RETRY_MAX_ATTEMPTS", cast_int=True)
    _set_env_override(retry, "policy_path", "MAILSYNC_RETRY_POLICY")

    security = data.setdefault("security", {})
    _set_env_override(security, "secret_key", "MAILSYNC_SECRET_KEY")
    _set_env_override(security, "signing_key", "MAILSYNC_SIGNING_KEY")
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    *,
    cast_bool: bool = False,
    cast_int: bool = False,
    cast_float: bool = False,
) -> None:
    raw = os.getenv(env_name)
    if raw is None:
        return
    try:
        if cast_bool:
            mapping[key] = raw.lower() in {"1", "true", "yes"}
        elif cast_int:
            mapping[key] = int(raw)
        elif cast_float:
            mapping[key] = float(raw)
        else:
            mapping[key] = raw
    except ValueError as exc:
        raise ConfigurationError(f"{env_name} has an invalid value") from exc


def _ensure_directories(settings: Settings) -> None:
    settings.home.mkdir(parents=True, exist_ok=True)
    settings.database.path.parent.mkdir(parents=True, exist_ok=True)
    settings.attachments.root.mkdir(parents=True, exist_ok=True)


def _strip_masked(payload: Dict[str, Any]) -> Dict[str, Any]:
    security = payload.get("security") or {}
    for key in ("secret_key", "signing_key"):
        value = security.get(key)
        raw = value.get_secret_value() if isinstance(value, SecretStr) else value
        if raw == "***":
            security[key] = None
    return payload


def _mask_secret_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    security = payload.get("security", {})
    for key in ("secret_key", "signing_key"):
        if security.get(key):
            security[key] = "***"
    return payload


__all__ = [
    "AttachmentSettings",
    "DEFAULT_CONFIG_PATH",
    "DatabaseSettings",
    "ImapSettings",
    "RetrySettings",
    "SecuritySettings",
    "Settings",
    "SyncSettings",
    "bootstrap_settings",
    "load_settings",
    "save_settings",
]
