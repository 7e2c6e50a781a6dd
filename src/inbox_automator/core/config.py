"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field


class ImapSettings(BaseModel):
    """Settings controlling IMAP connectivity."""

    host: str = Field(default="imap.gmail.com", description="IMAP hostname")
    port: int = Field(default=993, description="IMAP port, typically 993 for SSL")
    username: str | None = Field(
        default=None,
        description="Account username; falls back to the account email address",
    )
    app_password: str | None = Field(default=None, description="App password")
    account_passwords: dict[str, str] = Field(
        default_factory=dict,
        description="Per-account app passwords keyed by account id; the account "
        "email address is then used as the login",
    )
    mailbox: str = Field(default="INBOX", description="Mailbox to synchronise")
    use_ssl: bool = Field(default=True, description="Whether to enforce SSL")
    trash_folder: str = Field(
        default="[Gmail]/Trash", description="Folder receiving deleted messages"
    )
    archive_folder: str = Field(
        default="[Gmail]/All Mail", description="Folder receiving archived messages"
    )
    drafts_folder: str = Field(
        default="[Gmail]/Drafts", description="Folder where reply drafts are stored"
    )


class LlmSettings(BaseModel):
    """Settings for the local LLM provider."""

    base_url: str = Field(
        default="http://localhost:11434", description="Ollama server URL"
    )
    model: str = Field(default="gpt-oss:20b", description="Model identifier")
    timeout_seconds: int = Field(
        default=60, description="Request timeout for LLM calls"
    )
    temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sampling temperature for LLM completions",
    )
    max_output_tokens: int | None = Field(
        default=1024,
        ge=32,
        description="Maximum tokens to request from the provider",
    )
    max_content_chars: int = Field(
        default=2500,
        ge=200,
        description="Cleaned body characters sent to the classifier",
    )


class StorageSettings(BaseModel):
    """Settings for local persistence."""

    db_path: Path = Field(
        default=Path("./inbox_automator.db"), description="SQLite database path"
    )
    raw_store_dir: Path = Field(
        default=Path("./data/emails"), description="Directory for raw .eml files"
    )
    intelligent_rename: bool = Field(
        default=False,
        description="Use slugified subjects when naming raw message files",
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )


class SyncSettings(BaseModel):
    """Settings controlling incremental provider pagination."""

    window_days: int = Field(
        default=7, ge=1, description="Width of each sliding fetch window in days"
    )
    max_empty_windows: int = Field(
        default=4,
        ge=0,
        description="Empty windows skipped per run before giving up",
    )
    default_max_messages: int = Field(
        default=50,
        ge=1,
        description="Per-run ingestion cap for accounts without their own limit",
    )


class QueueSettings(BaseModel):
    """Settings for the classification queue worker."""

    batch_size: int = Field(
        default=5, ge=1, description="Messages classified per batch"
    )
    batch_delay_seconds: float = Field(
        default=2.0, ge=0.0, description="Pause between consecutive batches"
    )
    confidence_threshold: float = Field(
        default=0.70,
        ge=0.0,
        le=1.0,
        description="Minimum classifier confidence before rule actions execute",
    )
    max_batches: int | None = Field(
        default=None, description="Upper bound on batches per drain call"
    )
    stale_claim_minutes: int = Field(
        default=30,
        ge=1,
        description="Claims older than this are returned to the pending queue",
    )


class SchedulerSettings(BaseModel):
    """Settings for the periodic sync and housekeeping loop."""

    tick_seconds: float = Field(
        default=60.0, ge=1.0, description="Pause between scheduler passes"
    )
    default_sync_interval_minutes: int = Field(
        default=5,
        ge=1,
        le=60,
        description="Sync interval for users without their own preference",
    )
    cleanup_interval_hours: float = Field(
        default=24.0, gt=0.0, description="Hours between housekeeping passes"
    )
    history_retention_days: int = Field(
        default=30, ge=1, description="Days processing logs and events are kept"
    )
    deleted_message_retention_days: int = Field(
        default=7,
        ge=1,
        description="Days records of remotely deleted messages are kept",
    )


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    imap: ImapSettings = Field(default_factory=ImapSettings)
    llm: LlmSettings = Field(default_factory=LlmSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)


ENV_PREFIX = "INBOX_AUTOMATOR_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _collect_env_values(
    env_file: Path | str | None, *, include_environment: bool = True
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values: dict[str, str] = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        normalized_value: Any = value
        if isinstance(value, str) and value == "":
            normalized_value = None
        elif isinstance(value, str):
            lowercase_value = value.lower()
            if lowercase_value == "true":
                normalized_value = True
            elif lowercase_value == "false":
                normalized_value = False
        _merge_into_tree(collected, path, normalized_value)

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(
        env_file, include_environment=include_environment
    )
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AppSettings",
    "ImapSettings",
    "LlmSettings",
    "LoggingSettings",
    "QueueSettings",
    "SchedulerSettings",
    "StorageSettings",
    "SyncSettings",
    "load_app_settings",
]
