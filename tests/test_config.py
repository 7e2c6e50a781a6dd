"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from inbox_automator.core.config import AppSettings, load_app_settings


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    """Ensure each test sees a fresh settings instance."""

    load_app_settings.cache_clear()


def test_defaults_loaded_without_env_file() -> None:
    """Default values should be returned when no overrides are present."""

    settings = load_app_settings(include_environment=False)
    assert settings.imap.host == "imap.gmail.com"
    assert settings.storage.db_path == Path("./inbox_automator.db")
    assert settings.storage.raw_store_dir == Path("./data/emails")
    assert settings.sync.window_days == 7
    assert settings.sync.default_max_messages == 50
    assert settings.queue.batch_size == 5
    assert settings.queue.confidence_threshold == pytest.approx(0.70)


def test_env_file_overrides(tmp_path: Path) -> None:
    """Values defined in an env file should override defaults."""

    env_file = tmp_path / "test.env"
    env_file.write_text(
        "\n".join(
            [
                "INBOX_AUTOMATOR_IMAP__HOST=imap.example.com",
                "INBOX_AUTOMATOR_QUEUE__BATCH_SIZE=3",
                "INBOX_AUTOMATOR_STORAGE__INTELLIGENT_RENAME=true",
                "UNRELATED_KEY=ignored",
            ]
        )
        + "\n",
        encoding="utf-8",
    )

    settings = load_app_settings(env_file=env_file, include_environment=False)
    assert settings.imap.host == "imap.example.com"
    assert settings.queue.batch_size == 3
    assert settings.storage.intelligent_rename is True


def test_environment_takes_precedence_over_env_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_file = tmp_path / "test.env"
    env_file.write_text("INBOX_AUTOMATOR_LLM__MODEL=file-model\n", encoding="utf-8")
    monkeypatch.setenv("INBOX_AUTOMATOR_LLM__MODEL", "env-model")

    settings = load_app_settings(env_file=env_file)
    assert settings.llm.model == "env-model"


def test_invalid_threshold_is_rejected() -> None:
    with pytest.raises(ValidationError):
        AppSettings.model_validate({"queue": {"confidence_threshold": 1.5}})
