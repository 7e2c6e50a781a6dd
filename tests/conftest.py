"""Shared fixtures and in-memory fakes for the test-suite."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from email.message import EmailMessage
from email.utils import format_datetime
from pathlib import Path
from typing import Any

import pytest

from inbox_automator.core.config import StorageSettings
from inbox_automator.core.interfaces import ProviderError
from inbox_automator.core.models import (
    PROVIDER_IMAP,
    Account,
    Classification,
    MessageRef,
    RawMessage,
)
from inbox_automator.ingestion import MessageIngestor
from inbox_automator.storage import FileRawStore, SqliteRepository


def build_raw_email(
    *,
    subject: str = "Hello",
    sender: str = "Alice <alice@example.com>",
    to: str = "me@example.com",
    body: str = "Plain body text for the message.",
    date: datetime | None = None,
    headers: dict[str, str] | None = None,
) -> bytes:
    """Return RFC822 bytes for a simple text message."""
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = sender
    message["To"] = to
    message["Date"] = format_datetime(date or datetime(2025, 1, 2, 9, 30, tzinfo=UTC))
    for name, value in (headers or {}).items():
        message[name] = value
    message.set_content(body)
    return message.as_bytes()


class FakeConnector:
    """In-memory provider mailbox recording every call it receives."""

    def __init__(self) -> None:
        self.mailbox: dict[str, tuple[datetime, bytes]] = {}
        self.list_calls: list[tuple[datetime | None, datetime | None]] = []
        self.fetched: list[str] = []
        self.actions: list[tuple[str, str]] = []
        self.drafts: list[tuple[str, str]] = []
        self.failing_fetches: set[str] = set()
        self.failing_actions: set[str] = set()
        self.refresh_error: Exception | None = None

    def add(self, native_id: str, received_at: datetime, raw: bytes) -> None:
        self.mailbox[native_id] = (received_at, raw)

    def refresh_token_if_needed(self, account: Account) -> Account:
        if self.refresh_error is not None:
            raise self.refresh_error
        return account

    def list_message_ids_since(
        self, account: Account, since: datetime | None, until: datetime | None
    ) -> list[MessageRef]:
        self.list_calls.append((since, until))
        return [
            MessageRef(native_id=native_id, received_at=received_at)
            for native_id, (received_at, _) in self.mailbox.items()
            if (since is None or received_at >= since)
            and (until is None or received_at < until)
        ]

    def fetch_raw(self, account: Account, native_id: str) -> RawMessage:
        self.fetched.append(native_id)
        if native_id in self.failing_fetches:
            raise ProviderError(f"fetch failed for {native_id}")
        received_at, raw = self.mailbox[native_id]
        return RawMessage(native_id=native_id, raw=raw, received_at=received_at)

    def _act(self, action: str, native_id: str) -> None:
        if action in self.failing_actions:
            raise ProviderError(f"{action} failed for {native_id}")
        self.actions.append((action, native_id))

    def trash(self, account: Account, native_id: str) -> None:
        self._act("delete", native_id)

    def archive(self, account: Account, native_id: str) -> None:
        self._act("archive", native_id)

    def mark_read(self, account: Account, native_id: str) -> None:
        self._act("read", native_id)

    def star(self, account: Account, native_id: str) -> None:
        self._act("star", native_id)

    def create_draft(self, account: Account, native_id: str, content: str) -> None:
        self._act("draft", native_id)
        self.drafts.append((native_id, content))


class FakeClassifier:
    """Classification service returning queued or computed results."""

    def __init__(
        self,
        result: Classification
        | None
        | Callable[[str, dict[str, Any]], Classification | None] = None,
    ) -> None:
        self.result = result
        self.calls: list[tuple[str, dict[str, Any], str]] = []

    def classify(
        self, clean_text: str, context: dict[str, Any], compiled_rules: str
    ) -> Classification | None:
        self.calls.append((clean_text, dict(context), compiled_rules))
        if callable(self.result):
            return self.result(clean_text, context)
        return self.result


@pytest.fixture
def storage_settings(tmp_path: Path) -> StorageSettings:
    return StorageSettings(
        db_path=tmp_path / "inbox.db", raw_store_dir=tmp_path / "raw"
    )


@pytest.fixture
def repository(storage_settings: StorageSettings) -> Iterator[SqliteRepository]:
    repo = SqliteRepository(storage_settings)
    yield repo
    repo.close()


@pytest.fixture
def raw_store(storage_settings: StorageSettings) -> FileRawStore:
    return FileRawStore(storage_settings)


@pytest.fixture
def account(repository: SqliteRepository) -> Account:
    return repository.save_account(
        Account(
            id="acct-1",
            user_id="user-1",
            provider=PROVIDER_IMAP,
            email_address="me@example.com",
        )
    )


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def ingest_message(
    repository: SqliteRepository, raw_store: FileRawStore
) -> Callable[..., str]:
    """Return a helper storing a pending message and yielding its id."""
    ingestor = MessageIngestor(repository, raw_store)

    def _ingest(account: Account, native_id: str, **email_kwargs: Any) -> str:
        raw = build_raw_email(**email_kwargs)
        result = ingestor.ingest(account, RawMessage(native_id=native_id, raw=raw))
        assert result.message_id is not None
        return result.message_id

    return _ingest


@pytest.fixture
def raw_email() -> Callable[..., bytes]:
    return build_raw_email


@pytest.fixture
def make_connector() -> Callable[[], FakeConnector]:
    return FakeConnector


@pytest.fixture
def make_classifier() -> Callable[..., FakeClassifier]:
    return FakeClassifier
