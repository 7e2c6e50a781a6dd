"""Protocol interfaces and error types for decoupling components."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol

from .models import (
    Account,
    Classification,
    CleanupReport,
    MessageRef,
    ProcessingEvent,
    ProcessingLog,
    RawMessage,
    Rule,
    StoredMessage,
)


class AutomationError(RuntimeError):
    """Base class for errors raised by the automation engine."""


class AccountNotFoundError(AutomationError):
    """Raised when an account identifier does not resolve."""


class ProviderAuthError(AutomationError):
    """Raised when provider credentials cannot be refreshed."""


class ProviderError(AutomationError):
    """Raised when a provider call fails for a single item."""


class RawStoreError(AutomationError):
    """Raised when raw message content cannot be saved or read."""


class ClassificationError(AutomationError):
    """Raised when no usable classification could be produced."""


class DuplicateMessageError(AutomationError):
    """Raised when a message with the same native id already exists."""


class ProviderConnector(Protocol):
    """Abstraction over a mail provider account."""

    def list_message_ids_since(
        self, account: Account, since: datetime | None, until: datetime | None
    ) -> list[MessageRef]:
        """Return references for messages received in ``[since, until)``."""
        raise NotImplementedError

    def fetch_raw(self, account: Account, native_id: str) -> RawMessage:
        """Return the raw RFC822 payload for a message."""
        raise NotImplementedError

    def trash(self, account: Account, native_id: str) -> None:
        """Move a message to the provider trash."""
        raise NotImplementedError

    def archive(self, account: Account, native_id: str) -> None:
        """Remove a message from the inbox without deleting it."""
        raise NotImplementedError

    def mark_read(self, account: Account, native_id: str) -> None:
        """Flag a message as read."""
        raise NotImplementedError

    def star(self, account: Account, native_id: str) -> None:
        """Flag a message as starred."""
        raise NotImplementedError

    def create_draft(self, account: Account, native_id: str, content: str) -> None:
        """Store a reply draft for a message."""
        raise NotImplementedError

    def refresh_token_if_needed(self, account: Account) -> Account:
        """Return the account with valid credentials, refreshing if required."""
        raise NotImplementedError


class ClassificationService(Protocol):
    """Classifies cleaned message content against compiled rules."""

    def classify(
        self,
        clean_text: str,
        context: Mapping[str, Any],
        compiled_rules: str,
    ) -> Classification | None:
        """Return a classification, or ``None`` when no usable result exists."""
        raise NotImplementedError


class RawStore(Protocol):
    """Storage for raw message payloads."""

    def save(self, content: bytes, key: str) -> str:
        """Persist ``content`` under ``key`` and return its path."""
        raise NotImplementedError

    def read(self, path: str) -> bytes:
        """Return the content stored at ``path``."""
        raise NotImplementedError

    def delete(self, path: str) -> None:
        """Remove stored content; missing paths are ignored."""
        raise NotImplementedError


class EmailRepository(Protocol):
    """Abstraction for persistence of accounts, messages, rules and runs."""

    def get_account(self, account_id: str) -> Account | None:
        """Return the account with the given identifier."""
        raise NotImplementedError

    def list_active_accounts(self, user_id: str | None = None) -> list[Account]:
        """Return active accounts, optionally restricted to a user."""
        raise NotImplementedError

    def save_account(self, account: Account) -> Account:
        """Insert or replace an account record."""
        raise NotImplementedError

    def set_sync_status(
        self,
        account_id: str,
        status: str,
        *,
        error: str | None = None,
        synced_at: datetime | None = None,
    ) -> None:
        """Record the sync status of an account."""
        raise NotImplementedError

    def advance_checkpoint(
        self, account_id: str, checkpoint: str, *, expected: str | None
    ) -> bool:
        """Compare-and-set the sync checkpoint of an account."""
        raise NotImplementedError

    def message_exists(self, account_id: str, native_id: str) -> bool:
        """Return ``True`` when the message is already stored."""
        raise NotImplementedError

    def insert_message(self, message: StoredMessage) -> StoredMessage:
        """Insert a pending message skeleton."""
        raise NotImplementedError

    def get_message(self, message_id: str) -> StoredMessage | None:
        """Return a stored message by identifier."""
        raise NotImplementedError

    def list_pending_messages(self, user_id: str, limit: int) -> list[StoredMessage]:
        """Return pending messages for the user's active accounts, oldest first."""
        raise NotImplementedError

    def claim_message(self, message_id: str, claimed_at: datetime) -> bool:
        """Atomically move a message from pending to processing."""
        raise NotImplementedError

    def requeue_stale_claims(self, user_id: str, older_than: datetime) -> int:
        """Return stuck processing rows to the pending state."""
        raise NotImplementedError

    def save_classification(
        self,
        message_id: str,
        classification: Classification,
    ) -> None:
        """Persist a classification with its matched rule and confidence."""
        raise NotImplementedError

    def mark_completed(self, message_id: str) -> None:
        """Mark a message as completed."""
        raise NotImplementedError

    def mark_failed(self, message_id: str, error: str) -> None:
        """Mark a message as failed and increment its retry count."""
        raise NotImplementedError

    def reset_failed(self, message_id: str) -> bool:
        """Move a failed message back to pending."""
        raise NotImplementedError

    def append_action(self, message_id: str, action: str) -> None:
        """Atomically add an action to the message history."""
        raise NotImplementedError

    def clear_raw_path(self, message_id: str) -> None:
        """Forget the raw content location of a message."""
        raise NotImplementedError

    def list_sweep_candidates(self, account_id: str) -> list[StoredMessage]:
        """Return classified messages without any recorded actions."""
        raise NotImplementedError

    def list_rules(self, user_id: str, *, enabled_only: bool = True) -> list[Rule]:
        """Return rules ordered by priority, highest first."""
        raise NotImplementedError

    def get_rule(self, rule_id: str) -> Rule | None:
        """Return a rule by identifier."""
        raise NotImplementedError

    def save_rule(self, rule: Rule) -> Rule:
        """Insert or replace a rule."""
        raise NotImplementedError

    def create_processing_log(self, log: ProcessingLog) -> ProcessingLog:
        """Insert a processing log row."""
        raise NotImplementedError

    def finish_processing_log(self, log: ProcessingLog) -> None:
        """Store final status and counters for a processing log."""
        raise NotImplementedError

    def record_event(self, event: ProcessingEvent) -> ProcessingEvent:
        """Append a processing event."""
        raise NotImplementedError

    def list_events(
        self, *, run_id: str | None = None, message_id: str | None = None
    ) -> list[ProcessingEvent]:
        """Return processing events in insertion order."""
        raise NotImplementedError

    def save_user_settings(self, user_id: str, sync_interval_minutes: int) -> None:
        """Store the automatic sync interval preferred by a user."""
        raise NotImplementedError

    def get_sync_interval_minutes(self, user_id: str) -> int | None:
        """Return the user's sync interval, or ``None`` when never configured."""
        raise NotImplementedError

    def last_successful_run_started_at(self, user_id: str) -> datetime | None:
        """Return the start time of the user's most recent successful run."""
        raise NotImplementedError

    def cleanup(
        self, *, history_before: datetime, deleted_messages_before: datetime
    ) -> CleanupReport:
        """Drop old run history and records of messages deleted remotely."""
        raise NotImplementedError

    def close(self) -> None:
        """Close database connections if necessary."""
        raise NotImplementedError


__all__ = [
    "AccountNotFoundError",
    "AutomationError",
    "ClassificationError",
    "ClassificationService",
    "DuplicateMessageError",
    "EmailRepository",
    "ProviderAuthError",
    "ProviderConnector",
    "ProviderError",
    "RawStore",
    "RawStoreError",
]
