"""SQLite-backed repository implementation."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import Any

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utcnow
from ..core.interfaces import DuplicateMessageError, EmailRepository
from ..core.models import (
    ACTION_DELETE,
    RUN_SUCCESS,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    Account,
    Classification,
    CleanupReport,
    ProcessingEvent,
    ProcessingLog,
    Rule,
    StoredMessage,
)

LOGGER = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = 30.0

_MESSAGE_COLUMNS = """
    id,
    account_id,
    native_id,
    subject,
    sender,
    recipient,
    date,
    body_snippet,
    raw_path,
    processing_status,
    processing_error,
    retry_count,
    classification,
    matched_rule_id,
    confidence,
    actions_taken,
    created_at
"""


# pylint: disable=too-many-public-methods
class SqliteRepository(EmailRepository):
    """Persist accounts, messages, rules and processing history using SQLite."""

    def __init__(self, settings: StorageSettings) -> None:
        """Initialise the repository and apply migrations."""
        self._settings = settings
        db_path = Path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(
            db_path,
            timeout=BUSY_TIMEOUT_SECONDS,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._enable_foreign_keys()
        self._apply_migrations()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteRepository:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # Accounts ----------------------------------------------------------------
    def get_account(self, account_id: str) -> Account | None:
        """Return the account with the given identifier."""
        cur = self._connection.execute(
            "SELECT * FROM accounts WHERE id = ?",
            (account_id,),
        )
        row = cur.fetchone()
        return _row_to_account(row) if row else None

    def list_active_accounts(self, user_id: str | None = None) -> list[Account]:
        """Return active accounts, optionally restricted to a single user."""
        if user_id is None:
            cur = self._connection.execute(
                "SELECT * FROM accounts WHERE is_active = 1 ORDER BY user_id, id"
            )
        else:
            cur = self._connection.execute(
                """
                SELECT * FROM accounts
                WHERE is_active = 1 AND user_id = ?
                ORDER BY id
                """,
                (user_id,),
            )
        return [_row_to_account(row) for row in cur.fetchall()]

    def save_account(self, account: Account) -> Account:
        """Insert or update an account record."""
        LOGGER.debug("Saving account %s", account.id)
        with self._connection:
            self._connection.execute(
                """
                INSERT INTO accounts (
                    id,
                    user_id,
                    provider,
                    email_address,
                    sync_checkpoint,
                    sync_start_date,
                    max_messages_per_run,
                    last_sync_at,
                    last_sync_status,
                    last_sync_error,
                    is_active
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    user_id=excluded.user_id,
                    provider=excluded.provider,
                    email_address=excluded.email_address,
                    sync_checkpoint=excluded.sync_checkpoint,
                    sync_start_date=excluded.sync_start_date,
                    max_messages_per_run=excluded.max_messages_per_run,
                    last_sync_at=excluded.last_sync_at,
                    last_sync_status=excluded.last_sync_status,
                    last_sync_error=excluded.last_sync_error,
                    is_active=excluded.is_active
                """,
                (
                    account.id,
                    account.user_id,
                    account.provider,
                    account.email_address,
                    account.sync_checkpoint,
                    serialize_datetime(account.sync_start_date),
                    account.max_messages_per_run,
                    serialize_datetime(account.last_sync_at),
                    account.last_sync_status,
                    account.last_sync_error,
                    int(account.is_active),
                ),
            )
        return account

    def set_sync_status(
        self,
        account_id: str,
        status: str,
        *,
        error: str | None = None,
        synced_at: datetime | None = None,
    ) -> None:
        """Record the sync status of an account."""
        with self._connection:
            if synced_at is None:
                self._connection.execute(
                    """
                    UPDATE accounts
                    SET last_sync_status = ?, last_sync_error = ?
                    WHERE id = ?
                    """,
                    (status, error, account_id),
                )
            else:
                self._connection.execute(
                    """
                    UPDATE accounts
                    SET last_sync_status = ?, last_sync_error = ?, last_sync_at = ?
                    WHERE id = ?
                    """,
                    (status, error, serialize_datetime(synced_at), account_id),
                )

    def advance_checkpoint(
        self, account_id: str, checkpoint: str, *, expected: str | None
    ) -> bool:
        """Compare-and-set the sync checkpoint of an account.

        The update only applies while the stored checkpoint still equals
        ``expected``; ``False`` means another run moved it first.
        """
        with self._connection:
            cur = self._connection.execute(
                """
                UPDATE accounts SET sync_checkpoint = ?
                WHERE id = ? AND sync_checkpoint IS ?
                """,
                (checkpoint, account_id, expected),
            )
        if cur.rowcount != 1:
            LOGGER.warning(
                "Checkpoint of account %s changed concurrently; keeping stored value",
                account_id,
            )
            return False
        LOGGER.debug(
            "Advanced checkpoint for account %s to %s", account_id, checkpoint
        )
        return True

    # Messages ----------------------------------------------------------------
    def message_exists(self, account_id: str, native_id: str) -> bool:
        """Return ``True`` when the message is already stored."""
        cur = self._connection.execute(
            "SELECT 1 FROM messages WHERE account_id = ? AND native_id = ?",
            (account_id, native_id),
        )
        return cur.fetchone() is not None

    def insert_message(self, message: StoredMessage) -> StoredMessage:
        """Insert a pending message skeleton."""
        created_at = message.created_at or utcnow()
        try:
            with self._connection:
                self._connection.execute(
                    """
                    INSERT INTO messages (
                        id,
                        account_id,
                        native_id,
                        subject,
                        sender,
                        recipient,
                        date,
                        body_snippet,
                        raw_path,
                        processing_status,
                        actions_taken,
                        created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, '[]', ?)
                    """,
                    (
                        message.id,
                        message.account_id,
                        message.native_id,
                        message.subject,
                        message.sender,
                        message.recipient,
                        serialize_datetime(message.date),
                        message.body_snippet,
                        message.raw_path,
                        STATUS_PENDING,
                        serialize_datetime(created_at),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc).upper():
                raise DuplicateMessageError(
                    f"Message {message.native_id} already stored for account "
                    f"{message.account_id}"
                ) from exc
            raise
        message.created_at = created_at
        message.processing_status = STATUS_PENDING
        return message

    def get_message(self, message_id: str) -> StoredMessage | None:
        """Return a stored message by identifier."""
        cur = self._connection.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
            (message_id,),
        )
        row = cur.fetchone()
        return _row_to_message(row) if row else None

    def list_pending_messages(self, user_id: str, limit: int) -> list[StoredMessage]:
        """Return pending messages for the user's active accounts, oldest first."""
        cur = self._connection.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages
            WHERE processing_status = ?
              AND account_id IN (
                  SELECT id FROM accounts WHERE user_id = ? AND is_active = 1
              )
            ORDER BY created_at ASC, rowid ASC
            LIMIT ?
            """,
            (STATUS_PENDING, user_id, limit),
        )
        return [_row_to_message(row) for row in cur.fetchall()]

    def count_messages_by_status(self, account_id: str) -> dict[str, int]:
        """Return message counts per processing status for an account."""
        cur = self._connection.execute(
            """
            SELECT processing_status, COUNT(*) AS total
            FROM messages
            WHERE account_id = ?
            GROUP BY processing_status
            """,
            (account_id,),
        )
        return {row["processing_status"]: int(row["total"]) for row in cur.fetchall()}

    def claim_message(self, message_id: str, claimed_at: datetime) -> bool:
        """Atomically move a message from pending to processing."""
        with self._connection:
            cur = self._connection.execute(
                """
                UPDATE messages
                SET processing_status = ?, processing_started_at = ?
                WHERE id = ? AND processing_status = ?
                """,
                (
                    STATUS_PROCESSING,
                    serialize_datetime(claimed_at),
                    message_id,
                    STATUS_PENDING,
                ),
            )
        return cur.rowcount == 1

    def requeue_stale_claims(self, user_id: str, older_than: datetime) -> int:
        """Return processing rows claimed before ``older_than`` to pending."""
        with self._connection:
            cur = self._connection.execute(
                """
                UPDATE messages
                SET processing_status = ?, processing_started_at = NULL
                WHERE processing_status = ?
                  AND (processing_started_at IS NULL OR processing_started_at < ?)
                  AND account_id IN (SELECT id FROM accounts WHERE user_id = ?)
                """,
                (
                    STATUS_PENDING,
                    STATUS_PROCESSING,
                    serialize_datetime(older_than),
                    user_id,
                ),
            )
        if cur.rowcount:
            LOGGER.info(
                "Requeued %d stale claims for user %s", cur.rowcount, user_id
            )
        return cur.rowcount

    def save_classification(
        self,
        message_id: str,
        classification: Classification,
    ) -> None:
        """Persist a classification with its matched rule and confidence."""
        with self._connection:
            self._connection.execute(
                """
                UPDATE messages
                SET classification = ?, matched_rule_id = ?, confidence = ?
                WHERE id = ?
                """,
                (
                    json.dumps(classification.to_dict()),
                    classification.matched_rule_id,
                    classification.confidence,
                    message_id,
                ),
            )

    def mark_completed(self, message_id: str) -> None:
        """Mark a message as completed."""
        with self._connection:
            self._connection.execute(
                """
                UPDATE messages
                SET processing_status = ?, processing_error = NULL
                WHERE id = ?
                """,
                (STATUS_COMPLETED, message_id),
            )

    def mark_failed(self, message_id: str, error: str) -> None:
        """Mark a message as failed and increment its retry count."""
        with self._connection:
            self._connection.execute(
                """
                UPDATE messages
                SET processing_status = ?,
                    processing_error = ?,
                    retry_count = retry_count + 1
                WHERE id = ?
                """,
                (STATUS_FAILED, error, message_id),
            )

    def reset_failed(self, message_id: str) -> bool:
        """Move a failed message back to pending."""
        with self._connection:
            cur = self._connection.execute(
                """
                UPDATE messages
                SET processing_status = ?,
                    processing_error = NULL,
                    processing_started_at = NULL
                WHERE id = ? AND processing_status = ?
                """,
                (STATUS_PENDING, message_id, STATUS_FAILED),
            )
        return cur.rowcount == 1

    def append_action(self, message_id: str, action: str) -> None:
        """Add ``action`` to the message history unless already present.

        A single statement performs the read and the write so concurrent
        appends from separate connections never lose an entry.
        """
        with self._connection:
            self._connection.execute(
                """
                UPDATE messages
                SET actions_taken = json_insert(
                    COALESCE(actions_taken, '[]'), '$[#]', ?
                )
                WHERE id = ?
                  AND NOT EXISTS (
                      SELECT 1
                      FROM json_each(COALESCE(messages.actions_taken, '[]'))
                      WHERE json_each.value = ?
                  )
                """,
                (action, message_id, action),
            )

    def clear_raw_path(self, message_id: str) -> None:
        """Forget the raw content location of a message."""
        with self._connection:
            self._connection.execute(
                "UPDATE messages SET raw_path = NULL WHERE id = ?",
                (message_id,),
            )

    def list_sweep_candidates(self, account_id: str) -> list[StoredMessage]:
        """Return classified messages of an account without recorded actions."""
        cur = self._connection.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages
            WHERE account_id = ?
              AND classification IS NOT NULL
              AND json_array_length(COALESCE(actions_taken, '[]')) = 0
            ORDER BY date ASC, rowid ASC
            """,
            (account_id,),
        )
        return [_row_to_message(row) for row in cur.fetchall()]

    # Rules -------------------------------------------------------------------
    def list_rules(self, user_id: str, *, enabled_only: bool = True) -> list[Rule]:
        """Return rules ordered by priority, highest first."""
        query = "SELECT * FROM rules WHERE user_id = ?"
        if enabled_only:
            query += " AND is_enabled = 1"
        query += " ORDER BY priority DESC, created_at ASC, rowid ASC"
        cur = self._connection.execute(query, (user_id,))
        return [_row_to_rule(row) for row in cur.fetchall()]

    def get_rule(self, rule_id: str) -> Rule | None:
        """Return a rule by identifier."""
        cur = self._connection.execute("SELECT * FROM rules WHERE id = ?", (rule_id,))
        row = cur.fetchone()
        return _row_to_rule(row) if row else None

    def save_rule(self, rule: Rule) -> Rule:
        """Insert or update a rule."""
        created_at = rule.created_at or utcnow()
        with self._connection:
            self._connection.execute(
                """
                INSERT INTO rules (
                    id,
                    user_id,
                    name,
                    description,
                    condition,
                    actions,
                    instructions,
                    is_enabled,
                    priority,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    user_id=excluded.user_id,
                    name=excluded.name,
                    description=excluded.description,
                    condition=excluded.condition,
                    actions=excluded.actions,
                    instructions=excluded.instructions,
                    is_enabled=excluded.is_enabled,
                    priority=excluded.priority
                """,
                (
                    rule.id,
                    rule.user_id,
                    rule.name,
                    rule.description,
                    json.dumps(rule.condition),
                    json.dumps(list(rule.actions)),
                    rule.instructions,
                    int(rule.is_enabled),
                    rule.priority,
                    serialize_datetime(created_at),
                ),
            )
        rule.created_at = created_at
        return rule

    # Processing history ------------------------------------------------------
    def create_processing_log(self, log: ProcessingLog) -> ProcessingLog:
        """Insert a processing log row."""
        with self._connection:
            self._connection.execute(
                """
                INSERT INTO processing_logs (
                    id, user_id, account_id, status, started_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    log.id,
                    log.user_id,
                    log.account_id,
                    log.status,
                    serialize_datetime(log.started_at),
                ),
            )
        return log

    def finish_processing_log(self, log: ProcessingLog) -> None:
        """Store final status and counters for a processing log."""
        with self._connection:
            self._connection.execute(
                """
                UPDATE processing_logs
                SET status = ?,
                    completed_at = ?,
                    emails_processed = ?,
                    emails_deleted = ?,
                    emails_drafted = ?,
                    errors = ?,
                    error_message = ?
                WHERE id = ?
                """,
                (
                    log.status,
                    serialize_datetime(log.completed_at),
                    log.emails_processed,
                    log.emails_deleted,
                    log.emails_drafted,
                    log.errors,
                    log.error_message,
                    log.id,
                ),
            )

    def get_processing_log(self, log_id: str) -> ProcessingLog | None:
        """Return a processing log by identifier."""
        cur = self._connection.execute(
            "SELECT * FROM processing_logs WHERE id = ?", (log_id,)
        )
        row = cur.fetchone()
        if row is None:
            return None
        return ProcessingLog(
            id=row["id"],
            user_id=row["user_id"],
            account_id=row["account_id"],
            status=row["status"],
            started_at=_parse_required(row["started_at"]),
            completed_at=parse_datetime(row["completed_at"]),
            emails_processed=row["emails_processed"],
            emails_deleted=row["emails_deleted"],
            emails_drafted=row["emails_drafted"],
            errors=row["errors"],
            error_message=row["error_message"],
        )

    def list_processing_logs(
        self, account_id: str, limit: int = 20
    ) -> list[ProcessingLog]:
        """Return the most recent processing logs of an account."""
        cur = self._connection.execute(
            """
            SELECT id FROM processing_logs
            WHERE account_id = ?
            ORDER BY started_at DESC, rowid DESC
            LIMIT ?
            """,
            (account_id, limit),
        )
        logs = [self.get_processing_log(row["id"]) for row in cur.fetchall()]
        return [log for log in logs if log is not None]

    def record_event(self, event: ProcessingEvent) -> ProcessingEvent:
        """Append a processing event."""
        created_at = event.created_at or utcnow()
        with self._connection:
            cur = self._connection.execute(
                """
                INSERT INTO processing_events (
                    run_id, message_id, event_type, agent_state, details, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.run_id,
                    event.message_id,
                    event.event_type,
                    event.agent_state,
                    json.dumps(event.details, default=str),
                    serialize_datetime(created_at),
                ),
            )
        event.id = cur.lastrowid
        event.created_at = created_at
        return event

    def list_events(
        self, *, run_id: str | None = None, message_id: str | None = None
    ) -> list[ProcessingEvent]:
        """Return processing events in insertion order."""
        clauses: list[str] = []
        params: list[Any] = []
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(run_id)
        if message_id is not None:
            clauses.append("message_id = ?")
            params.append(message_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = self._connection.execute(
            f"SELECT * FROM processing_events {where} ORDER BY id ASC",
            params,
        )
        return [
            ProcessingEvent(
                id=row["id"],
                run_id=row["run_id"],
                message_id=row["message_id"],
                event_type=row["event_type"],
                agent_state=row["agent_state"],
                details=json.loads(row["details"] or "{}"),
                created_at=parse_datetime(row["created_at"]),
            )
            for row in cur.fetchall()
        ]

    # Scheduling and housekeeping ---------------------------------------------
    def save_user_settings(self, user_id: str, sync_interval_minutes: int) -> None:
        """Store the automatic sync interval preferred by a user."""
        with self._connection:
            self._connection.execute(
                """
                INSERT INTO user_settings (user_id, sync_interval_minutes, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    sync_interval_minutes = excluded.sync_interval_minutes,
                    updated_at = excluded.updated_at
                """,
                (user_id, sync_interval_minutes, serialize_datetime(utcnow())),
            )

    def get_sync_interval_minutes(self, user_id: str) -> int | None:
        """Return the user's sync interval, or ``None`` when never configured."""
        cur = self._connection.execute(
            "SELECT sync_interval_minutes FROM user_settings WHERE user_id = ?",
            (user_id,),
        )
        row = cur.fetchone()
        return None if row is None else int(row["sync_interval_minutes"])

    def last_successful_run_started_at(self, user_id: str) -> datetime | None:
        """Return the start time of the user's most recent successful run."""
        cur = self._connection.execute(
            """
            SELECT started_at FROM processing_logs
            WHERE user_id = ? AND status = ?
            ORDER BY started_at DESC
            LIMIT 1
            """,
            (user_id, RUN_SUCCESS),
        )
        row = cur.fetchone()
        return None if row is None else parse_datetime(row["started_at"])

    def cleanup(
        self, *, history_before: datetime, deleted_messages_before: datetime
    ) -> CleanupReport:
        """Drop old run history and records of messages deleted remotely."""
        history_cutoff = serialize_datetime(history_before)
        messages_cutoff = serialize_datetime(deleted_messages_before)
        with self._connection:
            logs = self._connection.execute(
                "DELETE FROM processing_logs WHERE started_at < ?", (history_cutoff,)
            )
            events = self._connection.execute(
                "DELETE FROM processing_events WHERE created_at < ?", (history_cutoff,)
            )
            messages = self._connection.execute(
                """
                DELETE FROM messages
                WHERE created_at < ?
                  AND EXISTS (
                    SELECT 1 FROM json_each(messages.actions_taken)
                    WHERE json_each.value = ?
                  )
                """,
                (messages_cutoff, ACTION_DELETE),
            )
        report = CleanupReport(
            logs_deleted=logs.rowcount,
            events_deleted=events.rowcount,
            messages_deleted=messages.rowcount,
        )
        LOGGER.info(
            "Cleanup removed %d logs, %d events and %d deleted messages",
            report.logs_deleted,
            report.events_deleted,
            report.messages_deleted,
        )
        return report

    def ping(self) -> bool:
        """Return ``True`` when the connection answers a trivial query."""
        try:
            self._connection.execute("SELECT 1")
        except sqlite3.Error:
            return False
        return True

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._connection.close()

    # Internal helpers --------------------------------------------------------
    def _enable_foreign_keys(self) -> None:
        with self._connection:
            self._connection.execute("PRAGMA foreign_keys = ON")

    def _apply_migrations(self) -> None:
        schema_dir = Path(__file__).resolve().parent / "schema"
        with self._connection:
            self._connection.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    name TEXT PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """
            )
        applied = {
            row["name"]
            for row in self._connection.execute("SELECT name FROM schema_migrations")
        }
        for migration in sorted(schema_dir.glob("*.sql")):
            if migration.stem in applied:
                continue
            LOGGER.debug("Applying migration %s", migration.name)
            script = migration.read_text(encoding="utf-8")
            with self._connection:
                self._connection.executescript(script)
                self._connection.execute(
                    "INSERT INTO schema_migrations (name, applied_at) VALUES (?, ?)",
                    (migration.stem, serialize_datetime(utcnow())),
                )


def _parse_required(value: str) -> datetime:
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError("Expected a stored timestamp")
    return parsed


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        user_id=row["user_id"],
        provider=row["provider"],
        email_address=row["email_address"],
        sync_checkpoint=row["sync_checkpoint"],
        sync_start_date=parse_datetime(row["sync_start_date"]),
        max_messages_per_run=row["max_messages_per_run"],
        last_sync_at=parse_datetime(row["last_sync_at"]),
        last_sync_status=row["last_sync_status"],
        last_sync_error=row["last_sync_error"],
        is_active=bool(row["is_active"]),
    )


def _row_to_message(row: sqlite3.Row) -> StoredMessage:
    classification_json = row["classification"]
    classification = (
        Classification.from_dict(json.loads(classification_json))
        if classification_json
        else None
    )
    return StoredMessage(
        id=row["id"],
        account_id=row["account_id"],
        native_id=row["native_id"],
        subject=row["subject"],
        sender=row["sender"],
        recipient=row["recipient"],
        date=parse_datetime(row["date"]),
        body_snippet=row["body_snippet"],
        raw_path=row["raw_path"],
        processing_status=row["processing_status"],
        processing_error=row["processing_error"],
        retry_count=row["retry_count"],
        classification=classification,
        matched_rule_id=row["matched_rule_id"],
        confidence=row["confidence"],
        actions_taken=tuple(json.loads(row["actions_taken"] or "[]")),
        created_at=parse_datetime(row["created_at"]),
    )


def _row_to_rule(row: sqlite3.Row) -> Rule:
    return Rule(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row["description"],
        condition=json.loads(row["condition"] or "{}"),
        actions=tuple(json.loads(row["actions"] or "[]")),
        instructions=row["instructions"],
        is_enabled=bool(row["is_enabled"]),
        priority=row["priority"],
        created_at=parse_datetime(row["created_at"]),
    )


__all__ = ["SqliteRepository"]
