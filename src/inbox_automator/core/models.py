"""Core domain models used across the application."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

PROVIDER_GMAIL = "gmail"
PROVIDER_OUTLOOK = "outlook"
PROVIDER_IMAP = "imap"
PROVIDER_KINDS: tuple[str, ...] = (PROVIDER_GMAIL, PROVIDER_OUTLOOK, PROVIDER_IMAP)

SYNC_IDLE = "idle"
SYNC_SYNCING = "syncing"
SYNC_SUCCESS = "success"
SYNC_ERROR = "error"

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

ACTION_DELETE = "delete"
ACTION_ARCHIVE = "archive"
ACTION_DRAFT = "draft"
ACTION_READ = "read"
ACTION_STAR = "star"
RULE_ACTIONS: tuple[str, ...] = (
    ACTION_DELETE,
    ACTION_ARCHIVE,
    ACTION_DRAFT,
    ACTION_READ,
    ACTION_STAR,
)

RUN_RUNNING = "running"
RUN_SUCCESS = "success"
RUN_FAILED = "failed"

EVENT_INFO = "info"
EVENT_ANALYSIS = "analysis"
EVENT_ACTION = "action"
EVENT_ERROR = "error"


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class Account:
    """One connection to one provider for one user."""

    id: str
    user_id: str
    provider: str
    email_address: str
    sync_checkpoint: str | None = None
    sync_start_date: datetime | None = None
    max_messages_per_run: int | None = None
    last_sync_at: datetime | None = None
    last_sync_status: str = SYNC_IDLE
    last_sync_error: str | None = None
    is_active: bool = True


@dataclass(slots=True)
class MessageRef:
    """Provider listing entry: native id plus the provider timestamp."""

    native_id: str
    received_at: datetime


@dataclass(slots=True)
class RawMessage:
    """Raw RFC822 payload fetched from a provider."""

    native_id: str
    raw: bytes
    received_at: datetime | None = None


@dataclass(slots=True)
class HeaderSignals:
    """Header-derived hints passed to the classifier."""

    importance: str | None = None
    list_unsubscribe: bool = False
    auto_submitted: str | None = None
    mailer: str | None = None


@dataclass(slots=True)
class ParsedMessage:
    """Structured view over a raw message."""

    subject: str | None
    sender: str | None
    sender_email: str | None
    recipient: str | None
    date: datetime | None
    body_text: str
    snippet: str
    signals: HeaderSignals


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class Classification:
    """Typed result returned by the classification service."""

    category: str
    summary: str = ""
    sentiment: str | None = None
    priority: str | None = None
    is_useless: bool = False
    suggested_actions: tuple[str, ...] = ()
    matched_rule_id: str | None = None
    confidence: float = 0.0
    actions_to_execute: tuple[str, ...] = ()
    draft_content: str | None = None
    key_points: tuple[str, ...] = ()
    action_items: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable mapping for persistence."""
        payload = dict(self.raw)
        payload.update(
            {
                "category": self.category,
                "summary": self.summary,
                "sentiment": self.sentiment,
                "priority": self.priority,
                "is_useless": self.is_useless,
                "suggested_actions": list(self.suggested_actions),
                "matched_rule_id": self.matched_rule_id,
                "confidence": self.confidence,
                "actions_to_execute": list(self.actions_to_execute),
                "draft_response": self.draft_content,
                "key_points": list(self.key_points),
                "action_items": list(self.action_items),
            }
        )
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Classification:
        """Rebuild a classification from its persisted mapping."""
        confidence = payload.get("confidence")
        return cls(
            category=str(payload.get("category") or "other"),
            summary=str(payload.get("summary") or ""),
            sentiment=payload.get("sentiment"),
            priority=payload.get("priority"),
            is_useless=bool(payload.get("is_useless", False)),
            suggested_actions=tuple(payload.get("suggested_actions") or ()),
            matched_rule_id=payload.get("matched_rule_id"),
            confidence=float(confidence) if confidence is not None else 0.0,
            actions_to_execute=tuple(payload.get("actions_to_execute") or ()),
            draft_content=payload.get("draft_response"),
            key_points=tuple(payload.get("key_points") or ()),
            action_items=tuple(payload.get("action_items") or ()),
            raw=dict(payload),
        )


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class StoredMessage:
    """One ingested email as persisted in the datastore."""

    id: str
    account_id: str
    native_id: str
    subject: str | None
    sender: str | None
    recipient: str | None
    date: datetime | None
    body_snippet: str | None
    raw_path: str | None
    processing_status: str = STATUS_PENDING
    processing_error: str | None = None
    retry_count: int = 0
    classification: Classification | None = None
    matched_rule_id: str | None = None
    confidence: float | None = None
    actions_taken: tuple[str, ...] = ()
    created_at: datetime | None = None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class Rule:
    """User-authored automation rule."""

    id: str
    user_id: str
    name: str
    condition: dict[str, Any]
    actions: tuple[str, ...]
    instructions: str | None = None
    description: str | None = None
    is_enabled: bool = True
    priority: int = 0
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        unknown = [action for action in self.actions if action not in RULE_ACTIONS]
        if unknown:
            raise ValueError(
                f"Rule '{self.name}' references unknown actions: {', '.join(unknown)}"
            )

    @property
    def is_retention_rule(self) -> bool:
        """Return ``True`` when the rule carries an age threshold."""
        return self.condition.get("older_than_days") is not None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class ProcessingLog:
    """One record per sync or background unit of work."""

    id: str
    user_id: str
    account_id: str | None
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    emails_processed: int = 0
    emails_deleted: int = 0
    emails_drafted: int = 0
    errors: int = 0
    error_message: str | None = None


@dataclass(slots=True)
class ProcessingEvent:
    """Append-only trace entry for a run or message."""

    run_id: str | None
    event_type: str
    agent_state: str
    details: dict[str, Any]
    message_id: str | None = None
    created_at: datetime | None = None
    id: int | None = None


@dataclass(slots=True)
class IngestResult:
    """Outcome of ingesting one raw message."""

    message_id: str | None
    skipped: bool


@dataclass(slots=True)
class SyncReport:
    """Outcome summary for a sync run."""

    processed: int = 0
    skipped: int = 0
    errors: int = 0
    checkpoint: str | None = None


@dataclass(slots=True)
class DrainReport:
    """Outcome summary for one or more queue batches."""

    completed: int = 0
    failed: int = 0
    skipped: int = 0
    actions_executed: int = 0
    deleted: int = 0
    drafted: int = 0
    batches: int = 0

    def merge(self, other: DrainReport) -> None:
        """Accumulate another report into this one."""
        self.completed += other.completed
        self.failed += other.failed
        self.skipped += other.skipped
        self.actions_executed += other.actions_executed
        self.deleted += other.deleted
        self.drafted += other.drafted
        self.batches += other.batches


@dataclass(slots=True)
class SweepReport:
    """Outcome summary for a retention sweep."""

    scanned: int = 0
    matched: int = 0
    actions_executed: int = 0


@dataclass(slots=True)
class CleanupReport:
    """Rows removed by a housekeeping pass."""

    logs_deleted: int = 0
    events_deleted: int = 0
    messages_deleted: int = 0


@dataclass(slots=True)
class RunSummary:
    """Combined result of a triggered sync run."""

    sync: SyncReport
    sweep: SweepReport
    drain: DrainReport


__all__ = [
    "Account",
    "Classification",
    "CleanupReport",
    "DrainReport",
    "HeaderSignals",
    "IngestResult",
    "MessageRef",
    "ParsedMessage",
    "ProcessingEvent",
    "ProcessingLog",
    "RawMessage",
    "Rule",
    "RunSummary",
    "StoredMessage",
    "SweepReport",
    "SyncReport",
]
