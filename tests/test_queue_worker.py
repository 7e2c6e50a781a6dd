"""Tests for the classification queue worker."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from inbox_automator.core.config import QueueSettings
from inbox_automator.core.models import (
    PROVIDER_IMAP,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    Account,
    Classification,
    Rule,
)
from inbox_automator.engine import ActionExecutor, EventLogger, QueueWorker
from inbox_automator.storage import FileRawStore, SqliteRepository

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


def _worker(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    connector,
    classifier,
    *,
    sleeps: list[float] | None = None,
    **settings: object,
) -> QueueWorker:
    values: dict[str, object] = {"batch_size": 5, "batch_delay_seconds": 0.0}
    values.update(settings)
    events = EventLogger(repository)
    executor = ActionExecutor(repository, {PROVIDER_IMAP: connector}, raw_store, events)
    recorded = sleeps if sleeps is not None else []
    return QueueWorker(
        repository,
        classifier,
        executor,
        raw_store,
        QueueSettings.model_validate(values),
        events=events,
        clock=lambda: NOW,
        sleep=recorded.append,
    )


def _rule(repository: SqliteRepository, **overrides: object) -> Rule:
    values: dict[str, object] = {
        "id": "rule-news",
        "user_id": "user-1",
        "name": "Trash newsletters",
        "condition": {"category": "newsletter"},
        "actions": ("delete",),
        "priority": 5,
    }
    values.update(overrides)
    return repository.save_rule(Rule(**values))  # type: ignore[arg-type]


def _classification(confidence: float, **overrides: object) -> Classification:
    values: dict[str, object] = {
        "category": "newsletter",
        "matched_rule_id": "rule-news",
        "confidence": confidence,
    }
    values.update(overrides)
    return Classification(**values)  # type: ignore[arg-type]


def test_confident_match_executes_rule_actions(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    account: Account,
    connector,
    make_classifier,
    ingest_message: Callable[..., str],
) -> None:
    _rule(repository)
    message_id = ingest_message(account, "101", subject="Weekly news")
    stored = repository.get_message(message_id)
    assert stored is not None and stored.raw_path is not None
    raw_path = stored.raw_path
    classifier = make_classifier(_classification(0.75))

    report = _worker(repository, raw_store, connector, classifier).drain("user-1")

    assert (report.completed, report.actions_executed, report.deleted) == (1, 1, 1)
    assert connector.actions == [("delete", "101")]
    stored = repository.get_message(message_id)
    assert stored is not None
    assert stored.processing_status == STATUS_COMPLETED
    assert stored.actions_taken == ("delete",)
    assert stored.raw_path is None
    assert not Path(raw_path).exists()
    assert "Rule 1 [ID: rule-news]" in classifier.calls[0][2]
    assert classifier.calls[0][1]["subject"] == "Weekly news"


def test_low_confidence_match_is_classified_without_actions(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    account: Account,
    connector,
    make_classifier,
    ingest_message: Callable[..., str],
) -> None:
    _rule(repository)
    message_id = ingest_message(account, "101")
    classifier = make_classifier(_classification(0.65))

    report = _worker(repository, raw_store, connector, classifier).drain("user-1")

    assert report.completed == 1
    assert report.actions_executed == 0
    assert connector.actions == []
    stored = repository.get_message(message_id)
    assert stored is not None
    assert stored.processing_status == STATUS_COMPLETED
    assert stored.matched_rule_id == "rule-news"
    assert stored.confidence == pytest.approx(0.65)
    assert stored.actions_taken == ()


def test_rule_condition_must_hold_for_suggested_rule(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    account: Account,
    connector,
    make_classifier,
    ingest_message: Callable[..., str],
) -> None:
    _rule(repository, condition={"sender_domain": "news.example.org"})
    ingest_message(account, "101")
    classifier = make_classifier(_classification(0.95))

    report = _worker(repository, raw_store, connector, classifier).drain("user-1")

    assert report.completed == 1
    assert connector.actions == []


def test_draft_action_uses_classifier_reply(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    account: Account,
    connector,
    make_classifier,
    ingest_message: Callable[..., str],
) -> None:
    _rule(
        repository,
        id="rule-support",
        condition={"category": "support"},
        actions=("draft", "star"),
        instructions="Reply politely",
    )
    ingest_message(account, "101")
    classifier = make_classifier(
        _classification(
            0.9,
            category="support",
            matched_rule_id="rule-support",
            draft_content="Thanks, we are on it.",
        )
    )

    report = _worker(repository, raw_store, connector, classifier).drain("user-1")

    assert report.drafted == 1
    assert report.actions_executed == 2
    assert connector.drafts == [("101", "Thanks, we are on it.")]
    assert ("star", "101") in connector.actions


def test_unusable_classification_marks_failed_and_retry_requeues(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    account: Account,
    connector,
    make_classifier,
    ingest_message: Callable[..., str],
) -> None:
    message_id = ingest_message(account, "101")
    classifier = make_classifier(None)
    worker = _worker(repository, raw_store, connector, classifier)

    report = worker.drain("user-1")

    assert report.failed == 1
    stored = repository.get_message(message_id)
    assert stored is not None
    assert stored.processing_status == STATUS_FAILED
    assert stored.retry_count == 1
    assert stored.processing_error

    classifier.result = _classification(0.1)
    assert worker.retry(message_id) is True
    assert worker.retry(message_id) is False
    retried = worker.drain("user-1")

    assert retried.completed == 1
    stored = repository.get_message(message_id)
    assert stored is not None
    assert stored.processing_status == STATUS_COMPLETED


def test_second_drain_is_a_no_op(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    account: Account,
    connector,
    make_classifier,
    ingest_message: Callable[..., str],
) -> None:
    _rule(repository)
    ingest_message(account, "101")
    classifier = make_classifier(_classification(0.9))
    worker = _worker(repository, raw_store, connector, classifier)

    worker.drain("user-1")
    again = worker.drain("user-1")

    assert (again.completed, again.failed, again.batches) == (0, 0, 0)
    assert len(classifier.calls) == 1
    assert connector.actions == [("delete", "101")]


def test_drain_processes_backlog_in_batches(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    account: Account,
    connector,
    make_classifier,
    ingest_message: Callable[..., str],
) -> None:
    for index in range(5):
        ingest_message(account, str(index), subject=f"Message {index}")
    classifier = make_classifier(_classification(0.0, matched_rule_id=None))
    sleeps: list[float] = []
    worker = _worker(
        repository,
        raw_store,
        connector,
        classifier,
        sleeps=sleeps,
        batch_size=2,
        batch_delay_seconds=0.5,
    )

    report = worker.drain("user-1")

    assert report.batches == 3
    assert report.completed == 5
    assert sleeps == [0.5, 0.5, 0.5]
    assert [call[1]["subject"] for call in classifier.calls] == [
        f"Message {index}" for index in range(5)
    ]


def test_batch_cap_leaves_remaining_messages_pending(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    account: Account,
    connector,
    make_classifier,
    ingest_message: Callable[..., str],
) -> None:
    for index in range(5):
        ingest_message(account, str(index))
    classifier = make_classifier(_classification(0.0, matched_rule_id=None))
    worker = _worker(
        repository, raw_store, connector, classifier, batch_size=2, max_batches=2
    )

    report = worker.drain("user-1")

    assert report.batches == 2
    assert report.completed == 4
    assert repository.count_messages_by_status(account.id) == {
        STATUS_COMPLETED: 4,
        STATUS_PENDING: 1,
    }


def test_stale_claims_are_requeued_before_draining(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    account: Account,
    connector,
    make_classifier,
    ingest_message: Callable[..., str],
) -> None:
    message_id = ingest_message(account, "101")
    assert repository.claim_message(message_id, NOW - timedelta(hours=2))
    classifier = make_classifier(_classification(0.0, matched_rule_id=None))

    report = _worker(repository, raw_store, connector, classifier).drain("user-1")

    assert report.completed == 1


def test_missing_raw_content_fails_message(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    account: Account,
    connector,
    make_classifier,
    ingest_message: Callable[..., str],
) -> None:
    message_id = ingest_message(account, "101")
    stored = repository.get_message(message_id)
    assert stored is not None and stored.raw_path is not None
    Path(stored.raw_path).unlink()
    classifier = make_classifier(_classification(0.9))

    report = _worker(repository, raw_store, connector, classifier).drain("user-1")

    assert report.failed == 1
    assert classifier.calls == []
    events = repository.list_events(message_id=message_id)
    assert events[-1].event_type == "error"
