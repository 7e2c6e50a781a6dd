"""Tests for the incremental sync orchestrator."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from inbox_automator.core.config import SyncSettings
from inbox_automator.core.interfaces import (
    AccountNotFoundError,
    ProviderAuthError,
    ProviderError,
)
from inbox_automator.core.models import (
    PROVIDER_GMAIL,
    PROVIDER_IMAP,
    PROVIDER_OUTLOOK,
    RUN_FAILED,
    RUN_SUCCESS,
    SYNC_ERROR,
    SYNC_SUCCESS,
    Account,
)
from inbox_automator.engine import EventLogger
from inbox_automator.ingestion import MessageIngestor, SyncOrchestrator
from inbox_automator.storage import FileRawStore, SqliteRepository

T0 = datetime(2025, 3, 1, 8, 0, tzinfo=UTC)
NOW = T0 + timedelta(days=1)


def _orchestrator(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    connector,
    *,
    now: datetime = NOW,
    settings: SyncSettings | None = None,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        repository,
        {PROVIDER_IMAP: connector, PROVIDER_GMAIL: connector},
        MessageIngestor(repository, raw_store),
        settings or SyncSettings(),
        events=EventLogger(repository),
        clock=lambda: now,
    )


def _save(repository: SqliteRepository, **overrides: object) -> Account:
    values: dict[str, object] = {
        "id": "acct-1",
        "user_id": "user-1",
        "provider": PROVIDER_IMAP,
        "email_address": "me@example.com",
    }
    values.update(overrides)
    return repository.save_account(Account(**values))  # type: ignore[arg-type]


def _fill(connector, raw_email: Callable[..., bytes], *offsets_hours: int) -> None:
    for index, hours in enumerate(offsets_hours, start=1):
        received = T0 + timedelta(hours=hours)
        connector.add(
            str(index), received, raw_email(subject=f"Message {index}", date=received)
        )


def test_gmail_checkpoint_advances_in_epoch_milliseconds(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    connector,
    raw_email: Callable[..., bytes],
) -> None:
    start = datetime.fromtimestamp(1700000000, UTC)
    received = datetime.fromtimestamp(1700000500, UTC)
    _save(repository, provider=PROVIDER_GMAIL, sync_checkpoint="1700000000000")
    connector.add("msg-1", received, raw_email(date=received))
    orchestrator = _orchestrator(
        repository, raw_store, connector, now=start + timedelta(days=1)
    )

    report = orchestrator.sync("acct-1")

    assert report.processed == 1
    assert report.checkpoint == "1700000500000"
    assert connector.list_calls == [(start, start + timedelta(days=1))]
    account = repository.get_account("acct-1")
    assert account is not None
    assert account.sync_checkpoint == "1700000500000"
    assert account.last_sync_status == SYNC_SUCCESS
    logs = repository.list_processing_logs("acct-1")
    assert logs[0].status == RUN_SUCCESS
    assert logs[0].emails_processed == 1


def test_first_sync_without_start_point_lists_everything(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    connector,
    raw_email: Callable[..., bytes],
) -> None:
    _save(repository)
    _fill(connector, raw_email, 5, 1)

    report = _orchestrator(repository, raw_store, connector).sync("acct-1")

    assert connector.list_calls == [(None, None)]
    assert connector.fetched == ["2", "1"]
    assert report.processed == 2
    assert report.checkpoint == (T0 + timedelta(hours=5)).isoformat()


def test_checkpoint_stops_before_earliest_failure(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    connector,
    raw_email: Callable[..., bytes],
) -> None:
    _save(repository, sync_checkpoint=T0.isoformat())
    _fill(connector, raw_email, 1, 2, 3)
    connector.failing_fetches.add("2")
    orchestrator = _orchestrator(repository, raw_store, connector)

    first = orchestrator.sync("acct-1")

    assert (first.processed, first.skipped, first.errors) == (2, 0, 1)
    assert first.checkpoint == (T0 + timedelta(hours=2)).isoformat()
    run_id = repository.list_processing_logs("acct-1")[0].id
    assert "ingest_failed" in [
        event.agent_state for event in repository.list_events(run_id=run_id)
    ]

    connector.failing_fetches.clear()
    second = orchestrator.sync("acct-1")

    assert (second.processed, second.skipped, second.errors) == (1, 1, 0)
    assert second.checkpoint == (T0 + timedelta(hours=3)).isoformat()
    assert connector.fetched == ["1", "2", "3", "2"]


def test_per_run_budget_leaves_remainder_for_next_run(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    connector,
    raw_email: Callable[..., bytes],
) -> None:
    _save(repository, sync_checkpoint=T0.isoformat(), max_messages_per_run=2)
    _fill(connector, raw_email, 1, 2, 3)
    orchestrator = _orchestrator(repository, raw_store, connector)

    first = orchestrator.sync("acct-1")
    second = orchestrator.sync("acct-1")

    assert first.processed == 2
    assert first.checkpoint == (T0 + timedelta(hours=2)).isoformat()
    assert (second.processed, second.skipped) == (1, 1)
    assert connector.fetched == ["1", "2", "3"]


def test_empty_windows_advance_checkpoint_and_stop_at_cap(
    repository: SqliteRepository, raw_store: FileRawStore, connector
) -> None:
    start = NOW - timedelta(days=60)
    _save(repository, sync_start_date=start)

    report = _orchestrator(repository, raw_store, connector).sync("acct-1")

    assert len(connector.list_calls) == 4
    assert report.checkpoint == (start + timedelta(days=28)).isoformat()


def test_empty_windows_never_advance_past_now(
    repository: SqliteRepository, raw_store: FileRawStore, connector
) -> None:
    start = NOW - timedelta(days=10)
    _save(repository, sync_start_date=start)

    report = _orchestrator(repository, raw_store, connector).sync("acct-1")

    assert connector.list_calls == [
        (start, start + timedelta(days=7)),
        (start + timedelta(days=7), NOW),
    ]
    assert report.checkpoint == (start + timedelta(days=7)).isoformat()


def test_checkpoint_never_moves_backwards(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    connector,
    raw_email: Callable[..., bytes],
) -> None:
    later = T0 + timedelta(hours=20)
    _save(
        repository,
        sync_start_date=T0,
        sync_checkpoint=later.isoformat(),
    )
    _fill(connector, raw_email, 1)

    report = _orchestrator(repository, raw_store, connector).sync("acct-1")

    assert report.processed == 1
    assert report.checkpoint == later.isoformat()
    account = repository.get_account("acct-1")
    assert account is not None
    assert account.sync_checkpoint == later.isoformat()


def test_missing_connector_marks_account_failed(
    repository: SqliteRepository, raw_store: FileRawStore, connector
) -> None:
    _save(repository, provider=PROVIDER_OUTLOOK)

    with pytest.raises(ProviderError):
        _orchestrator(repository, raw_store, connector).sync("acct-1")

    account = repository.get_account("acct-1")
    assert account is not None
    assert account.last_sync_status == SYNC_ERROR
    assert "outlook" in (account.last_sync_error or "")
    assert repository.list_processing_logs("acct-1")[0].status == RUN_FAILED


def test_refresh_failure_is_reported_as_auth_error(
    repository: SqliteRepository, raw_store: FileRawStore, connector
) -> None:
    _save(repository)
    connector.refresh_error = RuntimeError("token expired")

    with pytest.raises(ProviderAuthError):
        _orchestrator(repository, raw_store, connector).sync("acct-1")

    assert connector.list_calls == []


def test_unknown_account_raises(
    repository: SqliteRepository, raw_store: FileRawStore, connector
) -> None:
    with pytest.raises(AccountNotFoundError):
        _orchestrator(repository, raw_store, connector).sync("missing")


def test_quiet_period_longer_than_window_cap_is_crossed(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    connector,
    raw_email: Callable[..., bytes],
) -> None:
    _save(repository, sync_checkpoint=T0.isoformat())
    connector.add("old", T0, raw_email(subject="Old", date=T0))
    fresh = T0 + timedelta(days=100)
    connector.add("new", fresh, raw_email(subject="New", date=fresh))
    orchestrator = _orchestrator(
        repository, raw_store, connector, now=T0 + timedelta(days=120)
    )

    checkpoints = [orchestrator.sync("acct-1").checkpoint for _ in range(4)]

    assert checkpoints == [
        (T0 + timedelta(days=days)).isoformat() for days in (35, 63, 91, 119)
    ]
    assert repository.message_exists("acct-1", "old")
    assert repository.message_exists("acct-1", "new")
    assert connector.fetched == ["old", "new"]


def test_concurrent_run_keeps_the_newer_checkpoint(
    repository: SqliteRepository,
    raw_store: FileRawStore,
    connector,
    raw_email: Callable[..., bytes],
) -> None:
    _save(repository, sync_checkpoint=T0.isoformat())
    _fill(connector, raw_email, 1)
    newer = (T0 + timedelta(hours=10)).isoformat()
    original_list = connector.list_message_ids_since

    def _list_while_another_run_finishes(account, since, until):
        repository.advance_checkpoint(account.id, newer, expected=T0.isoformat())
        return original_list(account, since, until)

    connector.list_message_ids_since = _list_while_another_run_finishes

    report = _orchestrator(repository, raw_store, connector).sync("acct-1")

    assert report.processed == 1
    assert report.checkpoint == newer
    account = repository.get_account("acct-1")
    assert account is not None
    assert account.sync_checkpoint == newer
