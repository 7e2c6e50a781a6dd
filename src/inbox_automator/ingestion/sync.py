"""Incremental, checkpointed synchronisation of provider accounts."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from ..core.config import SyncSettings
from ..core.datetime_utils import (
    decode_checkpoint,
    encode_checkpoint,
    ensure_utc,
    to_utc,
    utcnow,
)
from ..core.interfaces import (
    AccountNotFoundError,
    EmailRepository,
    ProviderAuthError,
    ProviderConnector,
    ProviderError,
)
from ..core.models import (
    RUN_FAILED,
    RUN_RUNNING,
    RUN_SUCCESS,
    SYNC_ERROR,
    SYNC_SUCCESS,
    SYNC_SYNCING,
    Account,
    MessageRef,
    ProcessingLog,
    SyncReport,
)
from .ingestor import MessageIngestor

if TYPE_CHECKING:
    from ..engine.events import EventLogger

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _RunState:
    """Mutable bookkeeping for a single sync run."""

    budget: int
    report: SyncReport
    handled_max: datetime | None = None
    earliest_failure: datetime | None = None
    scanned_until: datetime | None = None

    @property
    def exhausted(self) -> bool:
        return self.budget <= 0


class SyncOrchestrator:
    """Pull new messages for one account into the local queue."""

    def __init__(
        self,
        repository: EmailRepository,
        connectors: Mapping[str, ProviderConnector],
        ingestor: MessageIngestor,
        settings: SyncSettings,
        *,
        events: EventLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        # pylint: disable=too-many-arguments
        self._repository = repository
        self._connectors = dict(connectors)
        self._ingestor = ingestor
        self._settings = settings
        self._events = events
        self._clock = clock

    def sync(self, account_id: str) -> SyncReport:
        """Run one incremental sync for ``account_id``."""
        account = self._repository.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")

        log = self._repository.create_processing_log(
            ProcessingLog(
                id=str(uuid.uuid4()),
                user_id=account.user_id,
                account_id=account.id,
                status=RUN_RUNNING,
                started_at=self._clock(),
            )
        )
        self._repository.set_sync_status(account.id, SYNC_SYNCING)
        self._event(log.id, "info", "syncing", {"account_id": account.id})
        LOGGER.info("Starting sync for account %s (%s)", account.id, account.provider)

        try:
            connector = self._connector_for(account)
            account = self._refresh(connector, account)
            report = self._run(account, connector, log.id)
        except Exception as exc:
            LOGGER.error("Sync failed for account %s: %s", account.id, exc)
            self._repository.set_sync_status(
                account.id, SYNC_ERROR, error=str(exc), synced_at=self._clock()
            )
            log.status = RUN_FAILED
            log.completed_at = self._clock()
            log.error_message = str(exc)
            log.errors += 1
            self._repository.finish_processing_log(log)
            self._event(log.id, "error", "sync_failed", {"error": str(exc)})
            raise

        self._repository.set_sync_status(
            account.id, SYNC_SUCCESS, synced_at=self._clock()
        )
        log.status = RUN_SUCCESS
        log.completed_at = self._clock()
        log.emails_processed = report.processed
        log.errors = report.errors
        self._repository.finish_processing_log(log)
        self._event(
            log.id,
            "info",
            "sync_completed",
            {
                "processed": report.processed,
                "skipped": report.skipped,
                "errors": report.errors,
                "checkpoint": report.checkpoint,
            },
        )
        LOGGER.info(
            "Sync finished for account %s: %d processed, %d skipped, %d errors",
            account.id,
            report.processed,
            report.skipped,
            report.errors,
        )
        return report

    # Internal helpers --------------------------------------------------------
    def _connector_for(self, account: Account) -> ProviderConnector:
        try:
            return self._connectors[account.provider]
        except KeyError as exc:
            raise ProviderError(
                f"No connector registered for provider '{account.provider}'"
            ) from exc

    @staticmethod
    def _refresh(connector: ProviderConnector, account: Account) -> Account:
        try:
            return connector.refresh_token_if_needed(account)
        except ProviderAuthError:
            raise
        except Exception as exc:
            raise ProviderAuthError(
                f"Could not refresh credentials for account {account.id}: {exc}"
            ) from exc

    def _run(
        self, account: Account, connector: ProviderConnector, run_id: str
    ) -> SyncReport:
        prior = decode_checkpoint(account.provider, account.sync_checkpoint)
        start = ensure_utc(account.sync_start_date) or prior
        state = _RunState(
            budget=account.max_messages_per_run or self._settings.default_max_messages,
            report=SyncReport(checkpoint=account.sync_checkpoint),
        )

        if start is None:
            refs = connector.list_message_ids_since(account, None, None)
            self._handle_refs(account, connector, refs, state, run_id)
        else:
            self._walk_windows(account, connector, start, state, run_id)

        new_checkpoint = self._next_checkpoint(state)
        if new_checkpoint is not None and (prior is None or new_checkpoint > prior):
            encoded = encode_checkpoint(account.provider, new_checkpoint)
            if self._repository.advance_checkpoint(
                account.id, encoded, expected=account.sync_checkpoint
            ):
                state.report.checkpoint = encoded
            else:
                current = self._repository.get_account(account.id)
                if current is not None:
                    state.report.checkpoint = current.sync_checkpoint
        return state.report

    def _walk_windows(
        self,
        account: Account,
        connector: ProviderConnector,
        start: datetime,
        state: _RunState,
        run_id: str,
    ) -> None:
        # pylint: disable=too-many-arguments
        now = self._clock()
        width = timedelta(days=self._settings.window_days)
        window_start = start
        empty_windows = 0

        while window_start < now and not state.exhausted:
            window_end = min(window_start + width, now)
            refs = connector.list_message_ids_since(account, window_start, window_end)
            LOGGER.debug(
                "Window %s..%s returned %d messages",
                window_start.isoformat(),
                window_end.isoformat(),
                len(refs),
            )
            if refs:
                if not self._handle_refs(account, connector, refs, state, run_id):
                    break
            else:
                empty_windows += 1
            # Windows ending at "now" may still receive mail.
            if window_end < now:
                state.scanned_until = window_end
            if empty_windows >= self._settings.max_empty_windows:
                LOGGER.info(
                    "Stopping after %d empty windows for account %s",
                    empty_windows,
                    account.id,
                )
                break
            window_start = window_end

    def _handle_refs(
        self,
        account: Account,
        connector: ProviderConnector,
        refs: list[MessageRef],
        state: _RunState,
        run_id: str,
    ) -> bool:
        """Ingest ``refs`` oldest first; ``False`` when the budget cut the batch."""
        # pylint: disable=too-many-arguments
        ordered = sorted(refs, key=lambda ref: (to_utc(ref.received_at), ref.native_id))
        for ref in ordered:
            received_at = to_utc(ref.received_at)

            if self._repository.message_exists(account.id, ref.native_id):
                state.report.skipped += 1
                state.handled_max = _later(state.handled_max, received_at)
                continue
            if state.exhausted:
                return False

            state.budget -= 1
            try:
                raw = connector.fetch_raw(account, ref.native_id)
                if raw.received_at is None:
                    raw.received_at = received_at
                result = self._ingestor.ingest(account, raw)
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.warning(
                    "Failed to ingest message %s for account %s: %s",
                    ref.native_id,
                    account.id,
                    exc,
                )
                state.report.errors += 1
                earliest = state.earliest_failure
                if earliest is None or received_at < earliest:
                    state.earliest_failure = received_at
                self._event(
                    run_id,
                    "error",
                    "ingest_failed",
                    {"native_id": ref.native_id, "error": str(exc)},
                )
                continue

            if result.skipped:
                state.report.skipped += 1
            else:
                state.report.processed += 1
            state.handled_max = _later(state.handled_max, received_at)
        return True

    @staticmethod
    def _next_checkpoint(state: _RunState) -> datetime | None:
        candidate = state.handled_max
        if state.scanned_until is not None:
            candidate = _later(candidate, state.scanned_until)
        if state.earliest_failure is not None:
            if candidate is None or candidate > state.earliest_failure:
                candidate = state.earliest_failure
        return candidate

    def _event(
        self, run_id: str, event_type: str, state: str, details: dict[str, object]
    ) -> None:
        if self._events is not None:
            self._events.log(run_id, event_type, state, details)


def _later(current: datetime | None, candidate: datetime) -> datetime:
    return candidate if current is None or candidate > current else current


__all__ = ["SyncOrchestrator"]
