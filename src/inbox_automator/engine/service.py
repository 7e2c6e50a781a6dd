"""Top-level automation entry points used by the CLI and web layer."""

from __future__ import annotations

import logging

from ..core.interfaces import AccountNotFoundError, EmailRepository
from ..core.models import DrainReport, RunSummary
from ..ingestion.sync import SyncOrchestrator
from .queue import QueueWorker
from .retention import RetentionSweeper

LOGGER = logging.getLogger(__name__)


class AutomationService:
    """Coordinate sync, retention sweep and queue draining.

    Every operation is safe to repeat: dedup keeps re-syncs from ingesting a
    message twice and the claim step keeps re-drains from classifying a
    completed message again.
    """

    def __init__(
        self,
        repository: EmailRepository,
        orchestrator: SyncOrchestrator,
        sweeper: RetentionSweeper,
        worker: QueueWorker,
    ) -> None:
        self._repository = repository
        self._orchestrator = orchestrator
        self._sweeper = sweeper
        self._worker = worker

    def trigger_sync(self, account_id: str) -> RunSummary:
        """Sync an account, sweep it, then drain its owner's queue."""
        sync_report = self._orchestrator.sync(account_id)
        account = self._repository.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        sweep_report = self._sweeper.sweep(account)
        drain_report = self._worker.drain(account.user_id)
        return RunSummary(sync=sync_report, sweep=sweep_report, drain=drain_report)

    def drain_queue(self, user_id: str) -> DrainReport:
        """Drain the pending classification queue of a user."""
        return self._worker.drain(user_id)

    def retry_message(self, message_id: str) -> bool:
        """Move a failed message back to pending."""
        return self._worker.retry(message_id)

    def run_all(self) -> dict[str, RunSummary | Exception]:
        """Trigger a sync for every active account, isolating failures."""
        results: dict[str, RunSummary | Exception] = {}
        for account in self._repository.list_active_accounts():
            try:
                results[account.id] = self.trigger_sync(account.id)
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.error("Run failed for account %s: %s", account.id, exc)
                results[account.id] = exc
        return results


__all__ = ["AutomationService"]
