"""Periodic sync of due accounts and pruning of old processing history."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

from ..core.config import SchedulerSettings
from ..core.datetime_utils import utcnow
from ..core.interfaces import EmailRepository
from ..core.models import Account, CleanupReport, RunSummary
from .service import AutomationService

LOGGER = logging.getLogger(__name__)


class SyncScheduler:
    """Run the automation pipeline for users whose sync interval has elapsed.

    A user is due when no successful run started within their
    ``sync_interval_minutes`` (or the configured default). Passes never
    overlap: a pass requested while another is in flight is skipped.
    Housekeeping runs at most once per ``cleanup_interval_hours``.
    """

    def __init__(
        self,
        repository: EmailRepository,
        service: AutomationService,
        settings: SchedulerSettings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._service = service
        self._settings = settings
        self._clock = clock
        self._running = threading.Lock()
        self._last_cleanup: datetime | None = None

    def run_due_syncs(self) -> dict[str, RunSummary | Exception] | None:
        """Sync every account of every due user; ``None`` when a pass is running."""
        if not self._running.acquire(blocking=False):
            LOGGER.debug("Scheduled sync already running, skipping")
            return None
        try:
            return self._sync_due_users()
        finally:
            self._running.release()

    def cleanup_if_due(self) -> CleanupReport | None:
        """Prune old history when the cleanup interval has elapsed."""
        now = self._clock()
        interval = timedelta(hours=self._settings.cleanup_interval_hours)
        if self._last_cleanup is not None and now - self._last_cleanup < interval:
            return None
        report = self._repository.cleanup(
            history_before=now - timedelta(days=self._settings.history_retention_days),
            deleted_messages_before=now
            - timedelta(days=self._settings.deleted_message_retention_days),
        )
        self._last_cleanup = now
        return report

    def tick(self) -> None:
        """Run one scheduler pass."""
        self.run_due_syncs()
        try:
            self.cleanup_if_due()
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error("Cleanup failed: %s", exc)

    def run_forever(self, stop: threading.Event) -> None:
        """Tick every ``tick_seconds`` until ``stop`` is set."""
        LOGGER.info(
            "Starting sync scheduler, checking every %.0fs", self._settings.tick_seconds
        )
        while not stop.is_set():
            self.tick()
            stop.wait(self._settings.tick_seconds)
        LOGGER.info("Sync scheduler stopped")

    # Internal helpers --------------------------------------------------------
    def _sync_due_users(self) -> dict[str, RunSummary | Exception]:
        by_user: dict[str, list[Account]] = {}
        for account in self._repository.list_active_accounts():
            by_user.setdefault(account.user_id, []).append(account)
        if not by_user:
            LOGGER.debug("No active accounts to sync")
            return {}

        now = self._clock()
        results: dict[str, RunSummary | Exception] = {}
        for user_id, accounts in by_user.items():
            if not self._is_due(user_id, now):
                LOGGER.debug("Skipping sync for user %s, last sync was recent", user_id)
                continue
            for account in accounts:
                try:
                    results[account.id] = self._service.trigger_sync(account.id)
                except Exception as exc:  # pylint: disable=broad-except
                    LOGGER.error(
                        "Scheduled sync failed for account %s: %s", account.id, exc
                    )
                    results[account.id] = exc
        return results

    def _is_due(self, user_id: str, now: datetime) -> bool:
        minutes = (
            self._repository.get_sync_interval_minutes(user_id)
            or self._settings.default_sync_interval_minutes
        )
        last_run = self._repository.last_successful_run_started_at(user_id)
        return last_run is None or now - last_run >= timedelta(minutes=minutes)


__all__ = ["SyncScheduler"]
