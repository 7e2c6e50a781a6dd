"""Age-based retention sweep over already classified messages."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from ..core.datetime_utils import utcnow
from ..core.interfaces import EmailRepository
from ..core.models import Account, SweepReport
from .actions import ActionExecutor
from .conditions import is_retention_rule, matches

LOGGER = logging.getLogger(__name__)


class RetentionSweeper:
    """Apply retention rules; the first matching rule wins per message."""

    def __init__(
        self,
        repository: EmailRepository,
        executor: ActionExecutor,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._clock = clock

    def sweep(self, account: Account, *, run_id: str | None = None) -> SweepReport:
        """Run enabled retention rules over the account's untouched messages."""
        report = SweepReport()
        rules = [
            rule
            for rule in self._repository.list_rules(account.user_id)
            if rule.is_enabled and is_retention_rule(rule)
        ]
        if not rules:
            return report

        now = self._clock()
        for message in self._repository.list_sweep_candidates(account.id):
            report.scanned += 1
            rule = next(
                (
                    candidate
                    for candidate in rules
                    if matches(
                        message, message.classification, candidate.condition, now=now
                    )
                ),
                None,
            )
            if rule is None:
                continue
            report.matched += 1
            LOGGER.info("Retention rule %s matched message %s", rule.id, message.id)
            draft = (
                message.classification.draft_content
                if message.classification
                else None
            )
            for action in rule.actions:
                if self._executor.execute(
                    account, message, action, draft, run_id=run_id
                ):
                    report.actions_executed += 1

        LOGGER.info(
            "Retention sweep for account %s: %d scanned, %d matched",
            account.id,
            report.scanned,
            report.matched,
        )
        return report


__all__ = ["RetentionSweeper"]
