"""Batch-wise classification of pending messages."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from ..core.config import QueueSettings
from ..core.datetime_utils import serialize_datetime, utcnow
from ..core.interfaces import (
    ClassificationError,
    ClassificationService,
    EmailRepository,
    RawStore,
    RawStoreError,
)
from ..core.models import (
    ACTION_DELETE,
    ACTION_DRAFT,
    STATUS_PENDING,
    Account,
    Classification,
    DrainReport,
    ParsedMessage,
    Rule,
    StoredMessage,
)
from ..ingestion.parser import EmailParser
from ..intelligence.content import prepare_for_classification
from ..intelligence.prompts import compile_rules
from .actions import ActionExecutor
from .conditions import matches
from .events import EventLogger

LOGGER = logging.getLogger(__name__)

_OUTCOME_COMPLETED = "completed"
_OUTCOME_FAILED = "failed"
_OUTCOME_SKIPPED = "skipped"


class QueueWorker:
    """Claim, classify and act on pending messages for one user."""

    def __init__(
        self,
        repository: EmailRepository,
        classifier: ClassificationService,
        executor: ActionExecutor,
        raw_store: RawStore,
        settings: QueueSettings,
        *,
        parser: EmailParser | None = None,
        events: EventLogger | None = None,
        max_content_chars: int = 2500,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        # pylint: disable=too-many-arguments
        self._repository = repository
        self._classifier = classifier
        self._executor = executor
        self._raw_store = raw_store
        self._settings = settings
        self._parser = parser or EmailParser()
        self._events = events or EventLogger(repository)
        self._max_content_chars = max_content_chars
        self._clock = clock
        self._sleep = sleep

    def drain(self, user_id: str) -> DrainReport:
        """Process batches until the backlog is empty or the batch cap is hit."""
        stale_before = self._clock() - timedelta(
            minutes=self._settings.stale_claim_minutes
        )
        self._repository.requeue_stale_claims(user_id, stale_before)

        total = DrainReport()
        while True:
            batch = self.drain_batch(user_id)
            total.merge(batch)
            if batch.batches == 0:
                break
            max_batches = self._settings.max_batches
            if max_batches is not None and total.batches >= max_batches:
                LOGGER.info("Batch cap %d reached for user %s", max_batches, user_id)
                break
            if self._settings.batch_delay_seconds > 0:
                self._sleep(self._settings.batch_delay_seconds)
        return total

    def drain_batch(self, user_id: str) -> DrainReport:
        """Process up to one batch of pending messages, oldest first."""
        report = DrainReport()
        pending = self._repository.list_pending_messages(
            user_id, self._settings.batch_size
        )
        if not pending:
            return report
        report.batches = 1

        rules = self._repository.list_rules(user_id)
        compiled = compile_rules(rules)
        rules_by_id = {rule.id: rule for rule in rules}
        accounts: dict[str, Account | None] = {}

        for message in pending:
            account_id = message.account_id
            if account_id not in accounts:
                accounts[account_id] = self._repository.get_account(account_id)
            outcome = self._process(
                message, accounts[account_id], compiled, rules_by_id, report
            )
            if outcome == _OUTCOME_COMPLETED:
                report.completed += 1
            elif outcome == _OUTCOME_FAILED:
                report.failed += 1
            else:
                report.skipped += 1

        LOGGER.info(
            "Batch for user %s: %d completed, %d failed, %d skipped",
            user_id,
            report.completed,
            report.failed,
            report.skipped,
        )
        return report

    def retry(self, message_id: str) -> bool:
        """Return a failed message to the pending queue."""
        reset = self._repository.reset_failed(message_id)
        if reset:
            LOGGER.info("Message %s re-queued for classification", message_id)
            self._events.info(None, "retry_queued", message_id=message_id)
        return reset

    # Internal helpers --------------------------------------------------------
    def _process(
        self,
        message: StoredMessage,
        account: Account | None,
        compiled_rules: str,
        rules_by_id: dict[str, Rule],
        report: DrainReport,
    ) -> str:
        # pylint: disable=too-many-arguments
        current = self._repository.get_message(message.id)
        if current is None or current.processing_status != STATUS_PENDING:
            return _OUTCOME_SKIPPED
        if not self._repository.claim_message(message.id, self._clock()):
            LOGGER.debug("Message %s was claimed by another worker", message.id)
            return _OUTCOME_SKIPPED

        try:
            if account is None:
                raise ClassificationError(f"Account {message.account_id} not found")
            parsed = self._load(current)
            clean_text = prepare_for_classification(
                parsed.body_text, self._max_content_chars
            )
            classification = self._classifier.classify(
                clean_text, _build_context(current, parsed), compiled_rules
            )
            if classification is None:
                raise ClassificationError("Classifier returned no usable result")

            self._repository.save_classification(current.id, classification)
            self._events.analysis(
                None,
                current.id,
                {
                    "category": classification.category,
                    "matched_rule_id": classification.matched_rule_id,
                    "confidence": classification.confidence,
                },
            )
            self._apply_rule(
                account, current, classification, rules_by_id, clean_text, report
            )
            self._repository.mark_completed(current.id)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("Processing failed for message %s: %s", message.id, exc)
            self._repository.mark_failed(message.id, str(exc))
            self._events.error(None, exc, {"stage": "classification"}, message.id)
            return _OUTCOME_FAILED
        return _OUTCOME_COMPLETED

    def _load(self, message: StoredMessage) -> ParsedMessage:
        if not message.raw_path:
            raise RawStoreError(f"Message {message.id} has no stored content")
        return self._parser.parse(self._raw_store.read(message.raw_path))

    def _apply_rule(
        self,
        account: Account,
        message: StoredMessage,
        classification: Classification,
        rules_by_id: dict[str, Rule],
        body: str,
        report: DrainReport,
    ) -> None:
        # pylint: disable=too-many-arguments
        if classification.confidence < self._settings.confidence_threshold:
            return
        rule = rules_by_id.get(classification.matched_rule_id or "")
        if rule is None or not rule.is_enabled:
            return
        if not matches(
            message, classification, rule.condition, now=self._clock(), body=body
        ):
            LOGGER.info(
                "Rule %s suggested for message %s but its condition does not hold",
                rule.id,
                message.id,
            )
            return

        for action in rule.actions:
            executed = self._executor.execute(
                account, message, action, classification.draft_content
            )
            if not executed:
                continue
            report.actions_executed += 1
            if action == ACTION_DELETE:
                report.deleted += 1
            elif action == ACTION_DRAFT:
                report.drafted += 1


def _build_context(message: StoredMessage, parsed: ParsedMessage) -> dict[str, object]:
    signals = parsed.signals
    return {
        "subject": message.subject or parsed.subject,
        "sender": message.sender or parsed.sender,
        "date": serialize_datetime(message.date or parsed.date),
        "importance": signals.importance,
        "list_unsubscribe": signals.list_unsubscribe,
        "auto_submitted": signals.auto_submitted,
        "mailer": signals.mailer,
    }


__all__ = ["QueueWorker"]
