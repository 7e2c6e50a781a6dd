"""Turn fetched raw messages into pending queue entries."""

from __future__ import annotations

import logging
import uuid

from ..core.interfaces import DuplicateMessageError, EmailRepository, RawStore
from ..core.models import Account, IngestResult, RawMessage, StoredMessage
from .filenames import build_raw_filename
from .parser import EmailParser

LOGGER = logging.getLogger(__name__)


class MessageIngestor:
    """Store raw content and a pending skeleton record for each new message.

    Ingestion never classifies; the queue worker picks the skeleton up later.
    """

    def __init__(
        self,
        repository: EmailRepository,
        raw_store: RawStore,
        parser: EmailParser | None = None,
        *,
        intelligent_rename: bool = False,
    ) -> None:
        self._repository = repository
        self._raw_store = raw_store
        self._parser = parser or EmailParser()
        self._intelligent_rename = intelligent_rename

    def ingest(self, account: Account, raw: RawMessage) -> IngestResult:
        """Ingest ``raw`` for ``account`` unless it is already stored."""
        if self._repository.message_exists(account.id, raw.native_id):
            LOGGER.debug(
                "Message %s already stored for account %s", raw.native_id, account.id
            )
            return IngestResult(message_id=None, skipped=True)

        parsed = self._parser.parse(raw.raw)
        received_at = raw.received_at or parsed.date
        key = build_raw_filename(
            account.id,
            raw.native_id,
            parsed.subject,
            received_at,
            intelligent_rename=self._intelligent_rename,
        )
        raw_path = self._raw_store.save(raw.raw, key)

        message = StoredMessage(
            id=str(uuid.uuid4()),
            account_id=account.id,
            native_id=raw.native_id,
            subject=parsed.subject,
            sender=parsed.sender,
            recipient=parsed.recipient,
            date=parsed.date or received_at,
            body_snippet=parsed.snippet,
            raw_path=raw_path,
        )
        try:
            self._repository.insert_message(message)
        except DuplicateMessageError:
            # A concurrent run stored the same message first; its row owns the
            # file written under the same deterministic key.
            LOGGER.info(
                "Message %s was stored concurrently for account %s",
                raw.native_id,
                account.id,
            )
            return IngestResult(message_id=None, skipped=True)
        except Exception:
            self._discard(raw_path)
            raise

        LOGGER.debug("Ingested message %s as %s", raw.native_id, message.id)
        return IngestResult(message_id=message.id, skipped=False)

    def _discard(self, raw_path: str) -> None:
        try:
            self._raw_store.delete(raw_path)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("Failed to remove orphaned raw file %s: %s", raw_path, exc)


__all__ = ["MessageIngestor"]
