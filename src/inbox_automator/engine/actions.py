"""Execute rule actions against provider accounts."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from ..core.interfaces import EmailRepository, ProviderConnector, RawStore
from ..core.models import (
    ACTION_ARCHIVE,
    ACTION_DELETE,
    ACTION_DRAFT,
    ACTION_READ,
    ACTION_STAR,
    Account,
    StoredMessage,
)
from .events import EventLogger

LOGGER = logging.getLogger(__name__)


class ActionExecutor:
    """Apply one action to one message and record it in the action history."""

    def __init__(
        self,
        repository: EmailRepository,
        connectors: Mapping[str, ProviderConnector],
        raw_store: RawStore,
        events: EventLogger | None = None,
    ) -> None:
        self._repository = repository
        self._connectors = dict(connectors)
        self._raw_store = raw_store
        self._events = events or EventLogger(repository)

    def execute(
        self,
        account: Account,
        message: StoredMessage,
        action: str,
        draft_content: str | None = None,
        *,
        run_id: str | None = None,
    ) -> bool:
        """Run ``action`` and return ``True`` when it succeeded.

        Provider failures are logged and reported as ``False``; they never
        propagate to the caller.
        """
        # pylint: disable=too-many-arguments
        if action == ACTION_DRAFT and not (draft_content and draft_content.strip()):
            LOGGER.info(
                "Skipping draft for message %s: no draft content", message.id
            )
            return False

        try:
            connector = self._connectors[account.provider]
            self._dispatch(connector, account, message, action, draft_content)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "Action %s failed for message %s: %s", action, message.id, exc
            )
            self._events.error(
                run_id,
                exc,
                {"action": action, "native_id": message.native_id},
                message_id=message.id,
            )
            return False

        if action == ACTION_DELETE and message.raw_path:
            self._remove_local_copy(message, message.raw_path)

        self._repository.append_action(message.id, action)
        if action not in message.actions_taken:
            message.actions_taken = (*message.actions_taken, action)
        self._events.action(
            run_id, message.id, action, {"native_id": message.native_id}
        )
        LOGGER.info("Executed %s on message %s", action, message.id)
        return True

    @staticmethod
    def _dispatch(
        connector: ProviderConnector,
        account: Account,
        message: StoredMessage,
        action: str,
        draft_content: str | None,
    ) -> None:
        # pylint: disable=too-many-arguments
        native_id = message.native_id
        if action == ACTION_DELETE:
            connector.trash(account, native_id)
        elif action == ACTION_ARCHIVE:
            connector.archive(account, native_id)
        elif action == ACTION_READ:
            connector.mark_read(account, native_id)
        elif action == ACTION_STAR:
            connector.star(account, native_id)
        elif action == ACTION_DRAFT:
            connector.create_draft(account, native_id, draft_content or "")
        else:
            raise ValueError(f"Unsupported action '{action}'")

    def _remove_local_copy(self, message: StoredMessage, raw_path: str) -> None:
        try:
            self._raw_store.delete(raw_path)
            self._repository.clear_raw_path(message.id)
            message.raw_path = None
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning(
                "Deleted message %s remotely but kept local copy: %s", message.id, exc
            )


__all__ = ["ActionExecutor"]
