"""Durable per-run trace written to the processing events table."""

from __future__ import annotations

import logging
from typing import Any

from ..core.interfaces import EmailRepository
from ..core.models import (
    EVENT_ACTION,
    EVENT_ANALYSIS,
    EVENT_ERROR,
    EVENT_INFO,
    ProcessingEvent,
)

LOGGER = logging.getLogger(__name__)


class EventLogger:
    """Append processing events; failures to write are logged and ignored."""

    def __init__(self, repository: EmailRepository) -> None:
        self._repository = repository

    def log(
        self,
        run_id: str | None,
        event_type: str,
        agent_state: str,
        details: dict[str, Any] | None = None,
        *,
        message_id: str | None = None,
    ) -> ProcessingEvent | None:
        """Record an event, returning ``None`` when the write failed."""
        event = ProcessingEvent(
            run_id=run_id,
            event_type=event_type,
            agent_state=agent_state,
            details=dict(details or {}),
            message_id=message_id,
        )
        try:
            return self._repository.record_event(event)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning(
                "Failed to record %s event '%s': %s", event_type, agent_state, exc
            )
            return None

    def info(
        self,
        run_id: str | None,
        state: str,
        details: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> ProcessingEvent | None:
        """Record an informational event."""
        return self.log(run_id, EVENT_INFO, state, details, message_id=message_id)

    def analysis(
        self,
        run_id: str | None,
        message_id: str,
        details: dict[str, Any],
    ) -> ProcessingEvent | None:
        """Record the classification outcome of a message."""
        return self.log(
            run_id, EVENT_ANALYSIS, "classified", details, message_id=message_id
        )

    def action(
        self,
        run_id: str | None,
        message_id: str,
        action: str,
        details: dict[str, Any] | None = None,
    ) -> ProcessingEvent | None:
        """Record an executed action."""
        payload = {"action": action, **(details or {})}
        return self.log(
            run_id, EVENT_ACTION, "acting", payload, message_id=message_id
        )

    def error(
        self,
        run_id: str | None,
        error: BaseException | str,
        context: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> ProcessingEvent | None:
        """Record a failure without interrupting the caller."""
        payload = {"error": str(error), **(context or {})}
        return self.log(run_id, EVENT_ERROR, "error", payload, message_id=message_id)


__all__ = ["EventLogger"]
