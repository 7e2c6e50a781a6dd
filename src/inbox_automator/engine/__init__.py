"""Rule evaluation, action execution and queue processing."""

from .actions import ActionExecutor
from .conditions import is_retention_rule, matches
from .events import EventLogger
from .queue import QueueWorker
from .retention import RetentionSweeper
from .scheduler import SyncScheduler
from .service import AutomationService

__all__ = [
    "ActionExecutor",
    "AutomationService",
    "EventLogger",
    "QueueWorker",
    "RetentionSweeper",
    "SyncScheduler",
    "is_retention_rule",
    "matches",
]
