"""Core utilities for configuration, logging, and dependency wiring."""

from .config import (
    AppSettings,
    QueueSettings,
    SchedulerSettings,
    SyncSettings,
    load_app_settings,
)
from .container import ServiceContainer
from .logging import configure_logging

__all__ = [
    "AppSettings",
    "QueueSettings",
    "SchedulerSettings",
    "ServiceContainer",
    "SyncSettings",
    "configure_logging",
    "load_app_settings",
]
