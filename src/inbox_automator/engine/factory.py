"""Wiring of collaborators into a ready-to-use automation service."""

from __future__ import annotations

from ..core.config import AppSettings
from ..core.container import ServiceContainer
from ..core.interfaces import EmailRepository
from ..core.models import PROVIDER_GMAIL, PROVIDER_IMAP
from ..ingestion.ingestor import MessageIngestor
from ..ingestion.parser import EmailParser
from ..ingestion.sync import SyncOrchestrator
from ..intelligence.classifier import LlmClassificationService
from ..intelligence.llm import OllamaClient
from ..storage.raw_store import FileRawStore
from ..transport.imap_client import ImapConnector
from .actions import ActionExecutor
from .events import EventLogger
from .queue import QueueWorker
from .retention import RetentionSweeper
from .scheduler import SyncScheduler
from .service import AutomationService


def build_container(settings: AppSettings) -> ServiceContainer:
    """Register the process-wide collaborators for ``settings``."""
    container = ServiceContainer()
    container.register_instance("settings", settings)
    container.register("parser", lambda _c: EmailParser())
    container.register(
        "raw_store", lambda c: FileRawStore(c.resolve("settings").storage)
    )
    container.register(
        "llm_client", lambda c: OllamaClient(c.resolve("settings").llm)
    )
    container.register(
        "classifier", lambda c: LlmClassificationService(c.resolve("llm_client"))
    )
    for provider in (PROVIDER_IMAP, PROVIDER_GMAIL):
        container.register_connector(
            provider, lambda c: ImapConnector(c.resolve("settings").imap)
        )
    return container


def build_automation_service(
    container: ServiceContainer, repository: EmailRepository
) -> AutomationService:
    """Assemble an :class:`AutomationService` bound to ``repository``."""
    settings: AppSettings = container.resolve("settings")
    raw_store = container.resolve("raw_store")
    parser = container.resolve("parser")
    connectors = container.connectors()
    events = EventLogger(repository)

    ingestor = MessageIngestor(
        repository,
        raw_store,
        parser,
        intelligent_rename=settings.storage.intelligent_rename,
    )
    orchestrator = SyncOrchestrator(
        repository, connectors, ingestor, settings.sync, events=events
    )
    executor = ActionExecutor(repository, connectors, raw_store, events)
    sweeper = RetentionSweeper(repository, executor)
    worker = QueueWorker(
        repository,
        container.resolve("classifier"),
        executor,
        raw_store,
        settings.queue,
        parser=parser,
        events=events,
        max_content_chars=settings.llm.max_content_chars,
    )
    return AutomationService(repository, orchestrator, sweeper, worker)


def build_scheduler(
    container: ServiceContainer, repository: EmailRepository
) -> SyncScheduler:
    """Assemble a :class:`SyncScheduler` bound to ``repository``."""
    settings: AppSettings = container.resolve("settings")
    return SyncScheduler(
        repository,
        build_automation_service(container, repository),
        settings.scheduler,
    )


__all__ = ["build_automation_service", "build_container", "build_scheduler"]
