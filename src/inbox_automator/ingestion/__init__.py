"""Ingestion pipeline components."""

from .filenames import build_raw_filename
from .ingestor import MessageIngestor
from .parser import EmailParser
from .sync import SyncOrchestrator

__all__ = [
    "EmailParser",
    "MessageIngestor",
    "SyncOrchestrator",
    "build_raw_filename",
]
