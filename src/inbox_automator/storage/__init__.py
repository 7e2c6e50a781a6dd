"""Persistence layer: SQLite datastore and raw message files."""

from .raw_store import FileRawStore
from .sqlite import SqliteRepository

__all__ = ["FileRawStore", "SqliteRepository"]
