"""Transport adapters for external mailbox providers."""

from .imap_client import ImapConnector, ImapError

__all__ = ["ImapConnector", "ImapError"]
