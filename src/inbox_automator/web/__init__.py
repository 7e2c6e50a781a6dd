"""Web application entry point for Inbox Automator."""

from .app import create_app

__all__ = ["create_app"]
