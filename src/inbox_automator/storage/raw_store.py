"""Filesystem storage for raw RFC822 payloads."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from ..core.config import StorageSettings
from ..core.interfaces import RawStore, RawStoreError

LOGGER = logging.getLogger(__name__)


class FileRawStore(RawStore):
    """Store raw messages as ``.eml`` files under a base directory."""

    def __init__(self, settings: StorageSettings) -> None:
        self._base_dir = Path(settings.raw_store_dir)

    @property
    def base_dir(self) -> Path:
        """Return the directory holding stored files."""
        return self._base_dir

    def save(self, content: bytes, key: str) -> str:
        """Write ``content`` atomically under ``key`` and return the absolute path."""
        if not key or Path(key).name != key:
            raise RawStoreError(f"Invalid raw store key: {key!r}")
        target = self._base_dir / key
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            handle, temp_name = tempfile.mkstemp(
                dir=self._base_dir, prefix=".tmp-", suffix=".eml"
            )
            try:
                with os.fdopen(handle, "wb") as stream:
                    stream.write(content)
                os.replace(temp_name, target)
            except BaseException:
                Path(temp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            LOGGER.error("Failed to save raw message %s: %s", target, exc)
            raise RawStoreError(f"Failed to save raw message {key}: {exc}") from exc
        LOGGER.debug("Saved raw message to %s", target)
        return str(target.resolve())

    def read(self, path: str) -> bytes:
        """Return the bytes stored at ``path``."""
        try:
            return Path(path).read_bytes()
        except OSError as exc:
            raise RawStoreError(f"Failed to read raw message {path}: {exc}") from exc

    def delete(self, path: str) -> None:
        """Remove the file at ``path``; missing files are ignored."""
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("Failed to delete raw message %s: %s", path, exc)
            raise RawStoreError(f"Failed to delete raw message {path}: {exc}") from exc
        LOGGER.debug("Deleted raw message %s", path)


__all__ = ["FileRawStore"]
