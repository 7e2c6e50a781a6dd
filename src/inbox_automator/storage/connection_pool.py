"""
Repository Connection Pool

Hands out :class:`SqliteRepository` instances to concurrent web requests.
Each repository owns its own SQLite connection, so a request that runs engine
work in a worker thread never shares a connection with another request.

Features:
- Pre-created repositories (default: 5)
- Health check on checkout with transparent replacement
- Synchronous and asynchronous acquisition
- Graceful shutdown with connection cleanup
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from queue import Empty, Queue
from threading import Lock
from types import TracebackType

from ..core.config import StorageSettings
from .sqlite import SqliteRepository

LOGGER = logging.getLogger(__name__)


class ConnectionPool:
    """Thread-safe pool of :class:`SqliteRepository` instances."""

    def __init__(self, settings: StorageSettings, pool_size: int = 5) -> None:
        """
        Initialize the pool.

        Args:
            settings: Storage settings containing the database path
            pool_size: Number of repositories kept in the pool (default: 5)
        """
        self.settings = settings
        self.pool_size = pool_size
        self._pool: Queue[SqliteRepository] = Queue(maxsize=pool_size)
        self._lock = Lock()
        self._created_count = 0
        self._closed = False

        for _ in range(pool_size):
            self._pool.put(self._new_repository())

        LOGGER.info("Initialized connection pool with %d connections", pool_size)

    def _new_repository(self) -> SqliteRepository:
        with self._lock:
            if self._closed:
                raise RuntimeError("Connection pool is closed")
            repository = SqliteRepository(self.settings)
            self._created_count += 1
            LOGGER.debug("Created connection #%d", self._created_count)
            return repository

    def _checked(self, repository: SqliteRepository) -> SqliteRepository:
        """Return ``repository`` or a fresh replacement when it is unhealthy."""
        if repository.ping():
            return repository
        LOGGER.warning("Connection validation failed, creating a new connection")
        repository.close()
        return self._new_repository()

    @contextmanager
    def acquire(self, timeout: float = 10.0) -> Iterator[SqliteRepository]:
        """
        Acquire a repository from the pool (synchronous).

        Raises:
            RuntimeError: If the pool is closed
            TimeoutError: If no repository is available within ``timeout``
        """
        if self._closed:
            raise RuntimeError("Connection pool is closed")

        try:
            repository = self._pool.get(timeout=timeout)
        except Empty as exc:
            raise TimeoutError(
                f"Could not acquire connection within {timeout} seconds"
            ) from exc

        repository = self._checked(repository)
        try:
            yield repository
        finally:
            self._pool.put(repository)

    @asynccontextmanager
    async def acquire_async(
        self, timeout: float = 10.0
    ) -> AsyncIterator[SqliteRepository]:
        """Acquire a repository without blocking the event loop."""
        if self._closed:
            raise RuntimeError("Connection pool is closed")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                repository = self._pool.get_nowait()
                break
            except Empty:
                if loop.time() >= deadline:
                    raise TimeoutError(
                        f"Could not acquire connection within {timeout} seconds"
                    ) from None
                await asyncio.sleep(0.01)

        repository = self._checked(repository)
        try:
            yield repository
        finally:
            self._pool.put(repository)

    def close(self) -> None:
        """Close all pooled repositories."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

            closed_count = 0
            while True:
                try:
                    repository = self._pool.get_nowait()
                except Empty:
                    break
                repository.close()
                closed_count += 1

            LOGGER.info("Closed connection pool (%d connections closed)", closed_count)

    def __enter__(self) -> ConnectionPool:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit context manager scope and close the pool."""
        self.close()

    @property
    def size(self) -> int:
        """Number of repositories currently idle in the pool."""
        return self._pool.qsize()

    @property
    def is_closed(self) -> bool:
        """Whether :meth:`close` has been called."""
        return self._closed


__all__ = ["ConnectionPool"]
