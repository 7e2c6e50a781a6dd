"""Simple service container for dependency management."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

T = TypeVar("T")


class ServiceContainer:
    """Dependency container with lazy singleton semantics.

    Provider connectors are registered per provider kind so the engine can
    look up the connector for an account without knowing concrete classes.
    """

    def __init__(self) -> None:
        """Initialise container storage."""
        self._factories: dict[str, Callable[[ServiceContainer], Any]] = {}
        self._instances: dict[str, Any] = {}
        self._connector_kinds: set[str] = set()

    def register(self, key: str, factory: Callable[[ServiceContainer], T]) -> None:
        """Register a factory under a given key, replacing any cached instance."""
        self._factories[key] = factory
        self._instances.pop(key, None)

    def register_instance(self, key: str, instance: Any) -> None:
        """Register an already built object under ``key``."""
        self._factories[key] = lambda _container: instance
        self._instances[key] = instance

    def register_connector(
        self, provider: str, factory: Callable[[ServiceContainer], T]
    ) -> None:
        """Register the connector factory for a provider kind."""
        self._connector_kinds.add(provider)
        self.register(f"connector:{provider}", factory)

    def resolve(self, key: str) -> Any:
        """Resolve a dependency by key, invoking its factory once."""
        if key in self._instances:
            return self._instances[key]
        if key not in self._factories:
            msg = f"Service '{key}' is not registered"
            raise KeyError(msg)
        instance = self._factories[key](self)
        self._instances[key] = instance
        return instance

    def try_resolve(self, key: str) -> Any | None:
        """Resolve a dependency if available; return None otherwise."""
        try:
            return self.resolve(key)
        except KeyError:
            return None

    def connectors(self) -> dict[str, Any]:
        """Return every registered connector keyed by provider kind."""
        return {
            kind: self.resolve(f"connector:{kind}")
            for kind in sorted(self._connector_kinds)
        }

    def clear(self) -> None:
        """Clear cached singleton instances."""
        self._instances.clear()


__all__ = ["ServiceContainer"]
