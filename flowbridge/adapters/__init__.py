"""Adapter registry for managing available system adapters."""

from typing import Any

from ..exceptions import AdapterNotFoundError
from .base import BaseAdapter
from .postgresql import PostgreSQLAdapter

# Adapter registry - register new adapters here
_ADAPTER_REGISTRY: dict[str, type[BaseAdapter]] = {}


def register_adapter(name: str, adapter_class: type[BaseAdapter]) -> None:
    """
    Register a new adapter class.

    Args:
        name: Unique identifier for the adapter
        adapter_class: Adapter class to register
    """
    _ADAPTER_REGISTRY[name.lower()] = adapter_class


def get_adapter(name: str) -> type[BaseAdapter]:
    """
    Get an adapter class by name.

    Args:
        name: Adapter identifier

    Returns:
        Adapter class

    Raises:
        AdapterNotFoundError: If adapter is not registered
    """
    key = name.lower()
    if key not in _ADAPTER_REGISTRY:
        available = sorted(_ADAPTER_REGISTRY.keys())
        available_display = ", ".join(available) if available else "none"
        raise AdapterNotFoundError(
            f"Adapter '{name}' is not registered. Available adapters: {available_display}."
        )
    return _ADAPTER_REGISTRY[key]


def list_adapters() -> list[str]:
    """Return list of registered adapter names."""
    return sorted(_ADAPTER_REGISTRY.keys())


def create_adapter(name: str, config: dict[str, Any] | None = None, **dependencies: Any) -> BaseAdapter:
    """Instantiate the adapter registered under ``name``."""

    return get_adapter(name)(config, **dependencies)


register_adapter("postgresql", PostgreSQLAdapter)
register_adapter("postgres", PostgreSQLAdapter)

__all__ = [
    "BaseAdapter",
    "PostgreSQLAdapter",
    "create_adapter",
    "get_adapter",
    "list_adapters",
    "register_adapter",
]
