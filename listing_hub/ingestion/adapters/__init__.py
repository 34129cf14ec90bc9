"""
Adapter Registry Module
=======================

Central registry for source-specific adapters.
Provides factory functions for creating adapters by name.
"""

from __future__ import annotations

from typing import Any, Type

from listing_hub.ingestion.adapters.base import Parser, RawPayload, SourceAdapter
from listing_hub.ingestion.adapters.fixture_adapter import FixtureAdapter
from listing_hub.ingestion.adapters.http_adapter import HttpJsonAdapter


# Registry mapping adapter names to their classes
ADAPTER_REGISTRY: dict[str, Type[SourceAdapter]] = {
    "fixture": FixtureAdapter,
    "http_json": HttpJsonAdapter,
}


def get_adapter(
    adapter_type: str,
    config: dict[str, Any] | None = None,
) -> SourceAdapter | None:
    """
    Get an adapter instance by type name.

    Args:
        adapter_type: Name of the adapter (e.g., "fixture")
        config: Optional custom configuration

    Returns:
        Adapter instance, or None if type not found
    """
    adapter_class = ADAPTER_REGISTRY.get(adapter_type)
    if adapter_class is None:
        return None
    return adapter_class(config)


def register_adapter(name: str, adapter_class: Type[SourceAdapter]) -> None:
    """
    Register a new adapter type.

    Args:
        name: Name to register the adapter under
        adapter_class: Adapter class (must inherit from SourceAdapter)
    """
    if not isinstance(adapter_class, type) or not issubclass(adapter_class, SourceAdapter):
        raise TypeError(f"{adapter_class} must inherit from SourceAdapter")
    ADAPTER_REGISTRY[name] = adapter_class


def list_adapters() -> list[str]:
    """List all registered adapter names."""
    return list(ADAPTER_REGISTRY.keys())


def get_adapter_info(adapter_type: str) -> dict[str, str] | None:
    """
    Get information about an adapter type.

    Args:
        adapter_type: Name of the adapter

    Returns:
        Dict with adapter info, or None if not found
    """
    adapter_class = ADAPTER_REGISTRY.get(adapter_type)
    if adapter_class is None:
        return None

    return {
        "name": adapter_class.ADAPTER_NAME,
        "version": adapter_class.ADAPTER_VERSION,
        "class": adapter_class.__name__,
        "parses": "yes" if issubclass(adapter_class, Parser) else "no",
    }


__all__ = [
    # Registry functions
    "get_adapter",
    "register_adapter",
    "list_adapters",
    "get_adapter_info",
    "ADAPTER_REGISTRY",
    # Base classes
    "SourceAdapter",
    "Parser",
    "RawPayload",
    # Concrete adapters
    "FixtureAdapter",
    "HttpJsonAdapter",
]
