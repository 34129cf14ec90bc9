"""
Base Adapter Module
===================

Abstract interfaces for the per-source collaborators of the pipeline:
- SourceAdapter lists item keys and fetches raw payloads
- Parser turns a raw payload into a validated NormalizedRecord

Scraping and parsing logic lives entirely behind these interfaces; the
ingestion core only sees RawPayload and NormalizedRecord.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any

from listing_hub.core.schema import NormalizedRecord


@dataclass
class RawPayload:
    """A payload fetched from a source, before any parsing."""

    external_id: str
    content: bytes | str | dict[str, Any] | list[Any]
    url: str | None = None
    mime_type: str = "application/json"
    metadata: dict[str, Any] = field(default_factory=dict)


class SourceAdapter(ABC):
    """
    Abstract base class for source-specific adapters.

    Subclasses must implement:
    - list_items: Return the item keys on one page of the source's index
    - fetch_item: Fetch the raw payload of one item

    Adapters that hold expensive resources (browser sessions, HTTP
    clients) acquire them in open() and release them in close(). The
    pipeline calls close() on every exit path.
    """

    # Adapter identification (override in subclasses)
    ADAPTER_NAME: str = "base"
    ADAPTER_VERSION: str = "1.0.0"

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        """
        Initialize the adapter.

        Args:
            config: Optional custom configuration from sources.yaml
        """
        self.config = config or {}

    @abstractmethod
    async def list_items(self, page: int) -> list[str]:
        """
        List item keys on one page of the source index.

        Args:
            page: 1-based page number

        Returns:
            External IDs on the page (empty when past the last page)
        """
        pass

    @abstractmethod
    async def fetch_item(self, external_id: str) -> RawPayload:
        """
        Fetch the raw payload of one item.

        Args:
            external_id: Source-scoped item key

        Returns:
            RawPayload

        Raises:
            ItemNotFoundError: If the source has no such item
            NetworkError: On transport or HTTP failures
        """
        pass

    async def page_count(self) -> int | None:
        """
        Number of pages in the source index.

        Returns None when the source cannot tell, which disables tail
        walking in backfill mode.
        """
        return None

    async def open(self) -> None:
        """Acquire resources needed for a run."""
        return None

    async def close(self) -> None:
        """Release resources acquired in open()."""
        return None

    async def __aenter__(self) -> SourceAdapter:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def get_info(self) -> dict[str, str]:
        """Get adapter information."""
        return {
            "name": self.ADAPTER_NAME,
            "version": self.ADAPTER_VERSION,
            "class": self.__class__.__name__,
        }


class Parser(ABC):
    """Turns raw payloads of one source into normalized records."""

    @abstractmethod
    def parse(self, payload: RawPayload) -> NormalizedRecord | None:
        """
        Parse a raw payload.

        Args:
            payload: Raw payload as fetched

        Returns:
            NormalizedRecord, or None if the payload is not a usable listing

        Raises:
            ParseError: If the payload shape is not recognized
        """
        pass
