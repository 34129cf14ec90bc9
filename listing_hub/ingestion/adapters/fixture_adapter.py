"""
Fixture Adapter Module
======================

Synthetic adapter for pipeline validation without network access.
Serves an in-memory catalogue of JSON payloads and parses them into
NormalizedRecords, covering the common scenarios: plain listings,
discounts, placeholder performer names and not-found pages.
"""

from __future__ import annotations

import json
from typing import Any

import pydantic

from listing_hub.core.errors import ItemNotFoundError, ParseError
from listing_hub.core.schema import NormalizedRecord
from listing_hub.ingestion.adapters.base import Parser, RawPayload, SourceAdapter


# Synthetic catalogue covering various scenarios
FIXTURE_ITEMS: list[dict[str, Any]] = [
    {
        "id": "abc00101",
        "title": "Morning Light Collection Vol.1",
        "description": "A quiet collection of morning scenes.",
        "release_date": "2025-11-01",
        "duration": 120,
        "code": "ABC-101",
        "price": 2980,
        "performers": ["Aoi Sora", "Mina Kato"],
        "tags": ["Drama", "Exclusive"],
        "images": ["https://img.example.com/abc00101/1.jpg", "https://img.example.com/abc00101/2.jpg"],
        "videos": ["https://video.example.com/abc00101/sample.mp4"],
    },
    {
        "id": "abc00102",
        "title": "Evening Stories Special Edition",
        "description": "Three evening stories in one volume.",
        "release_date": "2025-11-08",
        "duration": 150,
        "code": "ABC-102",
        "price": 3480,
        "sale": {"regular_price": 3480, "sale_price": 1980, "sale_name": "Autumn Sale"},
        "performers": ["Mina Kato"],
        "tags": ["Drama"],
    },
    {
        "id": "xyz00015",
        "title": "City Walk Documentary",
        "description": "A long walk through the old town.",
        "release_date": "2025-10-20",
        "code": "XYZ-015",
        "price": 1980,
        "performers": ["Rin 22歳 OL"],
        "tags": ["Documentary"],
    },
    {
        "id": "xyz00016",
        "title": "Page Not Found",
        "description": "",
        "code": "XYZ-016",
    },
    {
        "id": "def00007",
        "title": "Seaside Holiday Complete Box",
        "description": "All episodes of the seaside series.",
        "release_date": "2025-09-15",
        "duration": 480,
        "code": "DEF-007",
        "price": 9800,
        "performers": ["Hana Mori", "Aoi Sora", "Yui 19歳 大学生"],
        "tags": ["Series", "Box Set"],
    },
]


class FixtureAdapter(SourceAdapter, Parser):
    """
    Adapter and parser over a synthetic catalogue.

    Config options:
        items: Replacement catalogue (list of item dicts)
        page_size: Items per index page (default 2)
        missing_ids: Extra IDs listed in the index that fetch as not found
    """

    ADAPTER_NAME = "fixture"
    ADAPTER_VERSION = "1.0.0"

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        super().__init__(config)
        self.items: list[dict[str, Any]] = list(self.config.get("items", FIXTURE_ITEMS))
        self.page_size = int(self.config.get("page_size", 2))
        self.missing_ids: list[str] = list(self.config.get("missing_ids", []))
        self.fetch_count = 0
        self.is_open = False
        self.closed = False

    @property
    def _index(self) -> list[str]:
        return [item["id"] for item in self.items] + self.missing_ids

    async def open(self) -> None:
        self.is_open = True

    async def close(self) -> None:
        self.is_open = False
        self.closed = True

    async def page_count(self) -> int | None:
        index = self._index
        return (len(index) + self.page_size - 1) // self.page_size

    async def list_items(self, page: int) -> list[str]:
        """List item IDs on a 1-based index page."""
        if page < 1:
            return []
        start = (page - 1) * self.page_size
        return self._index[start : start + self.page_size]

    async def fetch_item(self, external_id: str) -> RawPayload:
        """Return the JSON payload of a catalogue item."""
        self.fetch_count += 1
        for item in self.items:
            if item["id"] == external_id:
                return RawPayload(
                    external_id=external_id,
                    content=item,
                    url=f"https://fixture.example.com/items/{external_id}",
                )
        raise ItemNotFoundError(external_id, url=f"https://fixture.example.com/items/{external_id}")

    def parse(self, payload: RawPayload) -> NormalizedRecord | None:
        """Map a catalogue item to a NormalizedRecord."""
        content = payload.content
        if isinstance(content, (bytes, str)):
            try:
                content = json.loads(content)
            except json.JSONDecodeError as e:
                raise ParseError(f"Payload is not JSON: {e}") from e
        if not isinstance(content, dict):
            raise ParseError(f"Unexpected payload type: {type(content).__name__}")
        if not content.get("id"):
            return None

        sale = content.get("sale")
        try:
            return NormalizedRecord(
                external_id=str(content["id"]),
                title=content.get("title", ""),
                description=content.get("description") or None,
                release_date=content.get("release_date"),
                duration_minutes=content.get("duration"),
                package_image_url=content.get("package_image"),
                sample_images=content.get("images", []),
                sample_videos=content.get("videos", []),
                affiliate_url=payload.url,
                price=content.get("price"),
                business_code=content.get("code"),
                performers=content.get("performers", []),
                tags=content.get("tags", []),
                tag_category="genre",
                sale=sale,
            )
        except pydantic.ValidationError as e:
            raise ParseError(f"Invalid fixture item {content.get('id')}: {e}") from e
