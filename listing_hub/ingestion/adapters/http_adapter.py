"""
HTTP JSON Adapter Module
========================

Generic adapter for sources that expose a paginated JSON index and one
JSON document per item. URLs and field names come from the source's
custom_config in sources.yaml.

Example config:
    custom_config:
      list_url: "https://api.example.com/items?page={page}"
      item_url: "https://api.example.com/items/{external_id}"
      list_field: items
      id_field: id
      page_count_field: total_pages
      field_map:
        title: name
        business_code: product_code
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
import pydantic

from listing_hub.core.errors import ItemNotFoundError, NetworkError, ParseError
from listing_hub.core.schema import NormalizedRecord
from listing_hub.ingestion.adapters.base import Parser, RawPayload, SourceAdapter
from listing_hub.ingestion.validation import detect_redirect

logger = logging.getLogger(__name__)

# NormalizedRecord fields that may be mapped from payload keys
MAPPABLE_FIELDS = (
    "title",
    "description",
    "release_date",
    "duration_minutes",
    "thumbnail_url",
    "package_image_url",
    "sample_images",
    "sample_videos",
    "affiliate_url",
    "price",
    "currency",
    "listing_type",
    "business_code",
    "performers",
    "tags",
    "tag_category",
    "sale",
)


def _dig(data: Any, path: str) -> Any:
    """Read a dotted path ("a.b.c") out of nested dicts."""
    for key in path.split("."):
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


class HttpJsonAdapter(SourceAdapter, Parser):
    """
    Adapter and parser for JSON-over-HTTP sources.

    One httpx.AsyncClient is opened per run and shared by all requests.
    HTTP 404 and redirects to top/list pages become ItemNotFoundError;
    429, 5xx and transport failures become NetworkError so the rate
    limiter can back off.
    """

    ADAPTER_NAME = "http_json"
    ADAPTER_VERSION = "1.0.0"

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(config)
        self.list_url: str = self.config.get("list_url", "")
        self.item_url: str = self.config.get("item_url", "")
        self.list_field: str = self.config.get("list_field", "items")
        self.id_field: str = self.config.get("id_field", "id")
        self.page_count_field: str | None = self.config.get("page_count_field")
        self.field_map: dict[str, str] = dict(self.config.get("field_map", {}))
        self.user_agent: str = self.config.get("user_agent", "ListingHub/0.1")
        self.timeout = float(self.config.get("timeout", 30.0))
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._page_count: int | None = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def open(self) -> None:
        self._ensure_client()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def is_open(self) -> bool:
        return self._client is not None

    async def _get(self, url: str, external_id: str | None = None) -> httpx.Response:
        """GET a URL, translating failures into the ingestion error taxonomy."""
        client = self._ensure_client()

        try:
            response = await client.get(url)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timeout after {self.timeout}s fetching {url}", url=url, cause=e) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"HTTP error fetching {url}: {e}", url=url, cause=e) from e

        if response.status_code == 404:
            raise ItemNotFoundError(external_id or url, url=url)
        if response.status_code >= 400:
            raise NetworkError(
                f"HTTP {response.status_code} fetching {url}",
                status_code=response.status_code,
                url=url,
            )
        if external_id is not None and detect_redirect(url, str(response.url)):
            logger.debug(f"Redirected from {url} to {response.url}")
            raise ItemNotFoundError(external_id, url=url)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseError(f"Response from {response.url} is not JSON: {e}") from e

    async def list_items(self, page: int) -> list[str]:
        """List item IDs on a 1-based index page."""
        if not self.list_url:
            raise ValueError("http_json adapter requires 'list_url' in custom_config")
        if page < 1:
            return []
        response = await self._get(self.list_url.format(page=page))
        data = self._json(response)

        if self.page_count_field and isinstance(data, dict):
            total = _dig(data, self.page_count_field)
            if isinstance(total, int):
                self._page_count = total

        entries = data if isinstance(data, list) else _dig(data, self.list_field) or []
        ids: list[str] = []
        for entry in entries:
            value = entry.get(self.id_field) if isinstance(entry, dict) else entry
            if value is not None and str(value).strip():
                ids.append(str(value).strip())
        return ids

    async def page_count(self) -> int | None:
        if self._page_count is None and self.page_count_field and self.list_url:
            await self.list_items(1)
        return self._page_count

    async def fetch_item(self, external_id: str) -> RawPayload:
        """Fetch the JSON document of one item."""
        if not self.item_url:
            raise ValueError("http_json adapter requires 'item_url' in custom_config")
        url = self.item_url.format(external_id=external_id)
        response = await self._get(url, external_id=external_id)
        mime_type = response.headers.get("content-type", "").split(";")[0].strip()
        return RawPayload(
            external_id=external_id,
            content=self._json(response),
            url=str(response.url),
            mime_type=mime_type or "application/json",
        )

    def parse(self, payload: RawPayload) -> NormalizedRecord | None:
        """Map a JSON document to a NormalizedRecord using field_map."""
        content = payload.content
        if isinstance(content, (bytes, str)):
            try:
                content = json.loads(content)
            except json.JSONDecodeError as e:
                raise ParseError(f"Payload is not JSON: {e}") from e
        if not isinstance(content, dict):
            raise ParseError(f"Unexpected payload type: {type(content).__name__}")

        values: dict[str, Any] = {}
        for field_name in MAPPABLE_FIELDS:
            key = self.field_map.get(field_name, field_name)
            value = _dig(content, key)
            if value is not None:
                values[field_name] = value
        if "title" not in values:
            return None
        values.setdefault("affiliate_url", payload.url)

        try:
            return NormalizedRecord(external_id=payload.external_id, **values)
        except pydantic.ValidationError as e:
            raise ParseError(f"Invalid item {payload.external_id}: {e}") from e
