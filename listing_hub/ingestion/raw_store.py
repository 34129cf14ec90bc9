"""
Raw Store Module
================

Content-addressed persistence of raw fetched payloads with change
detection and a processed/unprocessed state.

Lifecycle of a raw record:
1. upsert() on every fetch; a changed hash clears processed_at
2. the pipeline normalizes the payload into canonical tables
3. mark_processed() is called last, after the canonical write succeeded

A crash between steps 1 and 3 leaves the record unprocessed, so the next
run picks it up again.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from listing_hub.core.errors import StorageError
from listing_hub.db.models import ProductRawLinkDB, RawRecordDB
from listing_hub.ingestion.storage import BlobStorage

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def encode_payload(payload: bytes | str | dict[str, Any] | list[Any]) -> bytes:
    """
    Serialize a payload to bytes.

    JSON payloads use sorted keys so the same logical content always
    produces the same bytes.
    """
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":")).encode(
        "utf-8"
    )


def compute_content_hash(payload: bytes | str | dict[str, Any] | list[Any]) -> str:
    """
    Compute SHA-256 hash of a payload.

    Args:
        payload: Raw bytes, text, or a JSON-compatible object

    Returns:
        Hex-encoded SHA-256 hash
    """
    return hashlib.sha256(encode_payload(payload)).hexdigest()


@dataclass
class RawUpsertResult:
    """Outcome of storing one fetched payload."""

    id: str
    is_new: bool
    should_skip: bool
    storage_ref: str | None
    content_hash: str
    changed: bool = True


@dataclass
class RawLinkResult:
    """Outcome of linking a product to a raw record."""

    created: bool
    needs_reprocessing: bool


class RawStore:
    """
    Dedup layer in front of the canonical tables.

    Works on a caller-owned session; the caller decides when to commit.
    """

    def __init__(self, session: Session, blob_storage: BlobStorage | None = None) -> None:
        self.session = session
        self.blob_storage = blob_storage

    def _store_blob(
        self, source: str, external_id: str, content: bytes, content_hash: str
    ) -> str | None:
        """Write to blob storage, returning None when the caller must store inline."""
        if self.blob_storage is None:
            return None
        try:
            return self.blob_storage.put(source, external_id, content, content_hash)
        except (StorageError, OSError) as e:
            logger.warning(
                f"Blob write failed for {source}/{external_id}, storing inline: {e}"
            )
            return None

    def get(self, source: str, external_id: str) -> RawRecordDB | None:
        """Get a raw record by its source key."""
        stmt = select(RawRecordDB).where(
            RawRecordDB.source == source, RawRecordDB.external_id == external_id
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def upsert(
        self,
        source: str,
        external_id: str,
        url: str | None,
        payload: bytes | str | dict[str, Any] | list[Any],
    ) -> RawUpsertResult:
        """
        Store a fetched payload, detecting whether it changed.

        - New item: inserted with processed_at=None, is_new=True.
        - Same hash: nothing is written; should_skip is True only if the
          record was already processed.
        - Different hash: payload and hash replaced, processed_at cleared.

        Args:
            source: Source name
            external_id: Source-scoped item key
            url: URL the payload was fetched from
            payload: Raw payload

        Returns:
            RawUpsertResult
        """
        content = encode_payload(payload)
        content_hash = hashlib.sha256(content).hexdigest()
        existing = self.get(source, external_id)

        if existing is not None and existing.content_hash == content_hash:
            return RawUpsertResult(
                id=existing.id,
                is_new=False,
                should_skip=existing.processed_at is not None,
                storage_ref=existing.storage_ref,
                content_hash=content_hash,
                changed=False,
            )

        storage_ref = self._store_blob(source, external_id, content, content_hash)
        inline_payload = None if storage_ref else content
        now = _utc_now()

        if existing is not None:
            existing.payload = inline_payload
            existing.storage_ref = storage_ref
            existing.content_hash = content_hash
            existing.url = url or existing.url
            existing.fetched_at = now
            existing.processed_at = None
            self.session.flush()
            logger.debug(f"Raw record changed: {source}/{external_id}")
            return RawUpsertResult(
                id=existing.id,
                is_new=False,
                should_skip=False,
                storage_ref=storage_ref,
                content_hash=content_hash,
            )

        record = RawRecordDB(
            id=str(uuid4()),
            source=source,
            external_id=external_id,
            url=url,
            payload=inline_payload,
            storage_ref=storage_ref,
            content_hash=content_hash,
            fetched_at=now,
            processed_at=None,
            created_at=now,
        )
        self.session.add(record)
        self.session.flush()
        return RawUpsertResult(
            id=record.id,
            is_new=True,
            should_skip=False,
            storage_ref=storage_ref,
            content_hash=content_hash,
        )

    def mark_processed(self, raw_id: str) -> None:
        """Set processed_at to now for a raw record."""
        self.session.execute(
            update(RawRecordDB).where(RawRecordDB.id == raw_id).values(processed_at=_utc_now())
        )

    def load_payload(self, raw_id: str) -> bytes | None:
        """
        Read a stored payload back from blob or inline storage.

        Args:
            raw_id: Raw record ID

        Returns:
            Payload bytes, or None if the record or its blob is gone
        """
        record = self.session.get(RawRecordDB, raw_id)
        if record is None:
            return None
        if record.storage_ref:
            if self.blob_storage is None:
                raise StorageError(f"Raw record {raw_id} is in blob storage but none is configured")
            return self.blob_storage.get(record.storage_ref)
        return record.payload

    def link_product(
        self,
        product_id: str,
        source: str,
        raw_id: str,
        content_hash: str,
        raw_table: str = "raw_records",
    ) -> RawLinkResult:
        """
        Record which raw record produced a product.

        Idempotent per (product, source, raw record). When the link already
        exists with a different hash, the stored hash is updated and the
        caller is told the product needs reprocessing.

        Args:
            product_id: Canonical product ID
            source: Source name
            raw_id: Raw record ID
            content_hash: Hash of the raw payload that was normalized
            raw_table: Table holding the raw record

        Returns:
            RawLinkResult
        """
        stmt = select(ProductRawLinkDB).where(
            ProductRawLinkDB.product_id == product_id,
            ProductRawLinkDB.source == source,
            ProductRawLinkDB.raw_record_id == raw_id,
        )
        link = self.session.execute(stmt).scalar_one_or_none()

        if link is None:
            self.session.add(
                ProductRawLinkDB(
                    id=str(uuid4()),
                    product_id=product_id,
                    source=source,
                    raw_record_id=raw_id,
                    raw_table=raw_table,
                    content_hash_seen=content_hash,
                )
            )
            self.session.flush()
            return RawLinkResult(created=True, needs_reprocessing=False)

        if link.content_hash_seen != content_hash:
            link.content_hash_seen = content_hash
            self.session.flush()
            return RawLinkResult(created=False, needs_reprocessing=True)

        return RawLinkResult(created=False, needs_reprocessing=False)

    def count_unprocessed(self, source: str | None = None) -> int:
        """Count raw records waiting for normalization."""
        stmt = select(func.count()).select_from(RawRecordDB).where(RawRecordDB.processed_at.is_(None))
        if source is not None:
            stmt = stmt.where(RawRecordDB.source == source)
        return self.session.execute(stmt).scalar_one()

    def count_unprocessed_by_source(self) -> dict[str, int]:
        """Count unprocessed raw records per source."""
        stmt = (
            select(RawRecordDB.source, func.count())
            .where(RawRecordDB.processed_at.is_(None))
            .group_by(RawRecordDB.source)
            .order_by(RawRecordDB.source)
        )
        return {source: count for source, count in self.session.execute(stmt).all()}

    def list_unprocessed(self, source: str, limit: int = 100) -> list[RawRecordDB]:
        """List unprocessed raw records of a source, oldest fetch first."""
        stmt = (
            select(RawRecordDB)
            .where(RawRecordDB.source == source, RawRecordDB.processed_at.is_(None))
            .order_by(RawRecordDB.fetched_at)
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars().all())
