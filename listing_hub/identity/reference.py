"""
Reference Index Module
======================

Independently sourced mapping from business codes to true identities.
Entries come from third-party cross-reference data (imported from CSV or
added programmatically) and are consulted by the ingestion pipeline and
the identity merger.
"""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

import pydantic
from sqlalchemy import select
from sqlalchemy.orm import Session

from listing_hub.core.schema import ReferenceEntry
from listing_hub.db.models import ProductDB, ProductSourceDB, ReferenceIndexDB
from listing_hub.db.repositories import dialect_insert
from listing_hub.identity.codes import extract_business_codes
from listing_hub.ingestion.linker import normalize_name

logger = logging.getLogger(__name__)


@dataclass
class ReferenceMatch:
    """One reference index hit."""

    business_code: str
    identity_name: str
    source: str
    confidence: float
    verified: bool


class ReferenceIndex:
    """Query and maintain the reference index table."""

    def __init__(self, session: Session, min_confidence: float = 0.0) -> None:
        self.session = session
        self.min_confidence = min_confidence

    def add_entries(self, entries: Iterable[ReferenceEntry]) -> int:
        """
        Upsert reference entries on (source, business_code, identity_name).

        Args:
            entries: Validated reference entries

        Returns:
            Number of entries written
        """
        count = 0
        now = datetime.now(UTC)
        for entry in entries:
            name = normalize_name(entry.identity_name)
            code = entry.business_code.strip().upper()
            stmt = dialect_insert(self.session, ReferenceIndexDB).values(
                id=str(uuid4()),
                business_code=code,
                identity_name=name,
                source=entry.source,
                source_url=entry.source_url,
                confidence=entry.confidence,
                verified=False,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["source", "business_code", "identity_name"],
                set_={
                    "source_url": stmt.excluded.source_url,
                    "confidence": stmt.excluded.confidence,
                    "updated_at": now,
                },
            )
            self.session.execute(stmt)
            count += 1
        return count

    def lookup(self, codes: Iterable[str]) -> list[ReferenceMatch]:
        """
        Find reference entries for any of the given business codes.

        Verified and higher-confidence entries come first.
        """
        codes = [c.strip().upper() for c in codes if c and c.strip()]
        if not codes:
            return []
        stmt = (
            select(ReferenceIndexDB)
            .where(
                ReferenceIndexDB.business_code.in_(codes),
                ReferenceIndexDB.confidence >= self.min_confidence,
            )
            .order_by(
                ReferenceIndexDB.verified.desc(),
                ReferenceIndexDB.confidence.desc(),
                ReferenceIndexDB.identity_name,
            )
        )
        return [
            ReferenceMatch(
                business_code=row.business_code,
                identity_name=row.identity_name,
                source=row.source,
                confidence=row.confidence,
                verified=row.verified,
            )
            for row in self.session.execute(stmt).scalars()
        ]

    def names_for_codes(self, codes: Iterable[str]) -> list[str]:
        """Distinct identity names known for the codes, best entries first."""
        names: dict[str, None] = {}
        for match in self.lookup(codes):
            names.setdefault(match.identity_name, None)
        return list(names)

    def codes_for_product(self, product: ProductDB) -> list[str]:
        """Business code variants of a product, from its code and listings."""
        codes = extract_business_codes(product.business_code)
        listings = self.session.execute(
            select(ProductSourceDB.source_name, ProductSourceDB.external_id).where(
                ProductSourceDB.product_id == product.id
            )
        ).all()
        for source_name, external_id in listings:
            codes.extend(extract_business_codes(external_id, source=source_name))
        return list(dict.fromkeys(codes))

    def names_for_product(self, product: ProductDB) -> list[str]:
        """Identity names the reference index knows for a product."""
        return self.names_for_codes(self.codes_for_product(product))

    def load_csv(self, path: Path | str, source: str | None = None) -> int:
        """
        Import reference entries from a CSV file.

        Expected columns: business_code, identity_name, and optionally
        source, source_url and confidence. Invalid rows are logged and
        skipped.

        Args:
            path: CSV file path
            source: Source name for rows without a source column

        Returns:
            Number of entries written
        """
        entries: list[ReferenceEntry] = []
        with open(path, newline="", encoding="utf-8") as f:
            reader = csv.DictReader(f)
            for line_no, row in enumerate(reader, start=2):
                data = {k: v for k, v in row.items() if k and v not in (None, "")}
                data.setdefault("source", source or "csv")
                try:
                    entries.append(ReferenceEntry.model_validate(data))
                except pydantic.ValidationError as e:
                    logger.warning(f"Skipping invalid reference row {line_no} in {path}: {e}")
        written = self.add_entries(entries)
        logger.info(f"Imported {written} reference entries from {path}")
        return written
