"""
Batch Relation Linker Module
============================

Bulk resolution of dimension names (performers, tags) to canonical
entities and idempotent linking to products.

Name resolution runs as a fixed number of set-oriented statements no
matter how many names are passed:
1. exact canonical name match (one IN query)
2. alias match for the misses (one IN query on the alias table)
3. insert the rest with ON CONFLICT DO NOTHING, then refetch
"""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from listing_hub.core.enums import ImageType, VideoType
from listing_hub.db.models import (
    PerformerAliasDB,
    PerformerDB,
    ProductDB,
    ProductImageDB,
    ProductPerformerDB,
    ProductTagDB,
    ProductVideoDB,
    TagDB,
)
from listing_hub.db.repositories import dialect_insert

logger = logging.getLogger(__name__)

# Predicate deciding whether a dimension name is usable: (name, product title) -> bool
NameFilter = Callable[[str, str | None], bool]

_WHITESPACE_RE = re.compile(r"\s+")

DEFAULT_EXCLUDED_NAMES = frozenset(
    {
        "-",
        "--",
        "---",
        "n/a",
        "unknown",
        "anonymous",
        "various",
        "不明",
        "素人",
        "他",
        "その他",
        "ほか",
        "複数",
    }
)
DEFAULT_EXCLUDED_PATTERNS = [
    r"^\d+$",
    r"^https?://",
    r"[<>{}]",
    r"^[\W_]+$",
]


def _utc_now() -> datetime:
    return datetime.now(UTC)


def normalize_name(name: str) -> str:
    """NFKC-normalize a name and collapse internal whitespace."""
    return _WHITESPACE_RE.sub(" ", unicodedata.normalize("NFKC", name)).strip()


def normalize_names(names: Iterable[str]) -> list[str]:
    """Normalize names and drop blanks and duplicates, keeping first-seen order."""
    seen: dict[str, None] = {}
    for name in names:
        if not name:
            continue
        normalized = normalize_name(name)
        if normalized:
            seen.setdefault(normalized, None)
    return list(seen)


@dataclass
class PerformerNamePolicy:
    """
    Default name predicate for performer names.

    Rejects names outside the length bounds, names on the exclusion list,
    names matching an exclusion pattern, and names that are just the
    product title (a common scraping artefact).
    """

    min_length: int = 2
    max_length: int = 50
    excluded_names: frozenset[str] = DEFAULT_EXCLUDED_NAMES
    excluded_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_PATTERNS))

    def __post_init__(self) -> None:
        self._excluded_res = [re.compile(p) for p in self.excluded_patterns]

    def __call__(self, name: str, title: str | None = None) -> bool:
        name = normalize_name(name)
        if not (self.min_length <= len(name) <= self.max_length):
            return False
        if name.lower() in self.excluded_names:
            return False
        if any(p.search(name) for p in self._excluded_res):
            return False
        if title:
            normalized_title = normalize_name(title)
            if name == normalized_title:
                return False
        return True


class BatchRelationLinker:
    """
    Links products to shared dimension entities without N+1 round trips.

    Works on a caller-owned session; nothing is committed here.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    # ------------------------------------------------------------------
    # Dimension resolution
    # ------------------------------------------------------------------

    def ensure_performers(self, names: Iterable[str], source: str | None = None) -> dict[str, str]:
        """
        Resolve performer names to IDs, creating missing performers.

        Args:
            names: Raw performer names
            source: Source the names were observed on (for logging)

        Returns:
            Mapping of normalized name to performer ID
        """
        names = normalize_names(names)
        if not names:
            return {}

        resolved: dict[str, str] = dict(
            self.session.execute(
                select(PerformerDB.name, PerformerDB.id).where(PerformerDB.name.in_(names))
            ).all()
        )

        missing = [n for n in names if n not in resolved]
        if missing:
            alias_rows = self.session.execute(
                select(PerformerAliasDB.alias_name, PerformerAliasDB.performer_id)
                .where(PerformerAliasDB.alias_name.in_(missing))
                .order_by(PerformerAliasDB.created_at)
            ).all()
            for alias_name, performer_id in alias_rows:
                resolved.setdefault(alias_name, performer_id)
            missing = [n for n in missing if n not in resolved]

        if missing:
            now = _utc_now()
            stmt = dialect_insert(self.session, PerformerDB).values(
                [
                    {"id": str(uuid4()), "name": n, "created_at": now, "updated_at": now}
                    for n in missing
                ]
            )
            self.session.execute(stmt.on_conflict_do_nothing(index_elements=["name"]))
            # Refetch: a concurrent worker may have won the insert
            resolved.update(
                self.session.execute(
                    select(PerformerDB.name, PerformerDB.id).where(PerformerDB.name.in_(missing))
                ).all()
            )
            logger.debug(f"Created up to {len(missing)} performers (source={source})")

        return resolved

    def ensure_tags(self, names: Iterable[str], category: str | None = None) -> dict[str, str]:
        """
        Resolve tag names to IDs, creating missing tags.

        Args:
            names: Raw tag names
            category: Category assigned to newly created tags

        Returns:
            Mapping of normalized name to tag ID
        """
        names = normalize_names(names)
        if not names:
            return {}

        resolved: dict[str, str] = dict(
            self.session.execute(select(TagDB.name, TagDB.id).where(TagDB.name.in_(names))).all()
        )
        missing = [n for n in names if n not in resolved]
        if missing:
            now = _utc_now()
            stmt = dialect_insert(self.session, TagDB).values(
                [{"id": str(uuid4()), "name": n, "category": category, "created_at": now} for n in missing]
            )
            self.session.execute(stmt.on_conflict_do_nothing(index_elements=["name"]))
            resolved.update(
                self.session.execute(
                    select(TagDB.name, TagDB.id).where(TagDB.name.in_(missing))
                ).all()
            )
        return resolved

    # ------------------------------------------------------------------
    # Join tables
    # ------------------------------------------------------------------

    def _link(self, model, product_id: str, column: str, entity_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return 0
        entity_column = getattr(model, column)
        existing = set(
            self.session.execute(
                select(entity_column).where(model.product_id == product_id, entity_column.in_(ids))
            ).scalars()
        )
        new_ids = [i for i in ids if i not in existing]
        if not new_ids:
            return 0
        now = _utc_now()
        stmt = dialect_insert(self.session, model).values(
            [{"product_id": product_id, column: i, "created_at": now} for i in new_ids]
        )
        self.session.execute(stmt.on_conflict_do_nothing(index_elements=["product_id", column]))
        return len(new_ids)

    def link_performers(
        self,
        product_id: str,
        names: Iterable[str],
        *,
        name_filter: NameFilter | None = None,
        title: str | None = None,
        source: str | None = None,
    ) -> int:
        """
        Link a product to performers by name.

        Args:
            product_id: Canonical product ID
            names: Raw performer names
            name_filter: Predicate rejecting unusable names
            title: Product title passed to the predicate
            source: Source the names came from

        Returns:
            Number of new links
        """
        names = normalize_names(names)
        if name_filter is not None:
            rejected = [n for n in names if not name_filter(n, title)]
            if rejected:
                logger.debug(f"Rejected performer names for {product_id}: {rejected}")
            names = [n for n in names if n not in rejected]

        resolved = self.ensure_performers(names, source=source)
        created = self._link(ProductPerformerDB, product_id, "performer_id", resolved.values())
        if created:
            self.refresh_performer_count(product_id)
        return created

    def link_performer_ids(self, product_id: str, performer_ids: Iterable[str]) -> int:
        """Link a product to already-resolved performer IDs."""
        created = self._link(ProductPerformerDB, product_id, "performer_id", performer_ids)
        if created:
            self.refresh_performer_count(product_id)
        return created

    def link_tags(
        self, product_id: str, names: Iterable[str], category: str | None = None
    ) -> int:
        """
        Link a product to tags by name.

        Returns:
            Number of new links
        """
        resolved = self.ensure_tags(names, category=category)
        return self._link(ProductTagDB, product_id, "tag_id", resolved.values())

    def refresh_performer_count(self, product_id: str) -> None:
        """Recompute the performer_count rollup of a product."""
        count = (
            select(func.count())
            .select_from(ProductPerformerDB)
            .where(ProductPerformerDB.product_id == product_id)
            .scalar_subquery()
        )
        self.session.execute(
            update(ProductDB).where(ProductDB.id == product_id).values(performer_count=count),
            execution_options={"synchronize_session": False},
        )

    # ------------------------------------------------------------------
    # Aliases
    # ------------------------------------------------------------------

    def add_alias(self, performer_id: str, alias_name: str, source: str | None = None) -> bool:
        """
        Record an alternate name for a performer.

        An alias string belongs to at most one performer: if another
        performer owns it, it is moved.

        Args:
            performer_id: Performer that owns the alias
            alias_name: Alternate name
            source: Where the alias was observed

        Returns:
            True if a new alias row was written
        """
        alias_name = normalize_name(alias_name)
        if not alias_name:
            return False

        owner_name = self.session.execute(
            select(PerformerDB.name).where(PerformerDB.id == performer_id)
        ).scalar_one_or_none()
        if owner_name == alias_name:
            return False

        exists = self.session.execute(
            select(PerformerAliasDB.id).where(
                PerformerAliasDB.performer_id == performer_id,
                PerformerAliasDB.alias_name == alias_name,
            )
        ).scalar_one_or_none()
        if exists is not None:
            return False

        self.session.execute(
            delete(PerformerAliasDB).where(
                PerformerAliasDB.alias_name == alias_name,
                PerformerAliasDB.performer_id != performer_id,
            )
        )
        stmt = dialect_insert(self.session, PerformerAliasDB).values(
            id=str(uuid4()),
            performer_id=performer_id,
            alias_name=alias_name,
            source=source,
            created_at=_utc_now(),
        )
        self.session.execute(
            stmt.on_conflict_do_nothing(index_elements=["performer_id", "alias_name"])
        )
        return True

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def add_images(
        self,
        product_id: str,
        source: str,
        urls: Iterable[str],
        image_type: ImageType = ImageType.SAMPLE,
    ) -> int:
        """
        Attach images to a product, skipping URLs already stored.

        display_order continues after the highest existing position.

        Returns:
            Number of images added
        """
        urls = list(dict.fromkeys(u for u in urls if u))
        if not urls:
            return 0

        existing = set(
            self.session.execute(
                select(ProductImageDB.image_url).where(
                    ProductImageDB.product_id == product_id,
                    ProductImageDB.source_name == source,
                )
            ).scalars()
        )
        new_urls = [u for u in urls if u not in existing]
        if not new_urls:
            return 0

        start = self.session.execute(
            select(func.coalesce(func.max(ProductImageDB.display_order), -1)).where(
                ProductImageDB.product_id == product_id,
                ProductImageDB.source_name == source,
            )
        ).scalar_one()
        now = _utc_now()
        stmt = dialect_insert(self.session, ProductImageDB).values(
            [
                {
                    "id": str(uuid4()),
                    "product_id": product_id,
                    "source_name": source,
                    "image_url": url,
                    "image_type": image_type.value,
                    "display_order": start + 1 + i,
                    "created_at": now,
                }
                for i, url in enumerate(new_urls)
            ]
        )
        self.session.execute(
            stmt.on_conflict_do_nothing(index_elements=["product_id", "source_name", "image_url"])
        )
        return len(new_urls)

    def replace_images(
        self,
        product_id: str,
        source: str,
        urls: Iterable[str],
        image_type: ImageType = ImageType.SAMPLE,
    ) -> int:
        """Replace all images of one type from one source."""
        self.session.execute(
            delete(ProductImageDB).where(
                ProductImageDB.product_id == product_id,
                ProductImageDB.source_name == source,
                ProductImageDB.image_type == image_type.value,
            )
        )
        return self.add_images(product_id, source, urls, image_type)

    def add_videos(
        self,
        product_id: str,
        source: str,
        urls: Iterable[str],
        video_type: VideoType = VideoType.SAMPLE,
    ) -> int:
        """
        Attach videos to a product, skipping URLs already stored.

        Returns:
            Number of videos added
        """
        urls = list(dict.fromkeys(u for u in urls if u))
        if not urls:
            return 0

        existing = set(
            self.session.execute(
                select(ProductVideoDB.video_url).where(
                    ProductVideoDB.product_id == product_id,
                    ProductVideoDB.source_name == source,
                )
            ).scalars()
        )
        new_urls = [u for u in urls if u not in existing]
        if not new_urls:
            return 0

        start = self.session.execute(
            select(func.coalesce(func.max(ProductVideoDB.display_order), -1)).where(
                ProductVideoDB.product_id == product_id,
                ProductVideoDB.source_name == source,
            )
        ).scalar_one()
        now = _utc_now()
        stmt = dialect_insert(self.session, ProductVideoDB).values(
            [
                {
                    "id": str(uuid4()),
                    "product_id": product_id,
                    "source_name": source,
                    "video_url": url,
                    "video_type": video_type.value,
                    "display_order": start + 1 + i,
                    "created_at": now,
                }
                for i, url in enumerate(new_urls)
            ]
        )
        self.session.execute(
            stmt.on_conflict_do_nothing(index_elements=["product_id", "source_name", "video_url"])
        )
        return len(new_urls)
