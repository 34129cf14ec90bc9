"""Repository classes for canonical product database operations."""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from listing_hub.core.errors import StorageError
from listing_hub.core.schema import NormalizedRecord
from listing_hub.db.models import (
    ProductDB,
    ProductPerformerDB,
    ProductSaleDB,
    ProductSourceDB,
)


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def _generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid4())


def dialect_insert(session: Session, model):
    """
    Build an INSERT that supports ON CONFLICT clauses for the session's database.

    The statement targets the underlying Table, so it runs as a plain Core
    insert (multi-row VALUES included) rather than an ORM bulk operation.

    Args:
        session: Session whose bind decides the dialect
        model: ORM class or Table to insert into

    Returns:
        Dialect-specific Insert construct
    """
    table = getattr(model, "__table__", model)
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(table)
    if dialect == "postgresql":
        return postgresql.insert(table)
    raise StorageError(f"Upserts are not supported for dialect '{dialect}'")


# ============================================================================
# Product Repositories
# ============================================================================


class ProductRepository:
    """Repository for canonical product upserts and rollups."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, product_id: str) -> ProductDB | None:
        """Get a product by ID."""
        return self.session.get(ProductDB, product_id)

    def get_by_normalized_id(self, normalized_id: str) -> ProductDB | None:
        """Get a product by its normalized ID."""
        stmt = select(ProductDB).where(ProductDB.normalized_id == normalized_id)
        return self.session.execute(stmt).scalar_one_or_none()

    def upsert(self, record: NormalizedRecord, normalized_id: str) -> tuple[str, bool]:
        """
        Insert or update a product keyed by normalized ID.

        Optional fields missing from the record keep their stored values.

        Args:
            record: Parsed listing
            normalized_id: Global product key

        Returns:
            Tuple of (product_id, created)
        """
        existing_id = self.session.execute(
            select(ProductDB.id).where(ProductDB.normalized_id == normalized_id)
        ).scalar_one_or_none()

        now = _utc_now()
        stmt = dialect_insert(self.session, ProductDB).values(
            id=_generate_uuid(),
            normalized_id=normalized_id,
            title=record.title,
            description=record.description,
            release_date=record.release_date,
            duration_minutes=record.duration_minutes,
            thumbnail_url=record.thumbnail_url or record.package_image_url,
            business_code=record.business_code,
            performer_count=0,
            has_active_sale=False,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["normalized_id"],
            set_={
                "title": stmt.excluded.title,
                "description": func.coalesce(stmt.excluded.description, ProductDB.description),
                "release_date": func.coalesce(stmt.excluded.release_date, ProductDB.release_date),
                "duration_minutes": func.coalesce(
                    stmt.excluded.duration_minutes, ProductDB.duration_minutes
                ),
                "thumbnail_url": func.coalesce(stmt.excluded.thumbnail_url, ProductDB.thumbnail_url),
                "business_code": func.coalesce(stmt.excluded.business_code, ProductDB.business_code),
                "updated_at": now,
            },
        )
        self.session.execute(stmt)

        product_id = self.session.execute(
            select(ProductDB.id).where(ProductDB.normalized_id == normalized_id)
        ).scalar_one()
        return product_id, existing_id is None

    def find_by_business_codes(self, codes: list[str]) -> list[ProductDB]:
        """Find products carrying any of the given business codes."""
        if not codes:
            return []
        stmt = select(ProductDB).where(ProductDB.business_code.in_(codes))
        return list(self.session.execute(stmt).scalars().all())

    def refresh_rollups(self, product_id: str) -> None:
        """
        Recompute the denormalized rollup columns of a product.

        performer_count counts performer links, has_active_sale checks
        for any active sale on any listing, and min_price is the lowest of
        listing prices and active sale prices.
        """
        performer_count = self.session.execute(
            select(func.count())
            .select_from(ProductPerformerDB)
            .where(ProductPerformerDB.product_id == product_id)
        ).scalar_one()

        min_listing_price = self.session.execute(
            select(func.min(ProductSourceDB.price)).where(ProductSourceDB.product_id == product_id)
        ).scalar_one()

        min_sale_price = self.session.execute(
            select(func.min(ProductSaleDB.sale_price))
            .join(ProductSourceDB, ProductSaleDB.product_source_id == ProductSourceDB.id)
            .where(ProductSourceDB.product_id == product_id, ProductSaleDB.is_active.is_(True))
        ).scalar_one()

        prices = [p for p in (min_listing_price, min_sale_price) if p is not None]
        self.session.execute(
            update(ProductDB)
            .where(ProductDB.id == product_id)
            .values(
                performer_count=performer_count,
                has_active_sale=min_sale_price is not None,
                min_price=min(prices) if prices else None,
            )
        )


class ProductSourceRepository:
    """Repository for per-source product listings."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_source_item(self, source_name: str, external_id: str) -> ProductSourceDB | None:
        """Get a listing by source name and source-scoped item ID."""
        stmt = (
            select(ProductSourceDB)
            .where(
                ProductSourceDB.source_name == source_name,
                ProductSourceDB.external_id == external_id,
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def list_for_product(self, product_id: str) -> list[ProductSourceDB]:
        """List all listings of a product."""
        stmt = select(ProductSourceDB).where(ProductSourceDB.product_id == product_id)
        return list(self.session.execute(stmt).scalars().all())

    def upsert(self, product_id: str, source_name: str, record: NormalizedRecord) -> str:
        """
        Insert or update the listing of a product on one source.

        Args:
            product_id: Canonical product ID
            source_name: Source the record came from
            record: Parsed listing

        Returns:
            Listing ID
        """
        now = _utc_now()
        stmt = dialect_insert(self.session, ProductSourceDB).values(
            id=_generate_uuid(),
            product_id=product_id,
            source_name=source_name,
            external_id=record.external_id,
            price=record.price,
            currency=record.currency,
            affiliate_url=record.affiliate_url,
            listing_type=record.listing_type.value,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["product_id", "source_name"],
            set_={
                "external_id": stmt.excluded.external_id,
                "price": stmt.excluded.price,
                "currency": stmt.excluded.currency,
                "affiliate_url": stmt.excluded.affiliate_url,
                "listing_type": stmt.excluded.listing_type,
                "updated_at": now,
            },
        )
        self.session.execute(stmt)

        return self.session.execute(
            select(ProductSourceDB.id).where(
                ProductSourceDB.product_id == product_id,
                ProductSourceDB.source_name == source_name,
            )
        ).scalar_one()
