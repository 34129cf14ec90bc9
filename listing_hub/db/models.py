"""SQLAlchemy ORM models for the listing hub database.

These models define the tables shared by every source:
- RawRecordDB, ProductRawLinkDB (raw payloads and their audit links)
- ProductDB, ProductSourceDB (canonical products and per-source listings)
- PerformerDB, PerformerAliasDB, TagDB (dimension entities)
- ProductPerformerDB, ProductTagDB, ProductImageDB, ProductVideoDB (relations)
- ProductSaleDB, PriceHistoryDB (pricing)
- ReferenceIndexDB (third-party cross-reference data)
"""

from datetime import UTC, date, datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


def _generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ============================================================================
# Raw Payloads
# ============================================================================


class RawRecordDB(Base):
    """
    Database model for raw fetched payloads.

    One row per source item. The payload lives either in blob storage
    (storage_ref) or inline (payload). processed_at is null until the
    payload has been normalized, and is cleared whenever the content
    hash changes.
    """

    __tablename__ = "raw_records"
    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_raw_records_source_item"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    source: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    storage_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    def __repr__(self) -> str:
        return f"<RawRecordDB(id={self.id}, source='{self.source}', external_id='{self.external_id}')>"


class ProductRawLinkDB(Base):
    """
    Audit edge from a canonical product to the raw record that produced it.

    content_hash_seen is the raw hash at link time, so staleness can be
    detected without re-reading the payload.
    """

    __tablename__ = "product_raw_links"
    __table_args__ = (
        UniqueConstraint(
            "product_id", "source", "raw_record_id", name="uq_product_raw_links_edge"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    raw_record_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("raw_records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    raw_table: Mapped[str] = mapped_column(String(64), default="raw_records")
    content_hash_seen: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)


# ============================================================================
# Canonical Products
# ============================================================================


class ProductDB(Base):
    """
    Database model for canonical products.

    performer_count, has_active_sale and min_price are rollups kept
    current by the linker, the sale tracker and the product repository.
    """

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    normalized_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    release_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    business_code: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    performer_count: Mapped[int] = mapped_column(Integer, default=0)
    has_active_sale: Mapped[bool] = mapped_column(Boolean, default=False)
    min_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    # Relationships
    sources: Mapped[list["ProductSourceDB"]] = relationship(
        "ProductSourceDB", back_populates="product"
    )

    def __repr__(self) -> str:
        return f"<ProductDB(id={self.id}, normalized_id='{self.normalized_id}')>"


class ProductSourceDB(Base):
    """
    Database model for one marketplace's listing of a product.

    A product has at most one row per source; re-ingestion updates it.
    """

    __tablename__ = "product_sources"
    __table_args__ = (
        UniqueConstraint("product_id", "source_name", name="uq_product_sources_product"),
        Index("ix_product_sources_item", "source_name", "external_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_name: Mapped[str] = mapped_column(String(64), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="JPY")
    affiliate_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    listing_type: Mapped[str] = mapped_column(String(20), default="download")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    # Relationships
    product: Mapped["ProductDB"] = relationship("ProductDB", back_populates="sources")

    def __repr__(self) -> str:
        return f"<ProductSourceDB(source='{self.source_name}', external_id='{self.external_id}')>"


# ============================================================================
# Dimension Entities
# ============================================================================


class PerformerDB(Base):
    """Database model for canonical performers."""

    __tablename__ = "performers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name_reading: Mapped[str | None] = mapped_column(String(255), nullable=True)
    profile_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return f"<PerformerDB(id={self.id}, name='{self.name}')>"


class PerformerAliasDB(Base):
    """Alternate name observed for a performer."""

    __tablename__ = "performer_aliases"
    __table_args__ = (
        UniqueConstraint("performer_id", "alias_name", name="uq_performer_aliases_name"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    performer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("performers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    alias_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class TagDB(Base):
    """Database model for tags (genres, labels, series)."""

    __tablename__ = "tags"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


# ============================================================================
# Relations
# ============================================================================


class ProductPerformerDB(Base):
    """Join table between products and performers."""

    __tablename__ = "product_performers"

    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), primary_key=True
    )
    performer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("performers.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class ProductTagDB(Base):
    """Join table between products and tags."""

    __tablename__ = "product_tags"

    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), primary_key=True
    )
    tag_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class ProductImageDB(Base):
    """Image attached to a product by one source."""

    __tablename__ = "product_images"
    __table_args__ = (
        UniqueConstraint("product_id", "source_name", "image_url", name="uq_product_images_url"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_name: Mapped[str] = mapped_column(String(64), nullable=False)
    image_url: Mapped[str] = mapped_column(Text, nullable=False)
    image_type: Mapped[str] = mapped_column(String(20), default="sample")
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class ProductVideoDB(Base):
    """Video attached to a product by one source."""

    __tablename__ = "product_videos"
    __table_args__ = (
        UniqueConstraint("product_id", "source_name", "video_url", name="uq_product_videos_url"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_name: Mapped[str] = mapped_column(String(64), nullable=False)
    video_url: Mapped[str] = mapped_column(Text, nullable=False)
    video_type: Mapped[str] = mapped_column(String(20), default="sample")
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


# ============================================================================
# Pricing
# ============================================================================


class ProductSaleDB(Base):
    """
    Discount observed on a listing.

    At most one active row per listing, enforced by a partial unique index.
    """

    __tablename__ = "product_sales"
    __table_args__ = (
        Index(
            "uq_product_sales_active",
            "product_source_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_source_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("product_sources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    regular_price: Mapped[float] = mapped_column(Float, nullable=False)
    sale_price: Mapped[float] = mapped_column(Float, nullable=False)
    discount_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sale_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sale_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    start_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)


class PriceHistoryDB(Base):
    """One price observation per listing per calendar day."""

    __tablename__ = "price_history"
    __table_args__ = (
        UniqueConstraint("product_source_id", "recorded_on", name="uq_price_history_day"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_source_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("product_sources.id", ondelete="CASCADE"), nullable=False
    )
    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    sale_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    discount_percent: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recorded_on: Mapped[date] = mapped_column(Date, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


# ============================================================================
# Reference Data
# ============================================================================


class ReferenceIndexDB(Base):
    """
    Independent mapping from a business code to a true identity.

    Built from third-party cross-reference data and consumed by the
    identity merger.
    """

    __tablename__ = "reference_index"
    __table_args__ = (
        UniqueConstraint(
            "source", "business_code", "identity_name", name="uq_reference_index_entry"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    business_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    identity_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=1.0)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return f"<ReferenceIndexDB(code='{self.business_code}', name='{self.identity_name}')>"
