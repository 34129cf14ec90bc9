"""Initial schema for the listing hub.

Revision ID: 0001
Revises:
Create Date: 2026-03-01

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Raw payloads
    op.create_table(
        "raw_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("source", sa.String(64), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("payload", sa.LargeBinary(), nullable=True),
        sa.Column("storage_ref", sa.String(500), nullable=True),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("fetched_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("source", "external_id", name="uq_raw_records_source_item"),
    )
    op.create_index("ix_raw_records_source", "raw_records", ["source"])
    op.create_index("ix_raw_records_processed_at", "raw_records", ["processed_at"])

    # Canonical products
    op.create_table(
        "products",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("normalized_id", sa.String(255), nullable=False, unique=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("release_date", sa.Date(), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("business_code", sa.String(64), nullable=True),
        sa.Column("performer_count", sa.Integer(), default=0),
        sa.Column("has_active_sale", sa.Boolean(), default=False),
        sa.Column("min_price", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_products_release_date", "products", ["release_date"])
    op.create_index("ix_products_business_code", "products", ["business_code"])

    op.create_table(
        "product_sources",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "product_id",
            sa.String(36),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source_name", sa.String(64), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(3), default="JPY"),
        sa.Column("affiliate_url", sa.Text(), nullable=True),
        sa.Column("listing_type", sa.String(20), default="download"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("product_id", "source_name", name="uq_product_sources_product"),
    )
    op.create_index("ix_product_sources_product_id", "product_sources", ["product_id"])
    op.create_index(
        "ix_product_sources_item", "product_sources", ["source_name", "external_id"]
    )

    op.create_table(
        "product_raw_links",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "product_id",
            sa.String(36),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source", sa.String(64), nullable=False),
        sa.Column(
            "raw_record_id",
            sa.String(36),
            sa.ForeignKey("raw_records.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("raw_table", sa.String(64), default="raw_records"),
        sa.Column("content_hash_seen", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "product_id", "source", "raw_record_id", name="uq_product_raw_links_edge"
        ),
    )
    op.create_index("ix_product_raw_links_product_id", "product_raw_links", ["product_id"])
    op.create_index("ix_product_raw_links_raw_record_id", "product_raw_links", ["raw_record_id"])

    # Dimension entities
    op.create_table(
        "performers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("name_reading", sa.String(255), nullable=True),
        sa.Column("profile_url", sa.Text(), nullable=True),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "performer_aliases",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "performer_id",
            sa.String(36),
            sa.ForeignKey("performers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("alias_name", sa.String(255), nullable=False),
        sa.Column("source", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("performer_id", "alias_name", name="uq_performer_aliases_name"),
    )
    op.create_index("ix_performer_aliases_performer_id", "performer_aliases", ["performer_id"])
    op.create_index("ix_performer_aliases_alias_name", "performer_aliases", ["alias_name"])

    op.create_table(
        "tags",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_tags_category", "tags", ["category"])

    # Relations
    op.create_table(
        "product_performers",
        sa.Column(
            "product_id",
            sa.String(36),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "performer_id",
            sa.String(36),
            sa.ForeignKey("performers.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_product_performers_performer_id", "product_performers", ["performer_id"]
    )

    op.create_table(
        "product_tags",
        sa.Column(
            "product_id",
            sa.String(36),
            sa.ForeignKey("products.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "tag_id", sa.String(36), sa.ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_product_tags_tag_id", "product_tags", ["tag_id"])

    for table, url_column, type_column in (
        ("product_images", "image_url", "image_type"),
        ("product_videos", "video_url", "video_type"),
    ):
        op.create_table(
            table,
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column(
                "product_id",
                sa.String(36),
                sa.ForeignKey("products.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("source_name", sa.String(64), nullable=False),
            sa.Column(url_column, sa.Text(), nullable=False),
            sa.Column(type_column, sa.String(20), default="sample"),
            sa.Column("display_order", sa.Integer(), default=0),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint(
                "product_id", "source_name", url_column, name=f"uq_{table}_url"
            ),
        )
        op.create_index(f"ix_{table}_product_id", table, ["product_id"])

    # Pricing
    op.create_table(
        "product_sales",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "product_source_id",
            sa.String(36),
            sa.ForeignKey("product_sources.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("regular_price", sa.Float(), nullable=False),
        sa.Column("sale_price", sa.Float(), nullable=False),
        sa.Column("discount_percent", sa.Integer(), nullable=True),
        sa.Column("sale_name", sa.String(255), nullable=True),
        sa.Column("sale_type", sa.String(64), nullable=True),
        sa.Column("start_at", sa.DateTime(), nullable=True),
        sa.Column("end_at", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), default=True),
        sa.Column("fetched_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_product_sales_product_source_id", "product_sales", ["product_source_id"])
    op.create_index("ix_product_sales_end_at", "product_sales", ["end_at"])
    op.create_index(
        "uq_product_sales_active",
        "product_sales",
        ["product_source_id"],
        unique=True,
        sqlite_where=sa.text("is_active = 1"),
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "price_history",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "product_source_id",
            sa.String(36),
            sa.ForeignKey("product_sources.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("sale_price", sa.Float(), nullable=True),
        sa.Column("discount_percent", sa.Integer(), nullable=True),
        sa.Column("recorded_on", sa.Date(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("product_source_id", "recorded_on", name="uq_price_history_day"),
    )

    # Reference data
    op.create_table(
        "reference_index",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("business_code", sa.String(64), nullable=False),
        sa.Column("identity_name", sa.String(255), nullable=False),
        sa.Column("source", sa.String(64), nullable=False),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("confidence", sa.Float(), default=1.0),
        sa.Column("verified", sa.Boolean(), default=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "source", "business_code", "identity_name", name="uq_reference_index_entry"
        ),
    )
    op.create_index("ix_reference_index_business_code", "reference_index", ["business_code"])
    op.create_index("ix_reference_index_identity_name", "reference_index", ["identity_name"])


def downgrade() -> None:
    op.drop_table("reference_index")
    op.drop_table("price_history")
    op.drop_index("uq_product_sales_active", table_name="product_sales")
    op.drop_table("product_sales")
    op.drop_table("product_videos")
    op.drop_table("product_images")
    op.drop_table("product_tags")
    op.drop_table("product_performers")
    op.drop_table("tags")
    op.drop_table("performer_aliases")
    op.drop_table("performers")
    op.drop_table("product_raw_links")
    op.drop_table("product_sources")
    op.drop_table("products")
    op.drop_table("raw_records")
