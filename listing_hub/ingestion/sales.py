"""
Sale Tracker Module
===================

Records price and discount observations per listing.

Invariants:
- at most one active sale per listing (also enforced by a partial
  unique index)
- one price history row per listing per calendar day; repeated
  observations on the same day update that row
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, date, datetime
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from listing_hub.core.enums import SaleOutcome
from listing_hub.core.schema import SaleInfo, SaleWindow
from listing_hub.db.models import PriceHistoryDB, ProductSaleDB, ProductSourceDB
from listing_hub.db.repositories import (
    ProductRepository,
    ProductSourceRepository,
    dialect_insert,
)

logger = logging.getLogger(__name__)

PRICE_EPSILON = 0.005


def _utc_now() -> datetime:
    return datetime.now(UTC)


def compute_discount_percent(regular_price: float, sale_price: float) -> int:
    """Discount as a whole percentage of the regular price."""
    if regular_price <= 0:
        return 0
    return round((1 - sale_price / regular_price) * 100)


class SaleTracker:
    """Tracks active sales and daily price history for listings."""

    def __init__(self, session: Session, clock: Callable[[], datetime] = _utc_now) -> None:
        self.session = session
        self._clock = clock
        self._listings = ProductSourceRepository(session)
        self._products = ProductRepository(session)

    def get_active_sale(self, product_source_id: str) -> ProductSaleDB | None:
        """Get the active sale of a listing, if any."""
        stmt = select(ProductSaleDB).where(
            ProductSaleDB.product_source_id == product_source_id,
            ProductSaleDB.is_active.is_(True),
        )
        return self.session.execute(stmt).scalars().first()

    def record_observation(
        self,
        source_name: str,
        external_id: str,
        regular_price: float,
        sale_price: float,
        discount_percent: int | None = None,
        window: SaleWindow | None = None,
        sale_name: str | None = None,
        sale_type: str | None = None,
    ) -> SaleOutcome:
        """
        Record one observed discount.

        - sale_price >= regular_price is rejected.
        - A listing that is not canonicalized yet is skipped.
        - Same sale price as the active sale: only fetched_at is refreshed.
        - Different price: the active sale is deactivated first, then a
          new active sale is inserted.
        Both accepted paths upsert today's price history point.

        Args:
            source_name: Source the listing belongs to
            external_id: Source-scoped item key
            regular_price: Undiscounted price
            sale_price: Discounted price
            discount_percent: Discount as reported; computed when omitted
            window: Validity window of the sale
            sale_name: Campaign name
            sale_type: Campaign type

        Returns:
            SaleOutcome
        """
        if sale_price >= regular_price:
            logger.debug(
                f"Rejected sale for {source_name}/{external_id}: "
                f"sale {sale_price} >= regular {regular_price}"
            )
            return SaleOutcome.REJECTED

        listing = self._listings.get_by_source_item(source_name, external_id)
        if listing is None:
            logger.debug(f"No listing for {source_name}/{external_id}, sale skipped")
            return SaleOutcome.NO_LISTING

        if discount_percent is None:
            discount_percent = compute_discount_percent(regular_price, sale_price)
        now = self._clock()

        active = self.get_active_sale(listing.id)
        if active is not None and abs(active.sale_price - sale_price) < PRICE_EPSILON:
            active.fetched_at = now
            outcome = SaleOutcome.REFRESHED
        else:
            if active is not None:
                self.session.execute(
                    update(ProductSaleDB)
                    .where(
                        ProductSaleDB.product_source_id == listing.id,
                        ProductSaleDB.is_active.is_(True),
                    )
                    .values(is_active=False, updated_at=now),
                    execution_options={"synchronize_session": "fetch"},
                )
                self.session.flush()
            self.session.add(
                ProductSaleDB(
                    id=str(uuid4()),
                    product_source_id=listing.id,
                    regular_price=regular_price,
                    sale_price=sale_price,
                    discount_percent=discount_percent,
                    sale_name=sale_name,
                    sale_type=sale_type,
                    start_at=window.start_at if window else None,
                    end_at=window.end_at if window else None,
                    is_active=True,
                    fetched_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )
            outcome = SaleOutcome.CREATED
        self.session.flush()

        self.record_price(listing.id, regular_price, sale_price, discount_percent, at=now)
        self._products.refresh_rollups(listing.product_id)
        return outcome

    def record_sale_info(self, source_name: str, external_id: str, sale: SaleInfo) -> SaleOutcome:
        """Record an observation from a parsed SaleInfo."""
        return self.record_observation(
            source_name,
            external_id,
            sale.regular_price,
            sale.sale_price,
            discount_percent=sale.discount_percent,
            window=sale.window,
            sale_name=sale.sale_name,
            sale_type=sale.sale_type,
        )

    def record_price(
        self,
        product_source_id: str,
        price: float | None,
        sale_price: float | None = None,
        discount_percent: int | None = None,
        at: datetime | None = None,
    ) -> None:
        """
        Upsert the price history point of a listing for the day of `at`.

        Args:
            product_source_id: Listing ID
            price: Regular price
            sale_price: Discounted price, if on sale
            discount_percent: Discount percentage, if on sale
            at: Observation time (defaults to now)
        """
        at = at or self._clock()
        recorded_on: date = at.date()
        stmt = dialect_insert(self.session, PriceHistoryDB).values(
            id=str(uuid4()),
            product_source_id=product_source_id,
            price=price,
            sale_price=sale_price,
            discount_percent=discount_percent,
            recorded_on=recorded_on,
            recorded_at=at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["product_source_id", "recorded_on"],
            set_={
                "price": stmt.excluded.price,
                "sale_price": stmt.excluded.sale_price,
                "discount_percent": stmt.excluded.discount_percent,
                "recorded_at": stmt.excluded.recorded_at,
            },
        )
        self.session.execute(stmt)

    def deactivate(self, source_name: str, external_id: str) -> int:
        """
        Deactivate the active sale of a listing.

        Returns:
            Number of sales deactivated
        """
        listing = self._listings.get_by_source_item(source_name, external_id)
        if listing is None:
            return 0
        result = self.session.execute(
            update(ProductSaleDB)
            .where(
                ProductSaleDB.product_source_id == listing.id,
                ProductSaleDB.is_active.is_(True),
            )
            .values(is_active=False, updated_at=self._clock()),
            execution_options={"synchronize_session": "fetch"},
        )
        if result.rowcount:
            self._products.refresh_rollups(listing.product_id)
        return result.rowcount

    def deactivate_expired(self, now: datetime | None = None) -> int:
        """
        Deactivate every active sale whose window has ended.

        Args:
            now: Reference time (defaults to now)

        Returns:
            Number of sales deactivated
        """
        now = now or self._clock()
        expired = (
            ProductSaleDB.is_active.is_(True),
            ProductSaleDB.end_at.is_not(None),
            ProductSaleDB.end_at < now,
        )
        product_ids = set(
            self.session.execute(
                select(ProductSourceDB.product_id)
                .join(ProductSaleDB, ProductSaleDB.product_source_id == ProductSourceDB.id)
                .where(*expired)
            ).scalars()
        )
        if not product_ids:
            return 0

        result = self.session.execute(
            update(ProductSaleDB).where(*expired).values(is_active=False, updated_at=now),
            execution_options={"synchronize_session": "fetch"},
        )
        for product_id in product_ids:
            self._products.refresh_rollups(product_id)
        logger.info(f"Deactivated {result.rowcount} expired sales")
        return result.rowcount
