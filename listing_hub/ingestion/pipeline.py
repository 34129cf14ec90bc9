"""
Ingestion Pipeline Module
=========================

Orchestrates one ingestion run for one source.

Per item:
1. Fetch - gated by the rate limiter, retried on retryable errors
2. Raw upsert - committed on its own so the payload survives later failures
3. Dedup - unchanged, already processed payloads stop here
4. Parse and validate - rejected items stay unprocessed
5. Persist - product, listing, relations, sale, raw link and
   mark_processed, in one transaction with mark_processed last

Item failures are isolated: they are logged, counted and the run goes on.
Only a missing storage connection at startup or too many consecutive
not-found items end a run early.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from listing_hub.core.enums import ImageType, ItemOutcome, RunStatus, SaleOutcome, VideoType
from listing_hub.core.errors import (
    IngestionError,
    ItemNotFoundError,
    ParseError,
    RunAbortedError,
    classify_storage_error,
    with_retry,
)
from listing_hub.core.schema import NormalizedRecord
from listing_hub.db.repositories import ProductRepository, ProductSourceRepository
from listing_hub.identity.codes import extract_business_codes
from listing_hub.identity.reference import ReferenceIndex
from listing_hub.ingestion.adapters.base import Parser, RawPayload, SourceAdapter
from listing_hub.ingestion.linker import BatchRelationLinker, NameFilter, PerformerNamePolicy
from listing_hub.ingestion.rate_limiter import RateLimiter, create_rate_limiter
from listing_hub.ingestion.raw_store import RawStore, RawUpsertResult
from listing_hub.ingestion.registry import PipelineConfig
from listing_hub.ingestion.sales import SaleTracker
from listing_hub.ingestion.storage import BlobStorage
from listing_hub.ingestion.validation import (
    ValidationPolicy,
    sanitize_text,
    validate_record_fields,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class RunOptions:
    """Options for one ingestion run."""

    limit: int = 100
    offset: int = 0
    force_reprocess: bool = False
    skip_enrichment: bool = False
    backfill: bool = False
    start_page: int = 1
    max_pages: int | None = None


@dataclass
class RunStats:
    """Counters and status of one ingestion run."""

    source: str
    status: RunStatus = RunStatus.RUNNING
    fetched: int = 0
    new: int = 0
    updated: int = 0
    skipped_unchanged: int = 0
    skipped_invalid: int = 0
    not_found: int = 0
    errored: int = 0
    raw_saved: int = 0
    sales_saved: int = 0
    links_created: int = 0
    started_at: datetime = field(default_factory=_utc_now)
    completed_at: datetime | None = None
    abort_reason: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def duration(self) -> float | None:
        """Run duration in seconds, once completed."""
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def is_fatal(self) -> bool:
        """True if the run ended on a run-level failure."""
        return self.status in (RunStatus.ABORTED, RunStatus.FAILED)

    @property
    def processed(self) -> int:
        return self.new + self.updated

    def record(self, outcome: ItemOutcome) -> None:
        """Count one item outcome."""
        if outcome == ItemOutcome.NEW:
            self.new += 1
        elif outcome == ItemOutcome.UPDATED:
            self.updated += 1
        elif outcome == ItemOutcome.SKIPPED_UNCHANGED:
            self.skipped_unchanged += 1
        elif outcome == ItemOutcome.SKIPPED_INVALID:
            self.skipped_invalid += 1
        elif outcome == ItemOutcome.NOT_FOUND:
            self.not_found += 1
        elif outcome == ItemOutcome.FAILED:
            self.errored += 1

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "source": self.source,
            "status": self.status.value,
            "fetched": self.fetched,
            "new": self.new,
            "updated": self.updated,
            "skipped_unchanged": self.skipped_unchanged,
            "skipped_invalid": self.skipped_invalid,
            "not_found": self.not_found,
            "errored": self.errored,
            "raw_saved": self.raw_saved,
            "sales_saved": self.sales_saved,
            "links_created": self.links_created,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration,
            "abort_reason": self.abort_reason,
            "errors": self.errors,
        }


class IngestionPipeline:
    """
    Runs discovery and per-item processing for one source.

    Sessions come from the injected session factory: one short session
    per item, so a failed item never poisons the next one.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        source: str,
        adapter: SourceAdapter,
        parser: Parser | None = None,
        *,
        rate_limiter: RateLimiter | None = None,
        blob_storage: BlobStorage | None = None,
        pipeline_config: PipelineConfig | None = None,
        name_filter: NameFilter | None = None,
    ) -> None:
        if parser is None:
            if not isinstance(adapter, Parser):
                raise ValueError(f"Adapter '{adapter.ADAPTER_NAME}' does not parse; pass a parser")
            parser = adapter
        self.session_factory = session_factory
        self.source = source
        self.adapter = adapter
        self.parser = parser
        self.rate_limiter = rate_limiter or create_rate_limiter(source)
        self.blob_storage = blob_storage
        self.config = pipeline_config or PipelineConfig()
        self.validation_policy = ValidationPolicy.from_config(self.config)
        self.name_filter = name_filter if name_filter is not None else PerformerNamePolicy()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, options: RunOptions | None = None) -> RunStats:
        """
        Run one ingestion pass.

        Args:
            options: Run options (defaults apply when omitted)

        Returns:
            RunStats; status is FAILED or ABORTED on run-level failures
        """
        options = options or RunOptions()
        stats = RunStats(source=self.source)
        logger.info(
            f"Starting ingestion for '{self.source}' "
            f"(limit={options.limit}, offset={options.offset}, backfill={options.backfill})"
        )

        try:
            self._check_storage()
            await self.adapter.open()
            await self._run_items(options, stats)
            if stats.status == RunStatus.RUNNING:
                stats.status = RunStatus.COMPLETED
        except RunAbortedError as e:
            stats.status = RunStatus.FAILED
            stats.abort_reason = e.message
            stats.errors.append(e.message)
            logger.error(f"Ingestion for '{self.source}' failed: {e.message}")
        finally:
            try:
                await self.adapter.close()
            except Exception:
                logger.exception(f"Failed to close adapter for '{self.source}'")
            stats.completed_at = _utc_now()

        logger.info(
            f"Ingestion for '{self.source}' {stats.status.value}: "
            f"{stats.fetched} fetched, {stats.new} new, {stats.updated} updated, "
            f"{stats.skipped_unchanged} unchanged, {stats.skipped_invalid} invalid, "
            f"{stats.not_found} not found, {stats.errored} errors"
        )
        return stats

    def _check_storage(self) -> None:
        """Fail fast when no storage connection can be acquired."""
        try:
            with self.session_factory() as session:
                session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise RunAbortedError(f"Cannot acquire storage connection: {e}", cause=e) from e

    async def _run_items(self, options: RunOptions, stats: RunStats) -> None:
        threshold = self.config.circuit_breaker_threshold
        consecutive_missing = 0
        skipped = 0
        attempted = 0

        async for external_id in self._discover(options, stats):
            if skipped < options.offset:
                skipped += 1
                continue
            if attempted >= options.limit:
                break
            attempted += 1

            outcome = await self._process_item(external_id, options, stats)
            stats.record(outcome)

            if outcome == ItemOutcome.NOT_FOUND:
                consecutive_missing += 1
                if threshold and consecutive_missing >= threshold:
                    stats.status = RunStatus.ABORTED
                    stats.abort_reason = (
                        f"Circuit breaker tripped after {consecutive_missing} consecutive missing items"
                    )
                    logger.error(f"[{self.source}] {stats.abort_reason}")
                    break
            else:
                consecutive_missing = 0

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _list_page(self, page: int, stats: RunStats) -> list[str]:
        try:
            return await self._gated(lambda: self.adapter.list_items(page))
        except ItemNotFoundError:
            return []
        except IngestionError as e:
            logger.warning(f"[{self.source}] listing page {page} failed: {e}")
            stats.errors.append(f"page {page}: {e}")
            return []

    async def _discover(self, options: RunOptions, stats: RunStats) -> AsyncIterator[str]:
        """
        Yield external IDs from the source index.

        Forward pages are walked from start_page until an empty page. In
        backfill mode tail pages are interleaved, walking backward from the
        last page until the two walks meet. IDs seen on earlier pages are
        not yielded again.
        """
        seen: set[str] = set()
        forward = max(1, options.start_page)
        forward_open = True
        tail_next: int | None = None
        tail_floor: int | None = None
        if options.backfill:
            try:
                tail_next = await self._gated(lambda: self.adapter.page_count())
            except IngestionError as e:
                logger.warning(f"[{self.source}] page count failed, walking forward only: {e}")
                stats.errors.append(f"page count: {e}")
        walked = 0

        while True:
            pages: list[tuple[int, bool]] = []
            if forward_open and (tail_floor is None or forward < tail_floor):
                pages.append((forward, True))
                forward += 1
            else:
                forward_open = False
            if tail_next is not None and tail_next >= forward:
                pages.append((tail_next, False))
                tail_floor = tail_next
                tail_next -= 1
            else:
                tail_next = None
            if not pages:
                return

            for page, is_forward in pages:
                if options.max_pages is not None and walked >= options.max_pages:
                    return
                walked += 1
                ids = await self._list_page(page, stats)
                if not ids and is_forward:
                    forward_open = False
                for external_id in ids:
                    if external_id not in seen:
                        seen.add(external_id)
                        yield external_id

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def _gated(self, func: Callable[[], Awaitable[T]]) -> T:
        """Call the source through the rate limiter, retrying retryable errors."""

        async def attempt() -> T:
            async with self.rate_limiter:
                return await func()

        # The limiter already applies backoff between attempts
        return await with_retry(attempt, max_retries=self.config.fetch_retries, base_delay=0.0)

    async def _process_item(self, external_id: str, options: RunOptions, stats: RunStats) -> ItemOutcome:
        try:
            payload = await self._gated(lambda: self.adapter.fetch_item(external_id))
        except ItemNotFoundError:
            logger.debug(f"[{self.source}] {external_id} not found")
            return ItemOutcome.NOT_FOUND
        except IngestionError as e:
            logger.warning(f"[{self.source}] fetch failed for {external_id}: {e}")
            stats.errors.append(f"{external_id}: {e}")
            return ItemOutcome.FAILED
        stats.fetched += 1

        try:
            with self.session_factory() as session:
                return self._store_item(session, external_id, payload, options, stats)
        except Exception as e:
            logger.exception(f"[{self.source}] failed to process {external_id}")
            stats.errors.append(f"{external_id}: {e}")
            return ItemOutcome.FAILED

    def _commit(self, session: Session) -> None:
        try:
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise classify_storage_error(e) from e

    def _store_item(
        self,
        session: Session,
        external_id: str,
        payload: RawPayload,
        options: RunOptions,
        stats: RunStats,
    ) -> ItemOutcome:
        raw_store = RawStore(session, self.blob_storage)
        try:
            raw = raw_store.upsert(self.source, external_id, payload.url, payload.content)
        except SQLAlchemyError as e:
            session.rollback()
            raise classify_storage_error(e) from e
        self._commit(session)
        if raw.changed:
            stats.raw_saved += 1

        if raw.should_skip and not options.force_reprocess:
            return ItemOutcome.SKIPPED_UNCHANGED

        try:
            record = self.parser.parse(payload)
        except ParseError as e:
            logger.warning(f"[{self.source}] parse failed for {external_id}: {e}")
            return ItemOutcome.SKIPPED_INVALID
        if record is None:
            logger.warning(f"[{self.source}] no usable record in {external_id}")
            return ItemOutcome.SKIPPED_INVALID

        record = record.model_copy(
            update={
                "title": sanitize_text(record.title) or "",
                "description": sanitize_text(record.description),
            }
        )
        result = validate_record_fields(
            record.title, record.description, self.source, record.external_id, self.validation_policy
        )
        if not result.is_valid:
            logger.info(f"[{self.source}] rejected {external_id}: {result.reason}")
            return ItemOutcome.SKIPPED_INVALID

        try:
            outcome = self._persist(session, record, raw, options, stats)
        except SQLAlchemyError as e:
            session.rollback()
            raise classify_storage_error(e) from e
        self._commit(session)
        return outcome

    def _performer_names(
        self, session: Session, record: NormalizedRecord, options: RunOptions
    ) -> tuple[list[str], bool]:
        """Performer names to link, preferring the reference index."""
        if not options.skip_enrichment:
            codes = extract_business_codes(record.business_code) + extract_business_codes(
                record.external_id, source=self.source
            )
            names = ReferenceIndex(session).names_for_codes(codes)
            if names:
                return names, True
        return list(record.performers), False

    def _persist(
        self,
        session: Session,
        record: NormalizedRecord,
        raw: RawUpsertResult,
        options: RunOptions,
        stats: RunStats,
    ) -> ItemOutcome:
        products = ProductRepository(session)
        listings = ProductSourceRepository(session)
        linker = BatchRelationLinker(session)
        sales = SaleTracker(session)
        raw_store = RawStore(session, self.blob_storage)

        normalized_id = record.resolve_normalized_id(self.source)
        product_id, created = products.upsert(record, normalized_id)
        listing_id = listings.upsert(product_id, self.source, record)

        names, from_reference = self._performer_names(session, record, options)
        stats.links_created += linker.link_performers(
            product_id,
            names,
            name_filter=None if from_reference else self.name_filter,
            title=record.title,
            source=self.source,
        )
        stats.links_created += linker.link_tags(product_id, record.tags, category=record.tag_category)
        if record.package_image_url:
            linker.add_images(product_id, self.source, [record.package_image_url], ImageType.PACKAGE)
        linker.add_images(product_id, self.source, record.sample_images, ImageType.SAMPLE)
        linker.add_videos(product_id, self.source, record.sample_videos, VideoType.SAMPLE)

        sale_outcome = None
        if record.sale is not None:
            sale_outcome = sales.record_sale_info(self.source, record.external_id, record.sale)
            if sale_outcome in (SaleOutcome.CREATED, SaleOutcome.REFRESHED):
                stats.sales_saved += 1
        if sale_outcome is None or sale_outcome == SaleOutcome.REJECTED:
            # No usable sale: the listing sells at its regular price
            price = record.price
            if price is None and record.sale is not None:
                price = record.sale.regular_price
            if price is not None:
                sales.record_price(listing_id, price)
            sales.deactivate(self.source, record.external_id)

        products.refresh_rollups(product_id)
        raw_store.link_product(product_id, self.source, raw.id, raw.content_hash)
        raw_store.mark_processed(raw.id)
        return ItemOutcome.NEW if created else ItemOutcome.UPDATED
