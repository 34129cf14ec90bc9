"""End-to-end tests for the ingestion pipeline."""

import copy
from pathlib import Path

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from listing_hub.core.enums import ItemOutcome, RunStatus
from listing_hub.core.errors import NetworkError
from listing_hub.core.schema import ReferenceEntry
from listing_hub.db.models import (
    PerformerDB,
    PriceHistoryDB,
    ProductDB,
    ProductImageDB,
    ProductPerformerDB,
    ProductRawLinkDB,
    ProductSourceDB,
    ProductVideoDB,
    RawRecordDB,
)
from listing_hub.identity.reference import ReferenceIndex
from listing_hub.ingestion.adapters.base import Parser, RawPayload, SourceAdapter
from listing_hub.ingestion.adapters.fixture_adapter import FIXTURE_ITEMS, FixtureAdapter
from listing_hub.ingestion.pipeline import IngestionPipeline, RunOptions, RunStats
from listing_hub.ingestion.rate_limiter import create_rate_limiter
from listing_hub.ingestion.registry import PipelineConfig
from listing_hub.ingestion.storage import LocalBlobStorage


class RecordingAdapter(FixtureAdapter):
    """Fixture adapter that records index pages and fetches."""

    def __init__(self, config=None) -> None:
        super().__init__(config)
        self.pages: list[int] = []
        self.fetched: list[str] = []

    async def list_items(self, page: int) -> list[str]:
        self.pages.append(page)
        return await super().list_items(page)

    async def fetch_item(self, external_id: str) -> RawPayload:
        self.fetched.append(external_id)
        return await super().fetch_item(external_id)


class FlakyAdapter(FixtureAdapter):
    """Fixture adapter whose fetches fail a set number of times per item."""

    def __init__(self, failures: dict[str, int], config=None) -> None:
        super().__init__(config)
        self.failures = dict(failures)

    async def fetch_item(self, external_id: str) -> RawPayload:
        if self.failures.get(external_id, 0) > 0:
            self.failures[external_id] -= 1
            self.fetch_count += 1
            raise NetworkError("Service unavailable", status_code=503)
        return await super().fetch_item(external_id)


class PageCountFailingAdapter(RecordingAdapter):
    """Recording adapter whose page count endpoint is down."""

    async def page_count(self) -> int | None:
        raise NetworkError("Service unavailable", status_code=503)


class FailingParser(Parser):
    """Parser that blows up on one item."""

    def __init__(self, inner: Parser, fail_id: str) -> None:
        self.inner = inner
        self.fail_id = fail_id

    def parse(self, payload: RawPayload):
        if payload.external_id == self.fail_id:
            raise RuntimeError("unexpected payload layout")
        return self.inner.parse(payload)


class ListOnlyAdapter(SourceAdapter):
    async def list_items(self, page: int) -> list[str]:
        return []

    async def fetch_item(self, external_id: str) -> RawPayload:
        raise NotImplementedError


def make_pipeline(session_factory, adapter=None, **kwargs) -> IngestionPipeline:
    return IngestionPipeline(
        session_factory,
        "fixture",
        adapter or FixtureAdapter(),
        rate_limiter=create_rate_limiter("fixture"),
        **kwargs,
    )


def _count(session_factory, model, *criteria) -> int:
    with session_factory() as session:
        stmt = select(func.count()).select_from(model)
        if criteria:
            stmt = stmt.where(*criteria)
        return session.execute(stmt).scalar_one()


def _performers_of(session_factory, normalized_id: str) -> list[str]:
    with session_factory() as session:
        return list(
            session.execute(
                select(PerformerDB.name)
                .join(ProductPerformerDB, ProductPerformerDB.performer_id == PerformerDB.id)
                .join(ProductDB, ProductDB.id == ProductPerformerDB.product_id)
                .where(ProductDB.normalized_id == normalized_id)
                .order_by(PerformerDB.name)
            ).scalars()
        )


class TestRunStats:
    """Tests for RunStats bookkeeping."""

    def test_record_outcomes(self) -> None:
        stats = RunStats(source="fixture")
        for outcome in (
            ItemOutcome.NEW,
            ItemOutcome.NEW,
            ItemOutcome.UPDATED,
            ItemOutcome.SKIPPED_UNCHANGED,
            ItemOutcome.SKIPPED_INVALID,
            ItemOutcome.NOT_FOUND,
            ItemOutcome.FAILED,
        ):
            stats.record(outcome)

        assert stats.new == 2
        assert stats.updated == 1
        assert stats.processed == 3
        assert stats.skipped_unchanged == 1
        assert stats.skipped_invalid == 1
        assert stats.not_found == 1
        assert stats.errored == 1

    def test_to_dict(self) -> None:
        stats = RunStats(source="fixture", status=RunStatus.COMPLETED)
        data = stats.to_dict()

        assert data["source"] == "fixture"
        assert data["status"] == "completed"
        assert data["duration_seconds"] is None
        assert data["errors"] == []

    def test_is_fatal(self) -> None:
        assert RunStats(source="s", status=RunStatus.ABORTED).is_fatal
        assert RunStats(source="s", status=RunStatus.FAILED).is_fatal
        assert not RunStats(source="s", status=RunStatus.COMPLETED).is_fatal


class TestPipelineRun:
    """Tests for a full run over the fixture catalogue."""

    @pytest.mark.asyncio
    async def test_first_run(self, session_factory) -> None:
        adapter = FixtureAdapter()
        stats = await make_pipeline(session_factory, adapter).run()

        assert stats.status == RunStatus.COMPLETED
        assert stats.fetched == 5
        assert stats.new == 4
        assert stats.skipped_invalid == 1
        assert stats.errored == 0
        assert stats.raw_saved == 5
        assert stats.sales_saved == 1
        assert stats.completed_at is not None
        assert adapter.closed

        assert _count(session_factory, ProductDB) == 4
        assert _count(session_factory, ProductSourceDB) == 4
        assert _count(session_factory, RawRecordDB) == 5
        assert _count(session_factory, RawRecordDB, RawRecordDB.processed_at.is_(None)) == 1
        assert _count(session_factory, ProductRawLinkDB) == 4
        assert _count(session_factory, PriceHistoryDB) == 4

    @pytest.mark.asyncio
    async def test_products_and_relations(self, session_factory) -> None:
        await make_pipeline(session_factory).run()

        with session_factory() as session:
            product = session.execute(
                select(ProductDB).where(ProductDB.normalized_id == "fixture-abc00101")
            ).scalar_one()
            assert product.title == "Morning Light Collection Vol.1"
            assert product.business_code == "ABC-101"
            assert product.duration_minutes == 120
            assert product.performer_count == 2
            assert product.min_price == 2980

            listing = session.execute(
                select(ProductSourceDB).where(ProductSourceDB.product_id == product.id)
            ).scalar_one()
            assert listing.external_id == "abc00101"
            assert listing.affiliate_url == "https://fixture.example.com/items/abc00101"

        assert _count(session_factory, ProductImageDB) == 2
        assert _count(session_factory, ProductVideoDB) == 1
        assert _performers_of(session_factory, "fixture-def00007") == [
            "Aoi Sora",
            "Hana Mori",
            "Yui 19歳 大学生",
        ]
        # shared performers resolve to one row
        assert _count(session_factory, PerformerDB) == 5

    @pytest.mark.asyncio
    async def test_sale_is_recorded(self, session_factory) -> None:
        await make_pipeline(session_factory).run()

        with session_factory() as session:
            has_active_sale, min_price = session.execute(
                select(ProductDB.has_active_sale, ProductDB.min_price).where(
                    ProductDB.normalized_id == "fixture-abc00102"
                )
            ).one()
        assert has_active_sale
        assert min_price == 1980

    @pytest.mark.asyncio
    async def test_invalid_item_is_not_persisted(self, session_factory) -> None:
        await make_pipeline(session_factory).run()

        assert _count(session_factory, ProductDB, ProductDB.normalized_id == "fixture-xyz00016") == 0
        assert _count(session_factory, RawRecordDB, RawRecordDB.external_id == "xyz00016") == 1

    @pytest.mark.asyncio
    async def test_second_run_skips_unchanged(self, session_factory) -> None:
        await make_pipeline(session_factory).run()
        stats = await make_pipeline(session_factory).run()

        assert stats.status == RunStatus.COMPLETED
        assert stats.new == 0
        assert stats.updated == 0
        assert stats.skipped_unchanged == 4
        # rejected payloads stay unprocessed and are re-evaluated
        assert stats.skipped_invalid == 1
        assert stats.raw_saved == 0
        assert _count(session_factory, ProductDB) == 4

    @pytest.mark.asyncio
    async def test_force_reprocess(self, session_factory) -> None:
        await make_pipeline(session_factory).run()
        stats = await make_pipeline(session_factory).run(RunOptions(force_reprocess=True))

        assert stats.updated == 4
        assert stats.skipped_unchanged == 0
        assert stats.links_created == 0
        assert _count(session_factory, ProductPerformerDB) == 7

    @pytest.mark.asyncio
    async def test_changed_payload_updates_product(self, session_factory) -> None:
        await make_pipeline(session_factory).run()

        items = copy.deepcopy(FIXTURE_ITEMS)
        items[0]["title"] = "Morning Light Collection Vol.1 (Remastered)"
        stats = await make_pipeline(session_factory, FixtureAdapter({"items": items})).run()

        assert stats.updated == 1
        assert stats.skipped_unchanged == 3
        assert stats.raw_saved == 1
        with session_factory() as session:
            title = session.execute(
                select(ProductDB.title).where(ProductDB.normalized_id == "fixture-abc00101")
            ).scalar_one()
        assert title == "Morning Light Collection Vol.1 (Remastered)"

    @pytest.mark.asyncio
    async def test_ended_sale_is_deactivated(self, session_factory) -> None:
        await make_pipeline(session_factory).run()

        items = copy.deepcopy(FIXTURE_ITEMS)
        del items[1]["sale"]
        await make_pipeline(session_factory, FixtureAdapter({"items": items})).run()

        with session_factory() as session:
            has_active_sale, min_price = session.execute(
                select(ProductDB.has_active_sale, ProductDB.min_price).where(
                    ProductDB.normalized_id == "fixture-abc00102"
                )
            ).one()
        assert not has_active_sale
        assert min_price == 3480

    @pytest.mark.asyncio
    async def test_rejected_sale_ends_active_sale(self, session_factory) -> None:
        await make_pipeline(session_factory).run()

        items = copy.deepcopy(FIXTURE_ITEMS)
        items[1]["sale"] = {"regular_price": 3480, "sale_price": 3480, "sale_name": "Autumn Sale"}
        stats = await make_pipeline(session_factory, FixtureAdapter({"items": items})).run()

        assert stats.updated == 1
        assert stats.sales_saved == 0
        with session_factory() as session:
            has_active_sale, min_price = session.execute(
                select(ProductDB.has_active_sale, ProductDB.min_price).where(
                    ProductDB.normalized_id == "fixture-abc00102"
                )
            ).one()
            price, sale_price = session.execute(
                select(PriceHistoryDB.price, PriceHistoryDB.sale_price)
                .join(ProductSourceDB, ProductSourceDB.id == PriceHistoryDB.product_source_id)
                .where(ProductSourceDB.external_id == "abc00102")
            ).one()
        assert not has_active_sale
        assert min_price == 3480
        assert price == 3480
        assert sale_price is None

    @pytest.mark.asyncio
    async def test_blob_storage(self, session_factory, tmp_path: Path) -> None:
        blobs = LocalBlobStorage(tmp_path / "blobs")
        await make_pipeline(session_factory, blob_storage=blobs).run()

        assert _count(session_factory, RawRecordDB, RawRecordDB.storage_ref.is_(None)) == 0
        assert blobs.get_storage_stats()["total_blobs"] == 5


class TestPipelineSelection:
    """Tests for discovery, limits and offsets."""

    @pytest.mark.asyncio
    async def test_limit(self, session_factory) -> None:
        adapter = RecordingAdapter()
        stats = await make_pipeline(session_factory, adapter).run(RunOptions(limit=2))

        assert stats.new == 2
        assert adapter.fetched == ["abc00101", "abc00102"]

    @pytest.mark.asyncio
    async def test_offset(self, session_factory) -> None:
        adapter = RecordingAdapter()
        stats = await make_pipeline(session_factory, adapter).run(RunOptions(offset=2, limit=2))

        assert adapter.fetched == ["xyz00015", "xyz00016"]
        assert stats.new == 1
        assert stats.skipped_invalid == 1

    @pytest.mark.asyncio
    async def test_forward_walk_stops_at_empty_page(self, session_factory) -> None:
        adapter = RecordingAdapter()
        await make_pipeline(session_factory, adapter).run()

        assert adapter.pages == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_backfill_interleaves_tail_pages(self, session_factory) -> None:
        adapter = RecordingAdapter()
        stats = await make_pipeline(session_factory, adapter).run(RunOptions(backfill=True))

        assert adapter.pages == [1, 3, 2]
        assert adapter.fetched == ["abc00101", "abc00102", "def00007", "xyz00015", "xyz00016"]
        assert stats.fetched == 5

    @pytest.mark.asyncio
    async def test_max_pages(self, session_factory) -> None:
        adapter = RecordingAdapter()
        stats = await make_pipeline(session_factory, adapter).run(RunOptions(max_pages=1))

        assert adapter.pages == [1]
        assert stats.fetched == 2

    @pytest.mark.asyncio
    async def test_start_page(self, session_factory) -> None:
        adapter = RecordingAdapter()
        await make_pipeline(session_factory, adapter).run(RunOptions(start_page=3))

        assert adapter.fetched == ["def00007"]

    @pytest.mark.asyncio
    async def test_duplicate_ids_across_pages(self, session_factory) -> None:
        class OverlappingAdapter(RecordingAdapter):
            async def list_items(self, page: int) -> list[str]:
                pages = {1: ["abc00101", "abc00102"], 2: ["abc00102", "def00007"]}
                return pages.get(page, [])

        adapter = OverlappingAdapter()
        stats = await make_pipeline(session_factory, adapter).run()

        assert adapter.fetched == ["abc00101", "abc00102", "def00007"]
        assert stats.new == 3


class TestPipelineFailures:
    """Tests for failure isolation and run-level aborts."""

    @pytest.mark.asyncio
    async def test_circuit_breaker(self, session_factory) -> None:
        adapter = FixtureAdapter(
            {"items": FIXTURE_ITEMS[:1], "missing_ids": ["gone1", "gone2", "gone3", "gone4"]}
        )
        pipeline = make_pipeline(
            session_factory, adapter, pipeline_config=PipelineConfig(circuit_breaker_threshold=3)
        )

        stats = await pipeline.run()

        assert stats.status == RunStatus.ABORTED
        assert stats.is_fatal
        assert "Circuit breaker" in stats.abort_reason
        assert stats.new == 1
        assert stats.not_found == 3
        assert adapter.fetch_count == 4
        assert adapter.closed

    @pytest.mark.asyncio
    async def test_found_item_resets_breaker(self, session_factory) -> None:
        class GappyAdapter(FixtureAdapter):
            async def list_items(self, page: int) -> list[str]:
                if page == 1:
                    return ["gone1", "gone2", "abc00101", "gone3", "gone4"]
                return []

        pipeline = make_pipeline(
            session_factory,
            GappyAdapter(),
            pipeline_config=PipelineConfig(circuit_breaker_threshold=3),
        )

        stats = await pipeline.run()

        assert stats.status == RunStatus.COMPLETED
        assert stats.not_found == 4
        assert stats.new == 1

    @pytest.mark.asyncio
    async def test_failing_parser_is_isolated(self, session_factory) -> None:
        adapter = FixtureAdapter()
        pipeline = make_pipeline(
            session_factory, adapter, parser=FailingParser(adapter, fail_id="abc00102")
        )

        stats = await pipeline.run()

        assert stats.status == RunStatus.COMPLETED
        assert stats.errored == 1
        assert stats.new == 3
        assert any("unexpected payload layout" in e for e in stats.errors)
        # the raw payload survived for a later retry
        assert _count(session_factory, RawRecordDB, RawRecordDB.external_id == "abc00102") == 1

    @pytest.mark.asyncio
    async def test_transient_fetch_error_is_retried(self, session_factory) -> None:
        adapter = FlakyAdapter({"abc00101": 2})
        stats = await make_pipeline(session_factory, adapter).run()

        assert stats.errored == 0
        assert stats.new == 4

    @pytest.mark.asyncio
    async def test_persistent_fetch_error_fails_item(self, session_factory) -> None:
        adapter = FlakyAdapter({"abc00101": 10})
        pipeline = make_pipeline(
            session_factory, adapter, pipeline_config=PipelineConfig(fetch_retries=2)
        )

        stats = await pipeline.run()

        assert stats.status == RunStatus.COMPLETED
        assert stats.errored == 1
        assert stats.new == 3
        assert adapter.failures["abc00101"] == 7

    @pytest.mark.asyncio
    async def test_page_count_failure_walks_forward(self, session_factory) -> None:
        adapter = PageCountFailingAdapter()
        pipeline = make_pipeline(
            session_factory, adapter, pipeline_config=PipelineConfig(fetch_retries=1)
        )

        stats = await pipeline.run(RunOptions(backfill=True))

        assert stats.status == RunStatus.COMPLETED
        assert adapter.pages == [1, 2, 3, 4]
        assert stats.new == 4
        assert stats.errors == ["page count: Service unavailable"]

    @pytest.mark.asyncio
    async def test_storage_unavailable(self, tmp_path: Path) -> None:
        engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'dir' / 'db.sqlite'}")
        adapter = FixtureAdapter()
        pipeline = make_pipeline(sessionmaker(bind=engine), adapter)

        stats = await pipeline.run()

        assert stats.status == RunStatus.FAILED
        assert "storage" in stats.abort_reason
        assert adapter.fetch_count == 0
        assert adapter.closed

    def test_adapter_without_parser(self, session_factory) -> None:
        with pytest.raises(ValueError):
            IngestionPipeline(session_factory, "list-only", ListOnlyAdapter())


class TestPipelineEnrichment:
    """Tests for reference index enrichment."""

    @pytest.fixture
    def reference(self, session_factory) -> None:
        with session_factory() as session:
            ReferenceIndex(session).add_entries(
                [ReferenceEntry(business_code="ABC-101", identity_name="Sora Aoi", source="wiki")]
            )
            session.commit()

    @pytest.mark.asyncio
    async def test_reference_names_replace_crawled_names(self, session_factory, reference) -> None:
        await make_pipeline(session_factory).run()

        assert _performers_of(session_factory, "fixture-abc00101") == ["Sora Aoi"]
        assert _performers_of(session_factory, "fixture-abc00102") == ["Mina Kato"]

    @pytest.mark.asyncio
    async def test_skip_enrichment(self, session_factory, reference) -> None:
        await make_pipeline(session_factory).run(RunOptions(skip_enrichment=True))

        assert _performers_of(session_factory, "fixture-abc00101") == ["Aoi Sora", "Mina Kato"]

    @pytest.mark.asyncio
    async def test_custom_name_filter(self, session_factory) -> None:
        pipeline = make_pipeline(
            session_factory, name_filter=lambda name, title: "歳" not in name
        )
        await pipeline.run()

        assert _performers_of(session_factory, "fixture-xyz00015") == []
        assert _performers_of(session_factory, "fixture-def00007") == ["Aoi Sora", "Hana Mori"]
