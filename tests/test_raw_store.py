"""Tests for the raw payload store."""

from pathlib import Path

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from listing_hub.core.errors import StorageError
from listing_hub.db.models import ProductDB, ProductRawLinkDB, RawRecordDB
from listing_hub.ingestion.raw_store import RawStore, compute_content_hash, encode_payload
from listing_hub.ingestion.storage import BlobStorage, LocalBlobStorage


class BrokenBlobStorage(BlobStorage):
    """Blob storage whose writes always fail."""

    def put(self, source, external_id, content, content_hash):
        raise StorageError("disk full", transient=True)

    def get(self, ref):
        return None

    def delete(self, ref):
        return False


def _processed_at(session: Session, raw_id: str):
    return session.execute(
        select(RawRecordDB.processed_at).where(RawRecordDB.id == raw_id)
    ).scalar_one()


class TestContentHash:
    """Tests for payload hashing."""

    def test_dict_key_order_does_not_matter(self) -> None:
        assert compute_content_hash({"a": 1, "b": 2}) == compute_content_hash({"b": 2, "a": 1})

    def test_different_content_different_hash(self) -> None:
        assert compute_content_hash(b"one") != compute_content_hash(b"two")

    def test_text_and_bytes_agree(self) -> None:
        assert compute_content_hash("タイトル") == compute_content_hash("タイトル".encode("utf-8"))

    def test_encode_payload_keeps_unicode(self) -> None:
        assert encode_payload({"title": "夏"}) == '{"title":"夏"}'.encode("utf-8")


class TestRawStoreUpsert:
    """Tests for change detection on upsert."""

    def test_new_record(self, session: Session) -> None:
        store = RawStore(session)
        result = store.upsert("fixture", "abc001", "https://example.com/abc001", {"id": "abc001"})
        session.commit()

        assert result.is_new
        assert not result.should_skip
        assert result.changed
        assert result.storage_ref is None
        assert store.count_unprocessed("fixture") == 1

        record = store.get("fixture", "abc001")
        assert record is not None
        assert record.content_hash == result.content_hash
        assert record.payload == encode_payload({"id": "abc001"})

    def test_same_payload_unprocessed_is_not_skipped(self, session: Session) -> None:
        store = RawStore(session)
        store.upsert("fixture", "abc001", None, {"id": "abc001"})
        session.commit()

        result = store.upsert("fixture", "abc001", None, {"id": "abc001"})

        assert not result.is_new
        assert not result.changed
        assert not result.should_skip

    def test_same_payload_processed_is_skipped(self, session: Session) -> None:
        store = RawStore(session)
        first = store.upsert("fixture", "abc001", None, {"id": "abc001"})
        store.mark_processed(first.id)
        session.commit()

        result = store.upsert("fixture", "abc001", None, {"id": "abc001"})

        assert result.should_skip
        assert result.id == first.id

    def test_changed_payload_clears_processed(self, session: Session) -> None:
        store = RawStore(session)
        first = store.upsert("fixture", "abc001", None, {"id": "abc001", "price": 100})
        store.mark_processed(first.id)
        session.commit()
        assert _processed_at(session, first.id) is not None

        result = store.upsert("fixture", "abc001", None, {"id": "abc001", "price": 80})
        session.commit()

        assert result.id == first.id
        assert result.changed
        assert not result.should_skip
        assert result.content_hash != first.content_hash
        assert _processed_at(session, first.id) is None

    def test_one_row_per_source_item(self, session: Session) -> None:
        store = RawStore(session)
        store.upsert("fixture", "abc001", None, b"v1")
        store.upsert("fixture", "abc001", None, b"v2")
        store.upsert("other", "abc001", None, b"v1")
        session.commit()

        count = session.execute(select(func.count()).select_from(RawRecordDB)).scalar_one()
        assert count == 2


class TestRawStoreBlobs:
    """Tests for blob storage and inline fallback."""

    def test_payload_goes_to_blob_storage(self, session: Session, tmp_path: Path) -> None:
        store = RawStore(session, LocalBlobStorage(tmp_path))
        result = store.upsert("fixture", "abc001", None, {"id": "abc001"})
        session.commit()

        assert result.storage_ref is not None
        record = store.get("fixture", "abc001")
        assert record.payload is None
        assert store.load_payload(result.id) == encode_payload({"id": "abc001"})

    def test_blob_failure_falls_back_to_inline(self, session: Session) -> None:
        store = RawStore(session, BrokenBlobStorage())
        result = store.upsert("fixture", "abc001", None, b"raw bytes")
        session.commit()

        assert result.storage_ref is None
        assert store.load_payload(result.id) == b"raw bytes"

    def test_load_missing_record(self, session: Session) -> None:
        assert RawStore(session).load_payload("does-not-exist") is None


class TestRawStoreState:
    """Tests for processed state and product links."""

    @pytest.fixture
    def product_id(self, session: Session) -> str:
        product = ProductDB(id="product-1", normalized_id="fixture-abc001", title="Test Product")
        session.add(product)
        session.commit()
        return product.id

    def test_link_product_is_idempotent(self, session: Session, product_id: str) -> None:
        store = RawStore(session)
        raw = store.upsert("fixture", "abc001", None, b"v1")

        first = store.link_product(product_id, "fixture", raw.id, raw.content_hash)
        second = store.link_product(product_id, "fixture", raw.id, raw.content_hash)
        session.commit()

        assert first.created
        assert not second.created
        assert not second.needs_reprocessing
        count = session.execute(select(func.count()).select_from(ProductRawLinkDB)).scalar_one()
        assert count == 1

    def test_link_product_detects_new_hash(self, session: Session, product_id: str) -> None:
        store = RawStore(session)
        raw = store.upsert("fixture", "abc001", None, b"v1")
        store.link_product(product_id, "fixture", raw.id, raw.content_hash)

        result = store.link_product(product_id, "fixture", raw.id, "different-hash")

        assert not result.created
        assert result.needs_reprocessing

    def test_link_records_raw_table(self, session: Session, product_id: str) -> None:
        store = RawStore(session)
        raw = store.upsert("fixture", "abc001", None, b"v1")
        store.link_product(product_id, "fixture", raw.id, raw.content_hash)
        session.commit()

        link = session.execute(select(ProductRawLinkDB)).scalar_one()
        assert link.raw_table == "raw_records"
        assert link.content_hash_seen == raw.content_hash

    def test_unprocessed_counts(self, session: Session) -> None:
        store = RawStore(session)
        first = store.upsert("fixture", "abc001", None, b"1")
        store.upsert("fixture", "abc002", None, b"2")
        store.upsert("other", "x1", None, b"3")
        store.mark_processed(first.id)
        session.commit()

        assert store.count_unprocessed() == 2
        assert store.count_unprocessed("fixture") == 1
        assert store.count_unprocessed_by_source() == {"fixture": 1, "other": 1}
        assert [r.external_id for r in store.list_unprocessed("fixture")] == ["abc002"]
