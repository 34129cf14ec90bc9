"""
Listing Hub Ingestion Framework
===============================

This package provides the ingestion pipeline for product listings from
multiple marketplaces and their consolidation into canonical products.

Pipeline Stages:
1. Discovery - Adapters list item keys page by page
2. Fetch - Requests are paced by a per-target adaptive rate limiter
3. Raw store - Payloads are stored with a content hash for dedup
4. Parse and validate - Parsers produce NormalizedRecords; junk pages are rejected
5. Persist - Products, listings, performers, tags, media and sales are upserted
6. Mark processed - Last step, so partial failures are revisited next run
"""

from listing_hub.ingestion.registry import (
    GlobalConfig,
    IdentityConfig,
    PipelineConfig,
    RateLimitConfig,
    SourceConfig,
    SourceRegistry,
    get_default_registry,
)
from listing_hub.ingestion.rate_limiter import (
    RateLimiter,
    create_rate_limiter,
    get_rate_limit_config,
)
from listing_hub.ingestion.storage import (
    BlobStorage,
    LocalBlobStorage,
    get_default_blob_storage,
)
from listing_hub.ingestion.raw_store import (
    RawLinkResult,
    RawStore,
    RawUpsertResult,
    compute_content_hash,
)
from listing_hub.ingestion.validation import (
    ValidationPolicy,
    ValidationResult,
    validate_record_fields,
)
from listing_hub.ingestion.linker import (
    BatchRelationLinker,
    NameFilter,
    PerformerNamePolicy,
)
from listing_hub.ingestion.sales import SaleTracker
from listing_hub.ingestion.pipeline import (
    IngestionPipeline,
    RunOptions,
    RunStats,
)
from listing_hub.ingestion.jobs import (
    JobStatus,
    enqueue_ingestion,
    get_job_status,
    ingest_source,
    run_source_sync,
)

__all__ = [
    # Registry
    "SourceRegistry",
    "SourceConfig",
    "RateLimitConfig",
    "PipelineConfig",
    "IdentityConfig",
    "GlobalConfig",
    "get_default_registry",
    # Rate limiting
    "RateLimiter",
    "create_rate_limiter",
    "get_rate_limit_config",
    # Storage
    "BlobStorage",
    "LocalBlobStorage",
    "get_default_blob_storage",
    "RawStore",
    "RawUpsertResult",
    "RawLinkResult",
    "compute_content_hash",
    # Validation
    "ValidationPolicy",
    "ValidationResult",
    "validate_record_fields",
    # Linking
    "BatchRelationLinker",
    "NameFilter",
    "PerformerNamePolicy",
    # Sales
    "SaleTracker",
    # Pipeline
    "IngestionPipeline",
    "RunOptions",
    "RunStats",
    # Jobs
    "ingest_source",
    "run_source_sync",
    "enqueue_ingestion",
    "get_job_status",
    "JobStatus",
]
