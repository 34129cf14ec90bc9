"""
Background Jobs Module
======================

Defines arq tasks for asynchronous ingestion processing.
Uses Redis as the job queue backend.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Any
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from arq.jobs import Job
from arq.jobs import JobStatus as ArqJobStatus

from listing_hub.core.enums import RunStatus
from listing_hub.db.engine import get_session, get_session_factory
from listing_hub.ingestion.adapters import get_adapter
from listing_hub.ingestion.pipeline import IngestionPipeline, RunOptions, RunStats
from listing_hub.ingestion.rate_limiter import create_rate_limiter
from listing_hub.ingestion.registry import get_default_registry
from listing_hub.ingestion.sales import SaleTracker
from listing_hub.ingestion.storage import get_default_blob_storage

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Status of an ingestion job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def get_redis_settings() -> RedisSettings:
    """Get Redis connection settings from environment."""
    return RedisSettings(
        host=os.environ.get("REDIS_HOST", "localhost"),
        port=int(os.environ.get("REDIS_PORT", "6379")),
        database=int(os.environ.get("REDIS_DB", "0")),
    )


def build_pipeline(source_name: str) -> IngestionPipeline:
    """
    Assemble a pipeline for a configured source.

    Args:
        source_name: Name of the source in sources.yaml

    Returns:
        IngestionPipeline wired to the default session factory and blob storage

    Raises:
        ValueError: If the source is unknown, disabled, or its adapter is missing
    """
    registry = get_default_registry()
    source_config = registry.get_source(source_name)
    if source_config is None:
        raise ValueError(f"Source '{source_name}' not found")
    if not source_config.enabled:
        raise ValueError(f"Source '{source_name}' is disabled")

    global_config = registry.global_config
    adapter_config = {
        "user_agent": global_config.user_agent,
        "timeout": global_config.request_timeout,
        **source_config.custom_config,
    }
    adapter = get_adapter(source_config.adapter, adapter_config)
    if adapter is None:
        raise ValueError(f"Adapter '{source_config.adapter}' not found")

    blob_path = os.environ.get("BLOB_STORAGE_PATH") or global_config.blob_storage_path
    return IngestionPipeline(
        get_session_factory(),
        source_name,
        adapter,
        rate_limiter=create_rate_limiter(source_config.adapter, source_config.rate_limit),
        blob_storage=get_default_blob_storage(blob_path),
        pipeline_config=registry.pipeline,
    )


async def ingest_source(
    ctx: dict[str, Any],
    source_name: str,
    limit: int | None = None,
    offset: int = 0,
    force_reprocess: bool = False,
    backfill: bool = False,
) -> dict[str, Any]:
    """
    Main ingestion task.

    Args:
        ctx: arq context (contains Redis connection)
        source_name: Name of the source to ingest
        limit: Maximum items to process (pipeline default_limit when omitted)
        offset: Discovered items to skip before processing
        force_reprocess: Reprocess unchanged payloads
        backfill: Also walk the source index backward from the last page

    Returns:
        RunStats as dictionary, with the job ID
    """
    job_id = ctx.get("job_id", str(uuid4()))

    try:
        pipeline = build_pipeline(source_name)
    except ValueError as e:
        stats = RunStats(source=source_name, status=RunStatus.FAILED, abort_reason=str(e))
        stats.errors.append(str(e))
        result = stats.to_dict()
        result["job_id"] = job_id
        return result

    source_config = get_default_registry().get_source(source_name)
    options = RunOptions(
        limit=limit if limit is not None else pipeline.config.default_limit,
        offset=offset,
        force_reprocess=force_reprocess,
        backfill=backfill,
        max_pages=source_config.max_pages if source_config else None,
    )
    stats = await pipeline.run(options)

    result = stats.to_dict()
    result["job_id"] = job_id
    return result


async def run_source_sync(
    source_name: str,
    limit: int | None = None,
    offset: int = 0,
    force_reprocess: bool = False,
    backfill: bool = False,
) -> dict[str, Any]:
    """
    Run ingestion in-process (without arq).

    Useful for CLI commands with --sync flag.
    """
    ctx: dict[str, Any] = {"job_id": str(uuid4())}
    return await ingest_source(ctx, source_name, limit, offset, force_reprocess, backfill)


async def sweep_expired_sales(ctx: dict[str, Any]) -> dict[str, Any]:
    """Deactivate sales whose window has ended."""
    with get_session() as session:
        count = SaleTracker(session).deactivate_expired()
        session.commit()
    return {"deactivated": count}


async def merge_placeholders(
    ctx: dict[str, Any],
    dry_run: bool = False,
    limit: int | None = None,
    code: str | None = None,
) -> dict[str, Any]:
    """Run one placeholder identity merge pass."""
    from listing_hub.identity import IdentityMerger, PlaceholderPolicy

    registry = get_default_registry()
    with get_session() as session:
        merger = IdentityMerger(
            session,
            PlaceholderPolicy.from_config(registry.identity),
            probe_limit=registry.identity.probe_limit,
        )
        report = merger.run(dry_run=dry_run, limit=limit, code=code)
        if not dry_run:
            session.commit()
    return report.to_dict()


async def enqueue_ingestion(
    source_name: str,
    limit: int | None = None,
    offset: int = 0,
    force_reprocess: bool = False,
    backfill: bool = False,
) -> str:
    """
    Enqueue an ingestion job for async processing.

    Returns:
        Job ID
    """
    redis = await create_pool(get_redis_settings())
    job = await redis.enqueue_job(
        "ingest_source", source_name, limit, offset, force_reprocess, backfill
    )
    await redis.close()
    return job.job_id


async def get_job_status(job_id: str) -> dict[str, Any] | None:
    """
    Get the status of an ingestion job.

    Args:
        job_id: Job ID to look up

    Returns:
        Job info dict, or None if not found
    """
    redis = await create_pool(get_redis_settings())
    try:
        job = Job(job_id, redis)
        status = await job.status()
        if status == ArqJobStatus.not_found:
            return None
        info = await job.result_info()
        if status == ArqJobStatus.in_progress:
            job_status = JobStatus.RUNNING
        elif status == ArqJobStatus.complete:
            job_status = JobStatus.COMPLETED if info is not None and info.success else JobStatus.FAILED
        else:
            job_status = JobStatus.PENDING
        return {
            "job_id": job_id,
            "status": job_status.value,
            "result": info.result if info else None,
        }
    finally:
        await redis.close()


class WorkerSettings:
    """arq worker settings."""

    functions = [ingest_source, sweep_expired_sales, merge_placeholders]
    redis_settings = get_redis_settings()
    max_jobs = 5
    job_timeout = 3600  # 1 hour
    keep_result = 86400  # 24 hours
