"""Prefect flows: scheduled import polling and valuation enrichment."""
from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from typing import Any, Dict, List, Optional

from prefect import flow, get_run_logger, task

from etl import db
from etl.config import ImportConfig, ScraperConfig, load_env
from etl.importer.coordinator import BatchCoordinator, ImportPoller
from etl.importer.dispatch import NullDispatcher
from etl.importer.progress import PostgresProgressStore
from etl.importer.source import SourceDataset
from etl.upsert import PostgresListingRepository, RecordMerger
from etl.valuation_scraper.cli import build_manager
from etl.valuation_scraper.queue import summarize

load_env()


async def _with_coordinator(config: ImportConfig, action):
    source = SourceDataset.load(config.source_path)
    conn = await db.get_connection(config.dsn)
    try:
        store = PostgresProgressStore(conn)
        merger = RecordMerger(PostgresListingRepository(conn), config.image_size)
        coordinator = BatchCoordinator(store, merger, source, NullDispatcher(), config.batch_size)
        return await action(coordinator)
    finally:
        await conn.close()


@task
def start_import_task(batch_size: Optional[int] = None) -> int:
    """Create an import job and process its first batch."""
    config = ImportConfig.from_env()
    job_id = asyncio.run(
        _with_coordinator(config, lambda coordinator: coordinator.start_import(batch_size=batch_size))
    )
    get_run_logger().info("start_import_task import_id=%s", job_id)
    return job_id


@task(retries=2, retry_delay_seconds=60)
def run_import_task(job_id: int, max_batches: Optional[int] = None) -> Dict[str, Any]:
    """Advance one import until it is terminal or the batch budget is spent."""
    config = ImportConfig.from_env()

    async def _run(coordinator: BatchCoordinator):
        return await ImportPoller(coordinator).run_until_done(job_id, max_batches=max_batches)

    job = asyncio.run(_with_coordinator(config, _run))
    get_run_logger().info(
        "run_import_task import_id=%s offset=%s/%s status=%s",
        job.id,
        job.current_offset,
        job.total_items,
        job.status.value,
    )
    return {"import_id": job.id, "offset": job.current_offset, "status": job.status.value}


@task
def poll_imports_task() -> List[Dict[str, Any]]:
    """Advance every in-progress import by one batch."""
    config = ImportConfig.from_env()

    async def _poll(coordinator: BatchCoordinator):
        return await ImportPoller(coordinator).poll_once()

    results = asyncio.run(_with_coordinator(config, _poll))
    summary = [
        {"import_id": r.job.id, "offset": r.job.current_offset, "status": r.job.status.value}
        for r in results
    ]
    get_run_logger().info("poll_imports_task advanced=%s", len(summary))
    return summary


@task
def stale_imports_task() -> List[int]:
    """Report in-progress imports whose cursor has not moved recently."""
    config = ImportConfig.from_env()

    async def _stale() -> List[int]:
        conn = await db.get_connection(config.dsn)
        try:
            jobs = await PostgresProgressStore(conn).find_stale(timedelta(seconds=config.stale_after))
        finally:
            await conn.close()
        return [job.id for job in jobs]

    stale = asyncio.run(_stale())
    if stale:
        get_run_logger().warning("stale_imports_task import_ids=%s", stale)
    return stale


@flow(name="import-flow")
def import_flow(
    job_id: Optional[int] = None,
    start_new: bool = False,
    batch_size: Optional[int] = None,
    max_batches: Optional[int] = None,
) -> Dict[str, Any]:
    """Start or resume an import; with no job given, sweep all in-progress imports."""
    logger = get_run_logger()
    if start_new:
        job_id = start_import_task(batch_size)

    if job_id is not None:
        summary: Dict[str, Any] = run_import_task(job_id, max_batches)
    else:
        summary = {"advanced": poll_imports_task()}
    summary["stale"] = stale_imports_task()
    logger.info("import_flow summary=%s", json.dumps(summary))
    return summary


@flow(name="valuation-enrichment-flow")
def enrichment_flow(
    lanes: Optional[int] = None,
    limit: Optional[int] = None,
    skip_existing: bool = True,
) -> Dict[str, int]:
    """Scrape valuations for the source dataset and write them back."""
    import_config = ImportConfig.from_env()
    config = ScraperConfig.from_env()
    dataset = SourceDataset.load(import_config.source_path)

    addresses = dataset.addresses()
    if limit is not None:
        addresses = addresses[:limit]

    manager = build_manager(config, dataset, skip_existing)
    report = asyncio.run(manager.run(addresses, lanes or config.lanes))
    summary = summarize(report)
    get_run_logger().info("enrichment_flow summary=%s", json.dumps(summary))
    return summary


if __name__ == "__main__":
    import_flow()
