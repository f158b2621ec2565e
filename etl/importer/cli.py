"""
CLI for listing imports.

Usage:
    listing-import init-db
    listing-import start --batch-size 25 --run
    listing-import status 7
    listing-import poll
"""
from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path
from typing import AsyncIterator, Optional, Tuple

import click

from etl import db
from etl.config import ImportConfig, load_env
from etl.models import ImportJob, ImportStatus
from etl.upsert import PostgresListingRepository, RecordMerger

from .coordinator import BatchCoordinator, ImportPoller
from .dispatch import NullDispatcher
from .errors import ImportJobError, JobFailedError
from .progress import PostgresProgressStore
from .source import SourceDataset

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def _open(
    config: ImportConfig,
    source_path: Optional[Path] = None,
) -> AsyncIterator[Tuple[PostgresProgressStore, BatchCoordinator]]:
    """Connection, progress store and a poller-mode coordinator for one command."""
    source = SourceDataset.load(source_path or config.source_path)
    conn = await db.get_connection(config.dsn)
    try:
        store = PostgresProgressStore(conn)
        merger = RecordMerger(PostgresListingRepository(conn), config.image_size)
        coordinator = BatchCoordinator(store, merger, source, NullDispatcher(), config.batch_size)
        yield store, coordinator
    finally:
        await conn.close()


@asynccontextmanager
async def _open_store(config: ImportConfig) -> AsyncIterator[PostgresProgressStore]:
    conn = await db.get_connection(config.dsn)
    try:
        yield PostgresProgressStore(conn)
    finally:
        await conn.close()


def _echo_job(job: ImportJob) -> None:
    percent = (job.current_offset / job.total_items * 100) if job.total_items else 100.0
    click.echo(
        f"Import {job.id}: {job.status.value} {job.current_offset}/{job.total_items} "
        f"({percent:.1f}%) batch={job.batch_size} updated={job.updated_at:%Y-%m-%d %H:%M:%S}"
    )
    for entry in job.error or []:
        where = f"#{entry['index']} ({entry.get('externalId')})" if "index" in entry else entry.get("stage")
        click.echo(f"  error {where}: {entry.get('error')}")


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except ImportJobError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Listing import CLI."""
    load_env()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    ctx.obj = ImportConfig.from_env()


@cli.command("init-db")
@click.pass_obj
def init_db(config: ImportConfig) -> None:
    """Create the listing and import_progress tables."""

    async def _init():
        conn = await db.get_connection(config.dsn)
        try:
            await db.ensure_schema(conn)
        finally:
            await conn.close()

    _run(_init())
    click.echo("Schema ready")


@cli.command()
@click.option("--batch-size", type=int, help="Listings per batch (defaults to IMPORT_BATCH_SIZE)")
@click.option(
    "--source",
    "source_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Listing dataset (defaults to IMPORT_SOURCE_PATH)",
)
@click.option("--run", "run_all", is_flag=True, help="Keep advancing until the import finishes")
@click.pass_obj
def start(config: ImportConfig, batch_size: Optional[int], source_path: Optional[Path], run_all: bool) -> None:
    """Create an import job and process its first batch."""
    if batch_size is not None and batch_size <= 0:
        raise click.BadParameter("must be positive", param_hint="--batch-size")

    async def _start():
        async with _open(config, source_path) as (store, coordinator):
            job_id = await coordinator.start_import(batch_size=batch_size)
            if run_all:
                await ImportPoller(coordinator).run_until_done(job_id)
            job = await store.get(job_id)
            _echo_job(job)
            if not run_all and not job.status.is_terminal:
                click.echo(f"Continue with: listing-import run {job_id}")

    _run(_start())


@cli.command()
@click.argument("job_id", type=int)
@click.pass_obj
def advance(config: ImportConfig, job_id: int) -> None:
    """Process the next batch of JOB_ID."""

    async def _advance():
        async with _open(config) as (_, coordinator):
            result = await coordinator.advance(job_id)
            _echo_job(result.job)
            if result.job.status is ImportStatus.FAILED:
                raise JobFailedError(job_id)

    _run(_advance())


@cli.command("run")
@click.argument("job_id", type=int)
@click.option("--max-batches", type=int, help="Stop after N batches")
@click.option("--pause", type=float, default=0.0, help="Seconds between batches")
@click.pass_obj
def run_job(config: ImportConfig, job_id: int, max_batches: Optional[int], pause: float) -> None:
    """Advance JOB_ID until it completes or fails."""

    async def _run_job():
        async with _open(config) as (_, coordinator):
            job = await ImportPoller(coordinator, pause=pause).run_until_done(job_id, max_batches=max_batches)
            _echo_job(job)
            if job.status is ImportStatus.FAILED:
                raise JobFailedError(job_id)

    _run(_run_job())


@cli.command()
@click.pass_obj
def poll(config: ImportConfig) -> None:
    """Advance every in-progress import by one batch."""

    async def _poll():
        async with _open(config) as (_, coordinator):
            results = await ImportPoller(coordinator).poll_once()
            if not results:
                click.echo("No imports in progress")
            for result in results:
                _echo_job(result.job)

    _run(_poll())


@cli.command()
@click.argument("job_id", type=int, required=False)
@click.option("--limit", default=10, type=int, help="Jobs to list when no JOB_ID is given")
@click.pass_obj
def status(config: ImportConfig, job_id: Optional[int], limit: int) -> None:
    """Show JOB_ID, or the most recent imports."""

    async def _status():
        async with _open_store(config) as store:
            if job_id is None:
                jobs = await store.list_recent(limit)
                if not jobs:
                    click.echo("No imports yet")
                for job in jobs:
                    _echo_job(job)
                return
            job = await store.get(job_id)
            if job is None:
                click.echo(f"Import {job_id} not found", err=True)
                sys.exit(1)
            _echo_job(job)

    _run(_status())


@cli.command()
@click.argument("job_id", type=int)
@click.pass_obj
def reset(config: ImportConfig, job_id: int) -> None:
    """Put a failed import back in progress at its committed offset."""

    async def _reset():
        async with _open_store(config) as store:
            if not await store.reset(job_id):
                click.echo(f"Import {job_id} is not in failed state", err=True)
                sys.exit(1)
            _echo_job(await store.get(job_id))

    _run(_reset())


@cli.command()
@click.option("--minutes", type=float, help="Idle threshold (defaults to IMPORT_STALE_AFTER)")
@click.pass_obj
def stale(config: ImportConfig, minutes: Optional[float]) -> None:
    """List in-progress imports whose progress has not moved recently."""
    threshold = timedelta(minutes=minutes) if minutes is not None else timedelta(seconds=config.stale_after)

    async def _stale():
        async with _open_store(config) as store:
            jobs = await store.find_stale(threshold)
            if not jobs:
                click.echo("No stale imports")
            for job in jobs:
                _echo_job(job)

    _run(_stale())


if __name__ == "__main__":
    cli()
