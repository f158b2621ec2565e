"""
CLI for valuation enrichment.

Usage:
    valuation-scraper run --source data/search.json --lanes 3
    valuation-scraper run --limit 20 --skip-existing
"""
from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from etl.antibot.pacing import LaneRateLimiter
from etl.antibot.retry import RetryClassifier, RetryPolicy
from etl.config import ImportConfig, ScraperConfig, load_env
from etl.importer.source import SourceDataset

from .browser import BrowserSessionFactory, ValuationSearcher
from .queue import ScrapeQueueManager, summarize
from .sink import SourceDatasetSink

LOGGER = logging.getLogger(__name__)


def build_manager(config: ScraperConfig, dataset: SourceDataset, skip_existing: bool) -> ScrapeQueueManager:
    rate_limiter = LaneRateLimiter(
        requests_per_minute=config.requests_per_minute,
        retry_delay=config.rate_limit_delay,
    )
    policy = RetryPolicy(
        max_attempts=config.max_attempts,
        connection_abort_delay=config.connection_abort_delay,
        server_error_delay=config.server_error_delay,
        rate_limit_delay=config.rate_limit_delay,
        backoff_base=config.backoff_base,
        backoff_cap=config.backoff_cap,
    )
    return ScrapeQueueManager(
        session_factory=BrowserSessionFactory.from_config(config),
        searcher=ValuationSearcher(config.site_url),
        rate_limiter=rate_limiter,
        classifier=RetryClassifier(policy, rate_limiter=rate_limiter),
        sink=SourceDatasetSink(dataset),
        skip_if=dataset.has_valuation if skip_existing else None,
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """Valuation enrichment CLI."""
    load_env()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


@cli.command()
@click.option(
    "--source",
    "source_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Listing dataset (defaults to IMPORT_SOURCE_PATH)",
)
@click.option("--lanes", type=int, help="Concurrent lanes (defaults to SCRAPER_LANES)")
@click.option("--limit", type=int, help="Only the first N addresses")
@click.option("--skip-existing", is_flag=True, help="Skip listings that already carry valuation data")
def run(source_path: Optional[Path], lanes: Optional[int], limit: Optional[int], skip_existing: bool) -> None:
    """Scrape valuations for every listing address in the dataset."""
    config = ScraperConfig.from_env()
    path = source_path or ImportConfig.from_env().source_path
    dataset = SourceDataset.load(path)

    addresses = dataset.addresses()
    if limit is not None:
        addresses = addresses[:limit]
    lane_count = lanes or config.lanes

    click.echo(f"Scraping {len(addresses)} address(es) from {path} over {lane_count} lane(s)")
    manager = build_manager(config, dataset, skip_existing)
    report = asyncio.run(manager.run(addresses, lane_count))

    for outcome, count in summarize(report).items():
        click.echo(f"  {outcome:10} {count}")
    if report.failures:
        click.echo("Failed addresses:")
        for number, failure in enumerate(report.failures, start=1):
            click.echo(f"  {number}. {failure.address or 'NULL'}: {failure.error}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
