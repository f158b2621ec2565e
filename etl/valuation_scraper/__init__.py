"""Valuation enrichment scraper.

Looks up each listing address on the valuation site and writes the result
back into the source dataset:
- Round-robin lanes, each with its own request pacing
- Tiered retry policy (connection aborts, 5xx, rate limits, backoff)
- Not-found addresses get a placeholder valuation instead of failing
"""

from .queue import ScrapeOutcome, ScrapeQueueManager, ScrapeReport, ScrapeResult, ScrapeTask
from .sink import SourceDatasetSink

__all__ = [
    "ScrapeOutcome",
    "ScrapeQueueManager",
    "ScrapeReport",
    "ScrapeResult",
    "ScrapeTask",
    "SourceDatasetSink",
]
