"""Multi-lane valuation scrape queue with per-lane pacing and tiered retries."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    AsyncContextManager,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
)

from etl.address_normalizer import address_key, clean_address, is_searchable
from etl.antibot.pacing import LaneRateLimiter
from etl.antibot.retry import RetryAction, RetryBudget, RetryClassifier
from etl.models import ValuationData

LOGGER = logging.getLogger(__name__)

INVALID_ADDRESS = "Invalid or null address"
ALREADY_VALUED = "Already has valuation data"


class ScrapeOutcome(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ScrapeTask:
    index: int
    address: Optional[str]
    lane: int


@dataclass
class ScrapeResult:
    index: int
    address: Optional[str]
    outcome: ScrapeOutcome
    valuation: Optional[ValuationData] = None
    attempts: int = 0
    error: Optional[str] = None


@dataclass
class ScrapeReport:
    results: List[ScrapeResult] = field(default_factory=list)
    failures: List[ScrapeResult] = field(default_factory=list)

    def count(self, outcome: ScrapeOutcome) -> int:
        return sum(1 for result in self.results if result.outcome is outcome)

    def log_summary(self) -> None:
        LOGGER.info(
            "Scrape summary: total=%d found=%d not_found=%d skipped=%d failed=%d",
            len(self.results),
            self.count(ScrapeOutcome.FOUND),
            self.count(ScrapeOutcome.NOT_FOUND),
            self.count(ScrapeOutcome.SKIPPED),
            self.count(ScrapeOutcome.FAILED),
        )
        for number, failure in enumerate(self.failures, start=1):
            LOGGER.info("  %d. %s: %s", number, failure.address or "NULL", failure.error)


class SessionFactory(Protocol):
    def session(self) -> AsyncContextManager[Any]:
        ...


class Searcher(Protocol):
    async def lookup(self, page: Any, address: str) -> ValuationData:
        ...


class ValuationSink(Protocol):
    async def record(self, address: str, valuation: ValuationData) -> None:
        ...


def unique_addresses(addresses: Sequence[Optional[str]]) -> List[Optional[str]]:
    """Drop repeats of an address (same `address_key`), keeping first occurrences in order.

    Unreadable addresses are kept as they are so each one is reported.
    """
    seen = set()
    unique: List[Optional[str]] = []
    for address in addresses:
        key = address_key(address)
        if key:
            if key in seen:
                continue
            seen.add(key)
        unique.append(address)
    return unique


def partition(addresses: Sequence[Optional[str]], lane_count: int) -> List[List[ScrapeTask]]:
    """Round-robin split: address i goes to lane i % lane_count."""
    if lane_count < 1:
        raise ValueError("lane_count must be at least 1")
    lanes: List[List[ScrapeTask]] = [[] for _ in range(lane_count)]
    for index, address in enumerate(addresses):
        lane = index % lane_count
        lanes[lane].append(ScrapeTask(index=index, address=address, lane=lane))
    return lanes


class ScrapeQueueManager:
    """Runs valuation lookups over N independent lanes.

    Lanes run concurrently and process their tasks strictly in order, so at
    most ``lane_count`` browser sessions are open at once. Each attempt waits
    for a pacing slot in its own lane, opens a fresh session and closes it
    before the outcome is classified. Not-found is a terminal success; every
    other error is retried per the classifier until the attempt ceiling.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        searcher: Searcher,
        rate_limiter: LaneRateLimiter,
        classifier: Optional[RetryClassifier] = None,
        sink: Optional[ValuationSink] = None,
        skip_if: Optional[Callable[[str], bool]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.searcher = searcher
        self.rate_limiter = rate_limiter
        self.classifier = classifier or RetryClassifier(rate_limiter=rate_limiter)
        self.sink = sink
        self.skip_if = skip_if
        self._sleep = sleep

    async def run(self, addresses: Sequence[Optional[str]], lane_count: int) -> ScrapeReport:
        unique = unique_addresses(addresses)
        if len(unique) < len(addresses):
            LOGGER.info("Skipping %d repeated address(es)", len(addresses) - len(unique))
        lanes = partition(unique, lane_count)
        LOGGER.info("Scraping %d address(es) over %d lane(s)", len(unique), lane_count)

        lane_results = await asyncio.gather(
            *(self._run_lane(number, tasks) for number, tasks in enumerate(lanes) if tasks)
        )
        results = sorted(
            (result for batch in lane_results for result in batch),
            key=lambda result: result.index,
        )
        failures = [
            result
            for result in results
            if result.outcome is ScrapeOutcome.FAILED or result.error == INVALID_ADDRESS
        ]
        report = ScrapeReport(results=results, failures=failures)
        report.log_summary()
        return report

    async def _run_lane(self, lane: int, tasks: List[ScrapeTask]) -> List[ScrapeResult]:
        results: List[ScrapeResult] = []
        for position, task in enumerate(tasks, start=1):
            LOGGER.info("[lane %d] %d/%d: %s", lane, position, len(tasks), task.address)
            result = await self.process(task)
            if result.valuation is not None and self.sink is not None:
                await self._record(task, result)
            results.append(result)
        return results

    async def process(self, task: ScrapeTask) -> ScrapeResult:
        if not is_searchable(task.address):
            LOGGER.error("[lane %d] Skipping invalid address %r", task.lane, task.address)
            return ScrapeResult(task.index, task.address, ScrapeOutcome.SKIPPED, error=INVALID_ADDRESS)
        if self.skip_if is not None and self.skip_if(task.address):
            LOGGER.info("[lane %d] %s already valued, skipping", task.lane, task.address)
            return ScrapeResult(task.index, task.address, ScrapeOutcome.SKIPPED, error=ALREADY_VALUED)

        address = clean_address(task.address)
        budget = RetryBudget(max_attempts=self.classifier.policy.max_attempts)
        while True:
            attempt = budget.start_attempt()
            await self.rate_limiter.wait_slot(task.lane)
            try:
                async with self.session_factory.session() as page:
                    valuation = await self.searcher.lookup(page, address)
            except Exception as exc:
                decision = self.classifier.classify(exc, attempt)
                if decision.action is RetryAction.NOT_FOUND:
                    LOGGER.info("[lane %d] No property found for %s", task.lane, address)
                    return ScrapeResult(
                        task.index,
                        task.address,
                        ScrapeOutcome.NOT_FOUND,
                        valuation=ValuationData.not_found(),
                        attempts=attempt,
                    )
                if decision.action is RetryAction.FAIL:
                    LOGGER.error("[lane %d] Giving up on %s: %s", task.lane, address, decision.reason)
                    return ScrapeResult(
                        task.index,
                        task.address,
                        ScrapeOutcome.FAILED,
                        attempts=attempt,
                        error=decision.reason,
                    )
                LOGGER.warning(
                    "[lane %d] Attempt %d/%d for %s failed (%s): %s; waiting %.0fs",
                    task.lane,
                    attempt,
                    budget.max_attempts,
                    address,
                    decision.kind.value,
                    decision.reason,
                    decision.delay,
                )
                await self._sleep(decision.delay)
                continue

            return ScrapeResult(
                task.index,
                task.address,
                ScrapeOutcome.FOUND,
                valuation=valuation,
                attempts=attempt,
            )

    async def _record(self, task: ScrapeTask, result: ScrapeResult) -> None:
        try:
            await self.sink.record(task.address, result.valuation)
        except Exception:
            LOGGER.exception("Failed to store valuation for %s", task.address)
            result.error = "valuation not stored"


def summarize(report: ScrapeReport) -> Dict[str, int]:
    return {outcome.value: report.count(outcome) for outcome in ScrapeOutcome}
