"""Batch import coordinator: persisted cursor, one batch per `advance` call."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from etl.importer.dispatch import ContinuationDispatcher, NullDispatcher
from etl.importer.errors import (
    DispatchError,
    JobNotFoundError,
    PersistenceError,
    RecordValidationError,
)
from etl.importer.progress import ProgressStore
from etl.models import ImportJob, ImportStatus

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10


class Merger(Protocol):
    async def merge(self, raw: Dict[str, Any]) -> Any:
        ...


@dataclass
class AdvanceResult:
    """Outcome of one `advance` call."""

    job: ImportJob
    done: bool
    merged: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    superseded: bool = False  # another advance committed this batch first

    @property
    def status(self) -> ImportStatus:
        return self.job.status


def _item_error(index: int, raw: Any, exc: Exception, stage: str) -> Dict[str, Any]:
    external_id = getattr(exc, "external_id", None)
    if external_id is None and isinstance(raw, dict):
        external_id = raw.get("id")
    return {
        "index": index,
        "externalId": str(external_id) if external_id is not None else None,
        "stage": stage,
        "error": str(exc) or type(exc).__name__,
    }


class BatchCoordinator:
    """Drives an import job from creation to completion.

    Each `advance` merges one contiguous slice of the source, commits the
    cursor with a compare-and-set update and then asks the dispatcher to
    trigger the next call. Duplicate or concurrent calls for the same offset
    are harmless: only one of them can move the cursor, and merges are
    idempotent.
    """

    def __init__(
        self,
        store: ProgressStore,
        merger: Merger,
        source: Sequence[Dict[str, Any]],
        dispatcher: Optional[ContinuationDispatcher] = None,
        default_batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self.store = store
        self.merger = merger
        self.source = source
        self.dispatcher = dispatcher or NullDispatcher()
        self.default_batch_size = default_batch_size

    async def start_import(
        self,
        total_items: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> int:
        """Create a job over the source and process its first batch."""
        total = len(self.source) if total_items is None else total_items
        if total > len(self.source):
            raise ValueError(f"total_items={total} exceeds source size {len(self.source)}")
        job_id = await self.store.create(total, batch_size or self.default_batch_size)
        await self.advance(job_id)
        return job_id

    async def advance(self, job_id: int) -> AdvanceResult:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status.is_terminal:
            LOGGER.info("Import %d already %s, nothing to do", job_id, job.status.value)
            return AdvanceResult(job=job, done=True)

        try:
            result = await self._process_batch(job)
        except PersistenceError:
            raise
        except Exception as exc:
            await self._fail_quietly(job_id, f"{type(exc).__name__}: {exc}", stage="batch")
            raise

        if result.superseded or result.done:
            return result

        try:
            await self.dispatcher.dispatch(job_id)
        except DispatchError as exc:
            LOGGER.error("Could not trigger next batch for import %d: %s", job_id, exc)
            await self.store.fail(job_id, str(exc), result.errors, stage="dispatch")
            failed = await self.store.get(job_id)
            return AdvanceResult(
                job=failed or result.job,
                done=True,
                merged=result.merged,
                errors=result.errors,
            )
        return result

    async def _process_batch(self, job: ImportJob) -> AdvanceResult:
        if len(self.source) < job.total_items:
            raise ValueError(
                f"source has {len(self.source)} listings but import expects {job.total_items}"
            )

        start, end = job.current_offset, job.batch_end
        errors: List[Dict[str, Any]] = []
        merged = 0

        for index in range(start, end):
            raw = self.source[index]
            try:
                await self.merger.merge(raw)
                merged += 1
            except PersistenceError as exc:
                await self._fail_quietly(job.id, str(exc), stage="persistence", errors=errors)
                raise
            except RecordValidationError as exc:
                LOGGER.warning("Skipping listing at index %d: %s", index, exc)
                errors.append(_item_error(index, raw, exc, "merge"))
            except Exception as exc:
                LOGGER.exception("Error processing listing at index %d", index)
                errors.append(_item_error(index, raw, exc, "merge"))

        status = ImportStatus.COMPLETED if end >= job.total_items else ImportStatus.IN_PROGRESS
        applied = await self.store.update(job.id, end, status, errors, expected_offset=start)
        current = await self.store.get(job.id)
        if current is None:
            raise JobNotFoundError(job.id)

        LOGGER.info(
            "batch job=%d offset=%d->%d/%d merged=%d errors=%d status=%s%s",
            job.id,
            start,
            end,
            job.total_items,
            merged,
            len(errors),
            current.status.value,
            "" if applied else " (superseded)",
        )
        return AdvanceResult(
            job=current,
            done=current.status.is_terminal,
            merged=merged,
            errors=errors,
            superseded=not applied,
        )

    async def _fail_quietly(
        self,
        job_id: int,
        reason: str,
        stage: str,
        errors: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        """Mark the job failed; a broken store must not mask the original error."""
        try:
            await self.store.fail(job_id, reason, errors, stage=stage)
        except Exception:
            LOGGER.exception("Could not mark import %d as failed", job_id)


class ImportPoller:
    """Drives imports with repeated in-process `advance` calls.

    This is the scheduler side of continuation: pair it with NullDispatcher
    and run it from the CLI or a Prefect flow instead of chaining HTTP calls.
    """

    def __init__(
        self,
        coordinator: BatchCoordinator,
        pause: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.coordinator = coordinator
        self.pause = pause
        self._sleep = sleep
        self._clock = clock

    async def run_until_done(
        self,
        job_id: int,
        max_batches: Optional[int] = None,
        time_budget: Optional[float] = None,
    ) -> ImportJob:
        """Advance until terminal or until the step/time budget runs out."""
        started = self._clock()
        batches = 0
        while True:
            result = await self.coordinator.advance(job_id)
            batches += 1
            if result.done:
                return result.job
            if max_batches is not None and batches >= max_batches:
                LOGGER.info("Import %d paused after %d batch(es)", job_id, batches)
                return result.job
            if time_budget is not None and self._clock() - started >= time_budget:
                LOGGER.info("Import %d paused, time budget of %.1fs used", job_id, time_budget)
                return result.job
            if self.pause:
                await self._sleep(self.pause)

    async def poll_once(self) -> List[AdvanceResult]:
        """Advance every in-progress job by one batch."""
        jobs = await self.coordinator.store.list_in_progress()
        results: List[AdvanceResult] = []
        for job in jobs:
            try:
                results.append(await self.coordinator.advance(job.id))
            except (PersistenceError, JobNotFoundError) as exc:
                LOGGER.error("Import %d could not advance: %s", job.id, exc)
        return results
