"""Valuation write-back into the source dataset."""
from __future__ import annotations

import asyncio
import logging

from etl.importer.source import SourceDataset
from etl.models import ValuationData

LOGGER = logging.getLogger(__name__)


class SourceDatasetSink:
    """Stores each valuation on the matching listings and persists the file.

    Lanes finish concurrently, so writes are serialized with a lock and the
    file is replaced atomically after every change.
    """

    def __init__(self, dataset: SourceDataset, autosave: bool = True) -> None:
        self.dataset = dataset
        self.autosave = autosave
        self._lock = asyncio.Lock()

    async def record(self, address: str, valuation: ValuationData) -> None:
        async with self._lock:
            matched = self.dataset.apply_valuation(address, valuation)
            if matched and self.autosave:
                await asyncio.to_thread(self.dataset.save)
                LOGGER.info("Updated valuation data for %s (%d listing(s))", address, matched)
