"""Resumable batch import of listing datasets into the relational store.

- Durable per-job cursor with compare-and-set progress updates
- One bounded batch per call, continued by HTTP self-dispatch or a poller
- Per-record error isolation; store failures fail the job
"""

from .coordinator import AdvanceResult, BatchCoordinator, ImportPoller
from .dispatch import ContinuationDispatcher, HttpContinuationDispatcher, NullDispatcher
from .errors import (
    DispatchError,
    ImportJobError,
    JobFailedError,
    JobNotFoundError,
    PersistenceError,
    RecordValidationError,
)
from .progress import PostgresProgressStore, ProgressStore
from .source import SourceDataset

__all__ = [
    "AdvanceResult",
    "BatchCoordinator",
    "ImportPoller",
    "ContinuationDispatcher",
    "HttpContinuationDispatcher",
    "NullDispatcher",
    "DispatchError",
    "ImportJobError",
    "JobFailedError",
    "JobNotFoundError",
    "PersistenceError",
    "RecordValidationError",
    "PostgresProgressStore",
    "ProgressStore",
    "SourceDataset",
]
