"""Exceptions raised by the batch import pipeline."""
from __future__ import annotations

from typing import Optional


class ImportJobError(Exception):
    """Base class for import pipeline errors."""


class RecordValidationError(ImportJobError):
    """A source record lacks a mandatory field; only that record is skipped."""

    def __init__(self, message: str, external_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.external_id = external_id


class PersistenceError(ImportJobError):
    """A store write failed; aborts the batch and fails the job."""


class DispatchError(ImportJobError):
    """The continuation call for the next batch could not be dispatched."""


class JobNotFoundError(ImportJobError):
    def __init__(self, job_id: int) -> None:
        super().__init__(f"Import {job_id} not found")
        self.job_id = job_id


class JobFailedError(ImportJobError):
    def __init__(self, job_id: int) -> None:
        super().__init__(f"Import {job_id} previously failed")
        self.job_id = job_id
