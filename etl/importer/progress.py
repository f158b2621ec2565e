"""Durable import job progress (cursor, size, status, error payload)."""
from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Protocol

from asyncpg import Connection, Record

from etl.models import ImportJob, ImportStatus

LOGGER = logging.getLogger(__name__)

_COLUMNS = "id, batch_size, current_offset, total_items, status, started_at, updated_at, error"


def dump_errors(errors: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    """Serialize a per-item error list; an empty list clears the column."""
    if not errors:
        return None
    return json.dumps(errors, ensure_ascii=False, default=str)


def load_errors(raw: Optional[str]) -> Optional[List[Dict[str, Any]]]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        # rows written by hand or by older versions hold plain text
        return [{"stage": "unknown", "error": raw}]
    if isinstance(data, list):
        return data
    return [data]


def failure_payload(
    reason: str,
    errors: Optional[List[Dict[str, Any]]] = None,
    stage: str = "job",
) -> List[Dict[str, Any]]:
    """Accumulated per-item errors followed by the job-level failure reason."""
    return [*(errors or []), {"stage": stage, "error": reason}]


class ProgressStore(Protocol):
    """Persisted record of an import job's cursor and status."""

    async def create(self, total_items: int, batch_size: int) -> int:
        ...

    async def get(self, job_id: int) -> Optional[ImportJob]:
        ...

    async def update(
        self,
        job_id: int,
        offset: int,
        status: ImportStatus,
        error: Optional[List[Dict[str, Any]]],
        *,
        expected_offset: Optional[int] = None,
    ) -> bool:
        """Atomically write offset/status/error.

        With ``expected_offset`` the write is a compare-and-set: it only applies
        while the job is in progress at that offset. Returns whether it applied.
        """
        ...

    async def fail(
        self,
        job_id: int,
        reason: str,
        errors: Optional[List[Dict[str, Any]]] = None,
        stage: str = "job",
    ) -> None:
        ...

    async def reset(self, job_id: int) -> bool:
        """Move a failed job back to in_progress at its committed offset."""
        ...

    async def find_stale(self, older_than: timedelta) -> List[ImportJob]:
        ...

    async def list_recent(self, limit: int = 20) -> List[ImportJob]:
        ...

    async def list_in_progress(self) -> List[ImportJob]:
        ...


def _row_to_job(row: Record) -> ImportJob:
    return ImportJob(
        id=row["id"],
        batch_size=row["batch_size"],
        current_offset=row["current_offset"],
        total_items=row["total_items"],
        status=ImportStatus(row["status"]),
        started_at=row["started_at"],
        updated_at=row["updated_at"],
        error=load_errors(row["error"]),
    )


class PostgresProgressStore:
    """ProgressStore backed by the import_progress table."""

    def __init__(self, conn: Connection) -> None:
        self.conn = conn

    async def create(self, total_items: int, batch_size: int) -> int:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        status = ImportStatus.COMPLETED if total_items == 0 else ImportStatus.IN_PROGRESS
        job_id = await self.conn.fetchval(
            """
            INSERT INTO import_progress
                (batch_size, current_offset, total_items, status, started_at, updated_at)
            VALUES ($1, 0, $2, $3, NOW(), NOW())
            RETURNING id;
            """,
            batch_size,
            total_items,
            status.value,
        )
        LOGGER.info("Created import %d (total=%d, batch_size=%d)", job_id, total_items, batch_size)
        return job_id

    async def get(self, job_id: int) -> Optional[ImportJob]:
        row = await self.conn.fetchrow(
            f"SELECT {_COLUMNS} FROM import_progress WHERE id = $1;",
            job_id,
        )
        return _row_to_job(row) if row is not None else None

    async def update(
        self,
        job_id: int,
        offset: int,
        status: ImportStatus,
        error: Optional[List[Dict[str, Any]]],
        *,
        expected_offset: Optional[int] = None,
    ) -> bool:
        # GREATEST keeps the cursor monotonic even if a stale caller slips through
        row = await self.conn.fetchrow(
            """
            UPDATE import_progress
            SET current_offset = GREATEST(current_offset, $2),
                status = $3,
                error = $4,
                updated_at = NOW()
            WHERE id = $1
              AND ($5::INTEGER IS NULL OR (current_offset = $5 AND status = 'in_progress'))
            RETURNING id;
            """,
            job_id,
            offset,
            status.value,
            dump_errors(error),
            expected_offset,
        )
        applied = row is not None
        if not applied:
            LOGGER.warning(
                "Progress update for import %d skipped (expected offset %s no longer current)",
                job_id,
                expected_offset,
            )
        return applied

    async def fail(
        self,
        job_id: int,
        reason: str,
        errors: Optional[List[Dict[str, Any]]] = None,
        stage: str = "job",
    ) -> None:
        await self.conn.execute(
            """
            UPDATE import_progress
            SET status = 'failed',
                error = $2,
                updated_at = NOW()
            WHERE id = $1;
            """,
            job_id,
            dump_errors(failure_payload(reason, errors, stage)),
        )
        LOGGER.error("Marked import %d as failed: %s", job_id, reason)

    async def reset(self, job_id: int) -> bool:
        row = await self.conn.fetchrow(
            """
            UPDATE import_progress
            SET status = 'in_progress',
                error = NULL,
                updated_at = NOW()
            WHERE id = $1 AND status = 'failed'
            RETURNING id;
            """,
            job_id,
        )
        if row is not None:
            LOGGER.info("Reset import %d to in_progress", job_id)
        return row is not None

    async def find_stale(self, older_than: timedelta) -> List[ImportJob]:
        rows = await self.conn.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM import_progress
            WHERE status = 'in_progress'
              AND updated_at < NOW() - $1::INTERVAL
            ORDER BY updated_at ASC;
            """,
            older_than,
        )
        return [_row_to_job(row) for row in rows]

    async def list_recent(self, limit: int = 20) -> List[ImportJob]:
        rows = await self.conn.fetch(
            f"SELECT {_COLUMNS} FROM import_progress ORDER BY started_at DESC LIMIT $1;",
            max(1, limit),
        )
        return [_row_to_job(row) for row in rows]

    async def list_in_progress(self) -> List[ImportJob]:
        rows = await self.conn.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM import_progress
            WHERE status = 'in_progress'
            ORDER BY id ASC;
            """
        )
        return [_row_to_job(row) for row in rows]
