import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from etl.importer.progress import PostgresProgressStore, dump_errors, failure_payload, load_errors
from etl.models import ImportStatus

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _row(**overrides):
    row = {
        "id": 7,
        "batch_size": 10,
        "current_offset": 20,
        "total_items": 25,
        "status": "in_progress",
        "started_at": NOW,
        "updated_at": NOW,
        "error": None,
    }
    row.update(overrides)
    return row


def test_create_starts_in_progress(recording_conn):
    recording_conn.queue(7)

    job_id = asyncio.run(PostgresProgressStore(recording_conn).create(25, 10))

    query, args = recording_conn.calls[0]
    assert job_id == 7
    assert "INSERT INTO import_progress" in query
    assert args == (10, 25, "in_progress")


def test_create_empty_job_is_already_completed(recording_conn):
    recording_conn.queue(8)

    asyncio.run(PostgresProgressStore(recording_conn).create(0, 10))

    assert recording_conn.calls[0][1][2] == "completed"


def test_create_rejects_non_positive_batch_size(recording_conn):
    with pytest.raises(ValueError):
        asyncio.run(PostgresProgressStore(recording_conn).create(10, 0))
    assert recording_conn.calls == []


def test_get_maps_row_to_job(recording_conn):
    errors = [{"index": 3, "externalId": "A", "stage": "merge", "error": "bad"}]
    recording_conn.queue(_row(error=json.dumps(errors)))

    job = asyncio.run(PostgresProgressStore(recording_conn).get(7))

    assert job.id == 7
    assert job.status is ImportStatus.IN_PROGRESS
    assert job.batch_end == 25
    assert job.error == errors


def test_get_unknown_job_returns_none(recording_conn):
    assert asyncio.run(PostgresProgressStore(recording_conn).get(99)) is None


def test_update_is_a_single_compare_and_set_statement(recording_conn):
    recording_conn.queue({"id": 7})

    applied = asyncio.run(
        PostgresProgressStore(recording_conn).update(
            7, 20, ImportStatus.IN_PROGRESS, [], expected_offset=10
        )
    )

    assert applied is True
    assert len(recording_conn.calls) == 1
    query, args = recording_conn.calls[0]
    normalized = " ".join(query.split())
    assert "GREATEST(current_offset, $2)" in normalized
    assert "current_offset = $5 AND status = 'in_progress'" in normalized
    assert args == (7, 20, "in_progress", None, 10)


def test_update_reports_lost_race(recording_conn):
    applied = asyncio.run(
        PostgresProgressStore(recording_conn).update(
            7, 20, ImportStatus.IN_PROGRESS, None, expected_offset=10
        )
    )
    assert applied is False


def test_fail_stores_previous_errors_and_reason(recording_conn):
    item_errors = [{"index": 1, "externalId": "X", "stage": "merge", "error": "nope"}]

    asyncio.run(
        PostgresProgressStore(recording_conn).fail(7, "HTTP 503", item_errors, stage="dispatch")
    )

    query, args = recording_conn.calls[0]
    assert "status = 'failed'" in query
    assert json.loads(args[1]) == item_errors + [{"stage": "dispatch", "error": "HTTP 503"}]


def test_reset_only_touches_failed_jobs(recording_conn):
    assert asyncio.run(PostgresProgressStore(recording_conn).reset(7)) is False
    query, _ = recording_conn.calls[0]
    assert "status = 'failed'" in query


def test_find_stale_passes_interval(recording_conn):
    recording_conn.queue([_row(), _row(id=8)])

    jobs = asyncio.run(PostgresProgressStore(recording_conn).find_stale(timedelta(minutes=15)))

    query, args = recording_conn.calls[0]
    assert [job.id for job in jobs] == [7, 8]
    assert "updated_at < NOW() - $1::INTERVAL" in query
    assert args == (timedelta(minutes=15),)


def test_error_payload_helpers():
    assert dump_errors([]) is None
    assert dump_errors(None) is None
    assert load_errors(None) is None
    assert load_errors("plain text failure") == [{"stage": "unknown", "error": "plain text failure"}]
    assert load_errors('{"error": "x"}') == [{"error": "x"}]
    assert failure_payload("boom") == [{"stage": "job", "error": "boom"}]
