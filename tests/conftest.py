import copy
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from etl.importer.errors import DispatchError, PersistenceError
from etl.importer.progress import failure_payload
from etl.models import ImportJob, ImportStatus


def make_listing(listing_id: str = "1001", **overrides: Any) -> Dict[str, Any]:
    listing = {
        "id": listing_id,
        "propertyType": "House",
        "propertyLink": f"https://example.com.au/property/{listing_id}",
        "description": "Renovated family home close to schools.",
        "scraped_at": "2024-03-01T10:00:00Z",
        "address": {
            "display": {
                "shortAddress": "12 Smith St",
                "fullAddress": f"{listing_id} Smith St, Richmond VIC 3121",
            },
            "suburb": "Richmond",
            "state": "VIC",
            "postcode": "3121",
        },
        "generalFeatures": {
            "bedrooms": {"value": 3},
            "bathrooms": {"value": 2},
            "parkingSpaces": {"value": 1},
        },
        "propertySizes": {
            "land": {"displayValue": "650", "sizeUnit": {"displayValue": "m²"}},
            "building": {"displayValue": "180", "sizeUnit": {"displayValue": "m²"}},
        },
        "images": [
            "https://img.example.com/{size}/a.jpg",
            "https://img.example.com/{size}/b.jpg",
        ],
        "listingCompany": {
            "id": "AG-1",
            "name": "Harbour Realty",
            "phoneNumber": "03 9000 0000",
            "address": "1 Swan St, Richmond",
            "ratingsReviews": {"avgRating": 4.8, "totalReviews": 120},
        },
        "price": {"display": "$1,200,000 - $1,300,000", "searchRange": "1.2m-1.3m"},
        "priceDetails": {"from": 1200000, "to": 1300000},
    }
    listing.update(overrides)
    return listing


class InMemoryProgressStore:
    """ProgressStore with the same compare-and-set semantics as the Postgres one."""

    def __init__(self) -> None:
        self.jobs: Dict[int, ImportJob] = {}
        self.updates: List[Dict[str, Any]] = []
        self._next_id = 1
        self.now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    async def create(self, total_items: int, batch_size: int) -> int:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        job_id = self._next_id
        self._next_id += 1
        status = ImportStatus.COMPLETED if total_items == 0 else ImportStatus.IN_PROGRESS
        self.jobs[job_id] = ImportJob(
            id=job_id,
            batch_size=batch_size,
            total_items=total_items,
            status=status,
            started_at=self.now,
            updated_at=self.now,
        )
        return job_id

    async def get(self, job_id: int) -> Optional[ImportJob]:
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    async def update(self, job_id, offset, status, error, *, expected_offset=None) -> bool:
        job = self.jobs.get(job_id)
        if job is None:
            return False
        if expected_offset is not None and (
            job.current_offset != expected_offset or job.status is not ImportStatus.IN_PROGRESS
        ):
            return False
        self.jobs[job_id] = job.model_copy(
            update={
                "current_offset": max(job.current_offset, offset),
                "status": status,
                "error": list(error) if error else None,
                "updated_at": self.now,
            }
        )
        self.updates.append({"job_id": job_id, "offset": offset, "status": status})
        return True

    async def fail(self, job_id, reason, errors=None, stage="job") -> None:
        job = self.jobs[job_id]
        self.jobs[job_id] = job.model_copy(
            update={
                "status": ImportStatus.FAILED,
                "error": failure_payload(reason, errors, stage),
                "updated_at": self.now,
            }
        )

    async def reset(self, job_id: int) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.status is not ImportStatus.FAILED:
            return False
        self.jobs[job_id] = job.model_copy(
            update={"status": ImportStatus.IN_PROGRESS, "error": None, "updated_at": self.now}
        )
        return True

    async def find_stale(self, older_than: timedelta) -> List[ImportJob]:
        cutoff = self.now - older_than
        return [
            job
            for job in self.jobs.values()
            if job.status is ImportStatus.IN_PROGRESS and job.updated_at < cutoff
        ]

    async def list_recent(self, limit: int = 20) -> List[ImportJob]:
        return sorted(self.jobs.values(), key=lambda job: job.id, reverse=True)[:limit]

    async def list_in_progress(self) -> List[ImportJob]:
        return [job for job in self.jobs.values() if job.status is ImportStatus.IN_PROGRESS]


class InMemoryListingRepository:
    """ListingRepository keeping tables as dicts; a failed transaction is rolled back."""

    _TABLES = ("properties", "addresses", "features", "images", "prices", "valuations", "companies", "links")

    def __init__(self, fail_for: Optional[set] = None) -> None:
        self.properties: Dict[str, Any] = {}
        self.addresses: Dict[str, Any] = {}
        self.features: Dict[str, Any] = {}
        self.images: Dict[str, List[Any]] = {}
        self.prices: Dict[str, Any] = {}
        self.valuations: Dict[str, Any] = {}
        self.companies: Dict[str, Any] = {}
        self.links: Dict[str, str] = {}
        self.fail_for = fail_for or set()
        self.transactions = 0

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy({name: getattr(self, name) for name in self._TABLES})

    @asynccontextmanager
    async def transaction(self):
        saved = self.snapshot()
        self.transactions += 1
        try:
            yield
        except BaseException:
            for name, value in saved.items():
                setattr(self, name, value)
            raise

    async def upsert_property(self, row) -> None:
        if row.id in self.fail_for:
            raise PersistenceError(f"connection lost while writing {row.id}")
        self.properties[row.id] = row

    async def upsert_address(self, row) -> None:
        self.addresses[row.property_id] = row

    async def upsert_features(self, row) -> None:
        self.features[row.property_id] = row

    async def replace_images(self, property_id, images) -> None:
        self.images[property_id] = list(images)

    async def upsert_price(self, row) -> None:
        self.prices[row.property_id] = row

    async def upsert_valuation(self, row) -> None:
        self.valuations[row.property_id] = row

    async def upsert_company(self, row) -> None:
        self.companies[row.id] = row

    async def link_company(self, property_id, company_id) -> None:
        self.links[property_id] = company_id


class RecordingDispatcher:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.dispatched: List[int] = []
        self.error = error

    async def dispatch(self, job_id: int) -> None:
        if self.error is not None:
            raise self.error
        self.dispatched.append(job_id)


class _Transaction:
    def __init__(self, conn) -> None:
        self.conn = conn

    async def __aenter__(self):
        self.conn.calls.append(("BEGIN", ()))
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.conn.calls.append(("ROLLBACK" if exc_type else "COMMIT", ()))
        return False


class RecordingConnection:
    """Stands in for an asyncpg connection; records SQL and replays queued results."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.results: List[Any] = []

    def queue(self, *results: Any) -> None:
        self.results.extend(results)

    def _next(self, default=None):
        return self.results.pop(0) if self.results else default

    def transaction(self):
        return _Transaction(self)

    async def execute(self, query, *args):
        self.calls.append((query, args))
        return "OK"

    async def executemany(self, query, args):
        self.calls.append((query, list(args)))

    async def fetchrow(self, query, *args):
        self.calls.append((query, args))
        return self._next()

    async def fetchval(self, query, *args):
        self.calls.append((query, args))
        return self._next()

    async def fetch(self, query, *args):
        self.calls.append((query, args))
        return self._next([])

    def statements(self) -> List[str]:
        return [" ".join(query.split()) for query, _ in self.calls]


@pytest.fixture
def listing():
    return make_listing()


@pytest.fixture
def progress_store():
    return InMemoryProgressStore()


@pytest.fixture
def repository():
    return InMemoryListingRepository()


@pytest.fixture
def recording_conn():
    return RecordingConnection()


@pytest.fixture
def failing_dispatcher():
    return RecordingDispatcher(error=DispatchError("continuation rejected with HTTP 503: busy"))
