"""FastAPI service that starts, continues and reports listing imports."""
from __future__ import annotations

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

from asyncpg import Connection
from fastapi import BackgroundTasks, Body, Depends, FastAPI, Header, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from etl import db
from etl.config import ImportConfig, load_env
from etl.importer.coordinator import BatchCoordinator
from etl.importer.dispatch import SECRET_HEADER, ContinuationDispatcher, HttpContinuationDispatcher
from etl.importer.errors import ImportJobError, JobNotFoundError, PersistenceError
from etl.importer.progress import PostgresProgressStore, ProgressStore
from etl.importer.source import SourceDataset
from etl.models import ImportJob, ImportStatus
from etl.upsert import PostgresListingRepository, RecordMerger

load_env()

LOGGER = logging.getLogger(__name__)

BatchRunner = Callable[[int], Awaitable[None]]

app = FastAPI(title="Listing Import API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ImportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    import_id: Optional[int] = Field(default=None, alias="importId")
    batch_size: Optional[int] = Field(default=None, alias="batchSize", gt=0)


class ProgressItem(BaseModel):
    currentOffset: int
    totalItems: int
    status: ImportStatus
    error: Optional[list] = None


# --- dependencies --------------------------------------------------------------


@lru_cache(maxsize=1)
def get_config() -> ImportConfig:
    return ImportConfig.from_env()


@lru_cache(maxsize=4)
def _load_source(path: str, mtime_ns: int) -> SourceDataset:
    return SourceDataset.load(path)


def get_source(config: ImportConfig = Depends(get_config)) -> SourceDataset:
    path = Path(config.source_path)
    return _load_source(str(path), path.stat().st_mtime_ns)


async def get_connection(config: ImportConfig = Depends(get_config)) -> AsyncIterator[Connection]:
    conn = await db.get_connection(config.dsn)
    try:
        yield conn
    finally:
        await conn.close()


def get_store(conn: Connection = Depends(get_connection)) -> ProgressStore:
    return PostgresProgressStore(conn)


def get_dispatcher(request: Request, config: ImportConfig = Depends(get_config)) -> ContinuationDispatcher:
    base_url = config.base_url or str(request.base_url)
    return HttpContinuationDispatcher(base_url, secret=config.secret, timeout=config.dispatch_timeout)


def _build_coordinator(
    conn: Connection,
    config: ImportConfig,
    source: SourceDataset,
    dispatcher: ContinuationDispatcher,
) -> BatchCoordinator:
    merger = RecordMerger(PostgresListingRepository(conn), config.image_size)
    return BatchCoordinator(
        PostgresProgressStore(conn),
        merger,
        source,
        dispatcher,
        config.batch_size,
    )


def get_coordinator(
    conn: Connection = Depends(get_connection),
    config: ImportConfig = Depends(get_config),
    source: SourceDataset = Depends(get_source),
    dispatcher: ContinuationDispatcher = Depends(get_dispatcher),
) -> BatchCoordinator:
    return _build_coordinator(conn, config, source, dispatcher)


def get_batch_runner(
    config: ImportConfig = Depends(get_config),
    source: SourceDataset = Depends(get_source),
    dispatcher: ContinuationDispatcher = Depends(get_dispatcher),
) -> BatchRunner:
    """Background `advance` with its own connection; request-scoped ones are closed by then."""

    async def run_batch(job_id: int) -> None:
        conn = await db.get_connection(config.dsn)
        try:
            await _build_coordinator(conn, config, source, dispatcher).advance(job_id)
        except ImportJobError as exc:
            LOGGER.error("Background batch for import %d stopped: %s", job_id, exc)
        except Exception:
            LOGGER.exception("Background batch for import %d crashed", job_id)
        finally:
            await conn.close()

    return run_batch


# --- helpers -------------------------------------------------------------------


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def _batch_message(job: ImportJob) -> str:
    return "Import completed" if job.status is ImportStatus.COMPLETED else "Next batch triggered"


async def _load_active(store: ProgressStore, import_id: int) -> ImportJob | JSONResponse:
    job = await store.get(import_id)
    if job is None:
        return _error(404, "Import not found")
    if job.status is ImportStatus.FAILED:
        return _error(400, "Import previously failed")
    return job


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.exception("Unhandled error on %s", request.url.path)
    return _error(500, "Failed to process batch")


# --- routes --------------------------------------------------------------------


@app.get("/health", response_class=Response)
def health() -> Response:
    return Response(content="ok", media_type="text/plain")


@app.post("/api/import")
async def start_or_continue_import(
    payload: Optional[ImportRequest] = Body(default=None),
    store: ProgressStore = Depends(get_store),
    coordinator: BatchCoordinator = Depends(get_coordinator),
):
    payload = payload or ImportRequest()
    try:
        if payload.import_id is None:
            import_id = await coordinator.start_import(batch_size=payload.batch_size)
            started = await store.get(import_id)
            if started is not None and started.status is ImportStatus.FAILED:
                LOGGER.error("Import %d failed on its first batch: %s", import_id, started.error)
                return _error(500, "Failed to process batch")
            return {"success": True, "message": "Import process started", "importId": import_id}

        job = await _load_active(store, payload.import_id)
        if isinstance(job, JSONResponse):
            return job
        if job.status is ImportStatus.COMPLETED:
            return {"success": True, "message": "Import already completed", "importId": job.id}

        result = await coordinator.advance(job.id)
    except JobNotFoundError:
        return _error(404, "Import not found")
    except PersistenceError as exc:
        LOGGER.error("Import batch failed: %s", exc)
        return _error(500, "Failed to process batch")

    if result.job.status is ImportStatus.FAILED:
        return _error(500, "Failed to process batch")
    return {"success": True, "message": _batch_message(result.job), "importId": job.id}


@app.post("/api/trigger-import")
async def trigger_import(
    background_tasks: BackgroundTasks,
    payload: Optional[ImportRequest] = Body(default=None),
    secret: Optional[str] = Header(default=None, alias=SECRET_HEADER),
    config: ImportConfig = Depends(get_config),
    store: ProgressStore = Depends(get_store),
    run_batch: BatchRunner = Depends(get_batch_runner),
):
    if config.secret and not secrets.compare_digest(secret or "", config.secret):
        return _error(401, "Invalid import secret")
    if payload is None or payload.import_id is None:
        return _error(400, "Import ID is required")

    job = await _load_active(store, payload.import_id)
    if isinstance(job, JSONResponse):
        return job
    if job.status is ImportStatus.COMPLETED:
        return {"success": True, "message": "Import completed", "importId": job.id}

    # the response goes out before the batch runs, so continuation never nests
    background_tasks.add_task(run_batch, job.id)
    return {"success": True, "message": "Next batch triggered", "importId": job.id}


@app.get("/api/import-progress")
async def import_progress(
    import_id: Optional[int] = Query(default=None, alias="importId"),
    store: ProgressStore = Depends(get_store),
):
    if import_id is None:
        return _error(400, "Import ID is required")
    job = await store.get(import_id)
    if job is None:
        return _error(404, "Import not found")
    progress = ProgressItem(
        currentOffset=job.current_offset,
        totalItems=job.total_items,
        status=job.status,
        error=job.error,
    )
    return {"success": True, "progress": progress.model_dump(mode="json")}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8000)
