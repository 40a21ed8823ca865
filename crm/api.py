"""FastAPI app with health, CRM CRUD, OrgMeter import/sync endpoints and error handling."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import settings
from .crud import CrudError, NotFoundError
from .db import AsyncSessionMaker
from .entities_api import router as entities_router
from .import_api import router as import_router
from .import_api import sync_router
from .logging_config import setup_logging
from .orgmeter_client import OrgMeterError
from .pipelines.ingest import ImportFailedError
from .pipelines.jobs import JobConflictError, JobStateError, purge_finished_jobs
from .pipelines.sync import RecordSyncError, SyncError

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    success: bool = False
    error: str
    detail: str | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    logger.info(f"{settings.app_name} v{settings.version} starting up")
    try:
        async with AsyncSessionMaker() as session:
            await purge_finished_jobs(session)
    except Exception as e:
        logger.warning(f"Could not purge finished import jobs: {e}")

    yield

    # Shutdown
    logger.info("Application shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="MCA CRM backend with OrgMeter import and sync",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=str(exc)).model_dump(),
    )


# Exception handlers
@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    """Handle missing entities."""
    logger.info(f"Not found: {exc}")
    return _error(status.HTTP_404_NOT_FOUND, "not_found", exc)


@app.exception_handler(CrudError)
async def crud_error_handler(request, exc: CrudError):
    """Handle business-rule violations on writes."""
    logger.info(f"Rejected write: {exc}")
    return _error(status.HTTP_400_BAD_REQUEST, "invalid_request", exc)


@app.exception_handler(JobStateError)
async def job_state_error_handler(request, exc: JobStateError):
    """Handle job operations not allowed in the job's status."""
    logger.info(f"Job state error: {exc}")
    return _error(status.HTTP_400_BAD_REQUEST, "invalid_job_state", exc)


@app.exception_handler(JobConflictError)
async def job_conflict_handler(request, exc: JobConflictError):
    """Handle duplicate active import jobs."""
    logger.info(f"Job conflict: {exc}")
    return _error(status.HTTP_409_CONFLICT, "job_conflict", exc)


@app.exception_handler(OrgMeterError)
async def orgmeter_error_handler(request, exc: OrgMeterError):
    """Handle upstream OrgMeter failures."""
    logger.error(f"OrgMeter error: {exc}")
    return _error(status.HTTP_502_BAD_GATEWAY, "orgmeter_error", exc)


@app.exception_handler(ImportFailedError)
async def import_error_handler(request, exc: ImportFailedError):
    """Handle failed import runs."""
    logger.error(f"Import error: {exc}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "import_error", exc)


@app.exception_handler(SyncError)
async def sync_error_handler(request, exc: SyncError):
    """Handle failed sync runs."""
    logger.error(f"Sync error: {exc}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "sync_error", exc)


@app.exception_handler(RecordSyncError)
async def record_sync_error_handler(request, exc: RecordSyncError):
    logger.error(f"Record sync error: {exc}")
    return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "record_sync_error", exc)


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=settings.version)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "funders": "/funders",
            "merchants": "/merchants",
            "isos": "/isos",
            "applications": "/applications",
            "fundings": "/fundings",
            "stipulation_types": "/stipulation-types",
            "orgmeter_import": "/import/orgmeter",
            "orgmeter_sync": "/sync/orgmeter",
            "docs": "/docs",
        },
    }


app.include_router(entities_router)
app.include_router(import_router)
app.include_router(sync_router)
