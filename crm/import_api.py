"""OrgMeter import and sync endpoints.

Every endpoint answers ``{"success", "message", "data"}``. Import jobs run
as background tasks; clients poll the job endpoints for progress.
"""
from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.orgmeter_catalog import IMPORT_STEPS
from . import models
from .crud import create_entity
from .db import get_session, get_session_factory
from .orgmeter_client import OrgMeterClient
from .pipelines import jobs
from .pipelines.sync import OrgMeterSyncer
from .schemas import FunderRead

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/import/orgmeter", tags=["import"])
sync_router = APIRouter(prefix="/sync/orgmeter", tags=["sync"])

ImportEntity = Literal["user", "lender", "iso", "merchant", "syndicator", "advance"]
SyncEntity = Literal["merchant", "iso", "advance"]
JobStatus = Literal["pending", "running", "completed", "failed", "cancelled", "paused"]


# Dependencies (overridden in tests)
def get_client_factory() -> jobs.ClientFactory:
    return OrgMeterClient


def get_job_session_factory() -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


def get_job_registry() -> jobs.JobRegistry:
    return jobs.registry


class ApiResponse(BaseModel):
    """Standard envelope."""
    success: bool = True
    message: str
    data: Any = None


class ApiKeyRequest(BaseModel):
    """Request carrying an OrgMeter API key."""
    api_key: str = Field(min_length=1)


class CreateImportJobRequest(BaseModel):
    """Create import job request."""
    entity_type: ImportEntity
    api_key: str = Field(min_length=1)
    funder_id: int
    batch_size: int = Field(default=20, ge=1, le=100)
    update_existing: bool = True


class CreateFunderRequest(BaseModel):
    """Create an OrgMeter-backed funder."""
    name: str = Field(min_length=1, max_length=255)
    email: str | None = None
    phone: str | None = None
    website: str | None = None
    bgcolor: str | None = None
    import_api_key: str = Field(min_length=1)
    import_client_name: str | None = None


class ResumeJobRequest(BaseModel):
    """Resume a paused or failed job."""
    resume_from: Literal["current", "beginning"] = "current"
    batch_size: int | None = Field(default=None, ge=1, le=100)
    update_existing: bool | None = None


class ResumeAllRequest(ResumeJobRequest):
    """Resume every paused job matching the filters."""
    funder_id: int | None = None
    entity_types: list[ImportEntity] = Field(default_factory=list)


class SelectForSyncRequest(BaseModel):
    """Select or ignore staged records for sync."""
    funder_id: int
    ids: list[str] = Field(min_length=1)
    needs_sync: bool = True


class RunSyncRequest(BaseModel):
    """Run a sync for one entity type."""
    funder_id: int
    dry_run: bool = False
    update_existing: bool = True
    only_selected: bool = True
    user_id: str | None = None


def _resume_parameters(request: ResumeJobRequest) -> dict:
    return {"batch_size": request.batch_size, "update_existing": request.update_existing}


def _job_flags(job: models.ImportJob, job_registry: jobs.JobRegistry) -> dict:
    running = job_registry.is_running(job.job_id)
    return {
        "is_actually_running": running,
        "can_be_cancelled": running or job.status == "pending",
        "can_be_paused": job.status == "running" and running,
        "can_be_resumed": job.status in ("paused", "failed") and not running,
    }


async def _require_connection(client_factory: jobs.ClientFactory, api_key: str) -> dict:
    async with client_factory(api_key) as client:
        if not await client.test_connection():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid API key or connection failed",
            )
        return client.get_api_info()


@router.post("/validate-api", response_model=ApiResponse)
async def validate_api_key(
    request: ApiKeyRequest,
    client_factory: jobs.ClientFactory = Depends(get_client_factory),
) -> ApiResponse:
    """Test an OrgMeter API key and return the import steps."""
    api_info = await _require_connection(client_factory, request.api_key)
    return ApiResponse(
        message="API key is valid and connection successful",
        data={"connected": True, "api_info": api_info, "import_steps": IMPORT_STEPS},
    )


@router.post("/jobs", response_model=ApiResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_import_job(
    request: CreateImportJobRequest,
    session: AsyncSession = Depends(get_session),
    client_factory: jobs.ClientFactory = Depends(get_client_factory),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_job_session_factory),
    job_registry: jobs.JobRegistry = Depends(get_job_registry),
) -> ApiResponse:
    """Create an import job and start it in the background.

    Args:
        request: Entity type, API key, funder and options
        session: Database session (injected)

    Returns:
        ApiResponse with the job id; poll ``GET /jobs/{job_id}`` for progress
    """
    await _require_connection(client_factory, request.api_key)

    job = await jobs.create_import_job(
        session,
        entity_type=request.entity_type,
        api_key=request.api_key,
        funder_id=request.funder_id,
        batch_size=request.batch_size,
        update_existing=request.update_existing,
    )
    jobs.start_import_job(
        job.job_id,
        session_factory=session_factory,
        client_factory=client_factory,
        job_registry=job_registry,
    )
    return ApiResponse(
        message=f"Import job created for {request.entity_type}",
        data={"job_id": job.job_id, "entity_type": job.entity_type, "status": job.status},
    )


@router.post("/funders", response_model=ApiResponse)
async def get_funders_by_api_key(
    request: ApiKeyRequest,
    session: AsyncSession = Depends(get_session),
    client_factory: jobs.ClientFactory = Depends(get_client_factory),
) -> ApiResponse:
    """Active funders configured with this API key, with their import job counts."""
    api_info = await _require_connection(client_factory, request.api_key)
    result = await jobs.funders_by_api_key(session, request.api_key)
    for entry in result["funders"]:
        entry["funder"] = FunderRead.model_validate(entry["funder"]).model_dump()

    count = result["summary"]["total_funders"]
    return ApiResponse(
        message=f"Found {count} funders with this API key" if count else "No funders found with this API key",
        data={"api_key": {"is_valid": True, "api_info": api_info}, **result},
    )


@router.post("/create-funder", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
async def create_funder_with_api_key(
    request: CreateFunderRequest,
    session: AsyncSession = Depends(get_session),
) -> ApiResponse:
    """Create a funder whose imports come from OrgMeter."""
    funder = await create_entity(
        session,
        models.Funder,
        {**request.model_dump(), "import_source": "OrgMeter"},
    )
    return ApiResponse(
        message="Funder created successfully",
        data=FunderRead.model_validate(funder).model_dump(),
    )


@router.get("/entities/{entity_type}/status", response_model=ApiResponse)
async def get_entity_job_status(
    entity_type: ImportEntity,
    funder_id: int = Query(...),
    session: AsyncSession = Depends(get_session),
) -> ApiResponse:
    data = await jobs.entity_job_status(session, funder_id, entity_type)
    return ApiResponse(message=f"Job status for {entity_type} entity type retrieved", data=data)


@router.get("/jobs/active", response_model=ApiResponse)
async def get_active_jobs(
    session: AsyncSession = Depends(get_session),
    job_registry: jobs.JobRegistry = Depends(get_job_registry),
) -> ApiResponse:
    active = await jobs.active_jobs(session)
    return ApiResponse(
        message=f"Found {len(active)} active jobs",
        data={
            "jobs": [{**job.to_dict(), **_job_flags(job, job_registry)} for job in active],
            "running_in_memory": len(job_registry),
            "running_job_ids": job_registry.job_ids(),
        },
    )


@router.post("/jobs/resume-all", response_model=ApiResponse)
async def resume_all_jobs(
    request: ResumeAllRequest,
    session: AsyncSession = Depends(get_session),
    client_factory: jobs.ClientFactory = Depends(get_client_factory),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_job_session_factory),
    job_registry: jobs.JobRegistry = Depends(get_job_registry),
) -> ApiResponse:
    resumed, failures = await jobs.resume_all_jobs(
        session,
        funder_id=request.funder_id,
        entity_types=request.entity_types,
        resume_from=request.resume_from,
        parameters=_resume_parameters(request),
        job_registry=job_registry,
    )
    for job in resumed:
        jobs.start_import_job(
            job.job_id,
            session_factory=session_factory,
            client_factory=client_factory,
            job_registry=job_registry,
        )
    return ApiResponse(
        message=f"Resumed {len(resumed)} jobs",
        data={
            "resumed": [job.job_id for job in resumed],
            "failed": failures,
            "resume_from": request.resume_from,
        },
    )


@router.get("/jobs", response_model=ApiResponse)
async def get_import_jobs(
    funder_id: int | None = None,
    job_status: JobStatus | None = Query(default=None, alias="status"),
    entity_type: ImportEntity | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
) -> ApiResponse:
    result = await jobs.list_jobs(
        session,
        funder_id=funder_id,
        status=job_status,
        entity_type=entity_type,
        page=page,
        limit=limit,
    )
    result["jobs"] = [job.to_dict() for job in result["jobs"]]
    return ApiResponse(message="Import jobs retrieved", data=result)


@router.get("/jobs/{job_id}", response_model=ApiResponse)
async def get_job_status(
    job_id: str,
    session: AsyncSession = Depends(get_session),
    job_registry: jobs.JobRegistry = Depends(get_job_registry),
) -> ApiResponse:
    job = await jobs.get_job(session, job_id)
    return ApiResponse(
        message="Job status retrieved",
        data={**job.to_dict(), **_job_flags(job, job_registry)},
    )


@router.post("/jobs/{job_id}/cancel", response_model=ApiResponse)
async def cancel_import_job(
    job_id: str,
    session: AsyncSession = Depends(get_session),
    job_registry: jobs.JobRegistry = Depends(get_job_registry),
) -> ApiResponse:
    job = await jobs.cancel_job(session, job_id, job_registry=job_registry)
    return ApiResponse(message="Import job cancelled", data=job.to_dict())


@router.post("/jobs/{job_id}/pause", response_model=ApiResponse)
async def pause_import_job(
    job_id: str,
    session: AsyncSession = Depends(get_session),
    job_registry: jobs.JobRegistry = Depends(get_job_registry),
) -> ApiResponse:
    job = await jobs.pause_job(session, job_id, job_registry=job_registry)
    return ApiResponse(message="Import job paused", data=job.to_dict())


@router.post("/jobs/{job_id}/resume", response_model=ApiResponse)
async def resume_import_job(
    job_id: str,
    request: ResumeJobRequest = ResumeJobRequest(),
    session: AsyncSession = Depends(get_session),
    client_factory: jobs.ClientFactory = Depends(get_client_factory),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_job_session_factory),
    job_registry: jobs.JobRegistry = Depends(get_job_registry),
) -> ApiResponse:
    job = await jobs.resume_job(
        session,
        job_id,
        resume_from=request.resume_from,
        parameters=_resume_parameters(request),
        job_registry=job_registry,
    )
    jobs.start_import_job(
        job.job_id,
        session_factory=session_factory,
        client_factory=client_factory,
        job_registry=job_registry,
    )
    return ApiResponse(
        message=f"Import job resumed from {request.resume_from}",
        data=job.to_dict(),
    )


@sync_router.get("/{entity_type}/status", response_model=ApiResponse)
async def get_sync_status(
    entity_type: SyncEntity,
    funder_id: int = Query(...),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    search: str | None = None,
    sync_status: Literal["all", "pending", "synced", "ignored"] = "all",
    session: AsyncSession = Depends(get_session),
) -> ApiResponse:
    syncer = OrgMeterSyncer(session, funder_id)
    data = await syncer.get_sync_status(
        entity_type,
        page=page,
        limit=limit,
        search=search,
        sync_status=sync_status,
    )
    return ApiResponse(message=f"Sync status for {entity_type} retrieved", data=data)


@sync_router.post("/{entity_type}/select", response_model=ApiResponse)
async def select_for_sync(
    entity_type: SyncEntity,
    request: SelectForSyncRequest,
    session: AsyncSession = Depends(get_session),
) -> ApiResponse:
    syncer = OrgMeterSyncer(session, request.funder_id)
    if request.needs_sync:
        count = await syncer.mark_for_sync(entity_type, request.ids)
        message = f"Marked {count} {entity_type} records for sync"
    else:
        count = await syncer.ignore(entity_type, request.ids)
        message = f"Ignored {count} {entity_type} records"
    return ApiResponse(message=message, data={"modified_count": count})


@sync_router.post("/{entity_type}/run", response_model=ApiResponse)
async def run_sync(
    entity_type: SyncEntity,
    request: RunSyncRequest,
    session: AsyncSession = Depends(get_session),
) -> ApiResponse:
    """Sync selected staged records into CRM entities."""
    logger.info(f"Running {entity_type} sync for funder {request.funder_id}")
    syncer = OrgMeterSyncer(session, request.funder_id, user_id=request.user_id)
    results = await syncer.sync_all(
        entity_type,
        dry_run=request.dry_run,
        update_existing=request.update_existing,
        only_selected=request.only_selected,
    )
    return ApiResponse(message=results["message"], data=results["stats"])
