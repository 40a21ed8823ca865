"""Background import jobs.

Import jobs are persisted in ``import_jobs`` and executed as asyncio tasks.
A process-local registry holds the cancel/pause flags the running task checks
on every progress update; the persisted status is checked too, so a job
cancelled or paused from another process still stops.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.orgmeter_catalog import IMPORTABLE_ENTITIES
from .. import models
from ..config import settings
from ..crud import NotFoundError
from ..db import get_session_factory
from ..orgmeter_client import OrgMeterClient
from .ingest import ImportCancelled, ImportPaused, OrgMeterImporter

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], OrgMeterClient]


class JobStateError(Exception):
    """Raised when a job operation is not allowed in the job's current status."""
    pass


class JobConflictError(Exception):
    """Raised when an active job already exists for the same funder and entity type."""
    pass


@dataclass
class JobControl:
    """In-process control flags for one running job."""
    cancelled: bool = False
    paused: bool = False
    task: asyncio.Task | None = None


class JobRegistry:
    """Jobs executing in this process."""

    def __init__(self) -> None:
        self._jobs: dict[str, JobControl] = {}

    def register(self, job_id: str) -> JobControl:
        return self._jobs.setdefault(job_id, JobControl())

    def get(self, job_id: str) -> JobControl | None:
        return self._jobs.get(job_id)

    def unregister(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def is_running(self, job_id: str) -> bool:
        return job_id in self._jobs

    def request_cancel(self, job_id: str) -> bool:
        control = self._jobs.get(job_id)
        if control is None:
            return False
        control.cancelled = True
        return True

    def request_pause(self, job_id: str) -> bool:
        control = self._jobs.get(job_id)
        if control is None:
            return False
        control.paused = True
        return True

    def job_ids(self) -> list[str]:
        return list(self._jobs)

    def __len__(self) -> int:
        return len(self._jobs)


registry = JobRegistry()


async def get_job(session: AsyncSession, job_id: str) -> models.ImportJob:
    result = await session.execute(select(models.ImportJob).where(models.ImportJob.job_id == job_id))
    job = result.scalar_one_or_none()
    if job is None:
        raise NotFoundError(f"Import job {job_id} not found")
    return job


async def find_active_job(
    session: AsyncSession,
    funder_id: int,
    entity_type: str,
) -> models.ImportJob | None:
    result = await session.execute(
        select(models.ImportJob)
        .where(
            models.ImportJob.funder_id == funder_id,
            models.ImportJob.entity_type == entity_type,
            models.ImportJob.status.in_(models.ACTIVE_JOB_STATUSES),
        )
        .order_by(models.ImportJob.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_import_job(
    session: AsyncSession,
    *,
    entity_type: str,
    api_key: str,
    funder_id: int,
    batch_size: int | None = None,
    update_existing: bool = True,
    created_by: str | None = None,
) -> models.ImportJob:
    """Persist a pending import job.

    Raises:
        JobStateError: Unknown entity type
        NotFoundError: Funder does not exist
        JobConflictError: An active or paused job exists for this funder and entity
    """
    if entity_type not in IMPORTABLE_ENTITIES:
        raise JobStateError(f"Invalid entity type: {entity_type}")

    if await session.get(models.Funder, funder_id) is None:
        raise NotFoundError(f"Funder {funder_id} not found")

    existing = await find_active_job(session, funder_id, entity_type)
    if existing is not None:
        raise JobConflictError(
            f"An import job for {entity_type} is already {existing.status} ({existing.job_id})"
        )

    job = models.ImportJob(
        job_id=models.ImportJob.generate_job_id(entity_type),
        entity_type=entity_type,
        status="pending",
        funder_id=funder_id,
        api_key=api_key,
        batch_size=batch_size or settings.imports.default_job_batch_size,
        update_existing=update_existing,
        created_by=created_by,
    )
    session.add(job)
    await session.commit()
    logger.info(f"Created import job {job.job_id} for funder {funder_id}")
    return job


async def execute_import_job(
    job_id: str,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    client_factory: ClientFactory = OrgMeterClient,
    job_registry: JobRegistry | None = None,
) -> None:
    """Run an import job to completion, cancellation, pause or failure."""
    session_factory = session_factory or get_session_factory()
    job_registry = registry if job_registry is None else job_registry
    control = job_registry.register(job_id)

    async with session_factory() as job_session, session_factory() as work_session:
        try:
            job = await get_job(job_session, job_id)
        except NotFoundError:
            logger.error(f"Import job {job_id} not found")
            job_registry.unregister(job_id)
            return

        pk = job.id
        if job.status not in ("pending", "running"):
            logger.warning(f"Import job {job_id} is {job.status}, not executing")
            job_registry.unregister(job_id)
            return

        async def check_interrupted() -> None:
            if control.cancelled:
                raise ImportCancelled("Import job was cancelled by user")
            if control.paused:
                raise ImportPaused("Import job was paused by user")
            status = await job_session.scalar(
                select(models.ImportJob.status).where(models.ImportJob.id == pk)
            )
            if status == "cancelled":
                control.cancelled = True
                raise ImportCancelled("Import job was cancelled")
            if status == "paused":
                control.paused = True
                raise ImportPaused("Import job was paused")

        async def on_progress(processed: int, total: int, current: str) -> None:
            # the record at ``processed`` is already committed
            job.update_progress(processed, total, current)
            await job_session.commit()
            await check_interrupted()

        # "beginning" resumes have already cleared the stored results
        prior = job.results_summary()
        importer: OrgMeterImporter | None = None

        def run_summary() -> dict[str, int]:
            if importer is None:
                return prior
            return _add_stats(prior, importer.stats.to_dict())

        try:
            if job.status != "running":
                job.mark_started()
                await job_session.commit()

            resume_index = job.progress_processed if job.resume_from == "current" else 0

            async with client_factory(job.api_key) as client:
                total = await client.get_total_count(job.entity_type)
                job.update_progress(resume_index, total)
                await job_session.commit()

                await check_interrupted()

                importer = OrgMeterImporter(work_session, client, job.funder_id)
                results = await importer.import_all(
                    job.entity_type,
                    update_existing=job.update_existing,
                    progress_callback=on_progress,
                    resume_from_index=resume_index,
                )

            job.mark_completed({**_add_stats(prior, results["stats"]), "details": results})
            await job_session.commit()
            logger.info(f"Import job {job_id} completed successfully")

        except ImportCancelled:
            job = await _reload(job_session, pk)
            job.record_results(run_summary())
            job.mark_cancelled()
            await job_session.commit()
            logger.info(f"Import job {job_id} was cancelled")
        except ImportPaused:
            job = await _reload(job_session, pk)
            job.record_results(run_summary())
            job.mark_paused({
                "last_processed_id": job.current_entity,
                "processed": job.progress_processed,
                "total": job.progress_total,
            })
            await job_session.commit()
            logger.info(f"Import job {job_id} was paused at {job.progress_processed}/{job.progress_total}")
        except Exception as e:
            logger.error(f"Import job {job_id} failed: {e}", exc_info=True)
            job = await _reload(job_session, pk)
            job.record_results(run_summary())
            job.mark_failed(e)
            await job_session.commit()
        finally:
            job_registry.unregister(job_id)


def _add_stats(prior: dict[str, int], stats: dict) -> dict[str, int]:
    """Add one importer run's counters to the job's stored results."""
    return {
        "imported": prior["imported"] + stats["total_saved"],
        "updated": prior["updated"] + stats["total_updated"],
        "errors": prior["errors"] + stats["error_count"],
        "skipped": prior["skipped"] + stats["total_skipped"],
    }


async def _reload(session: AsyncSession, pk: int) -> models.ImportJob:
    await session.rollback()
    job = await session.get(models.ImportJob, pk, populate_existing=True)
    if job is None:
        raise NotFoundError(f"Import job {pk} disappeared")
    return job


def start_import_job(
    job_id: str,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    client_factory: ClientFactory = OrgMeterClient,
    job_registry: JobRegistry | None = None,
) -> asyncio.Task:
    """Schedule ``execute_import_job`` on the running loop."""
    job_registry = registry if job_registry is None else job_registry
    control = job_registry.register(job_id)
    control.cancelled = False
    control.paused = False
    control.task = asyncio.create_task(
        execute_import_job(
            job_id,
            session_factory=session_factory,
            client_factory=client_factory,
            job_registry=job_registry,
        ),
        name=f"import-job-{job_id}",
    )
    return control.task


async def cancel_job(
    session: AsyncSession,
    job_id: str,
    *,
    job_registry: JobRegistry | None = None,
) -> models.ImportJob:
    job_registry = registry if job_registry is None else job_registry
    job = await get_job(session, job_id)
    if job.status not in models.ACTIVE_JOB_STATUSES:
        raise JobStateError(f"Cannot cancel job with status: {job.status}")

    job_registry.request_cancel(job_id)
    job.mark_cancelled()
    await session.commit()
    logger.info(f"Cancellation requested for import job {job_id}")
    return job


async def pause_job(
    session: AsyncSession,
    job_id: str,
    *,
    job_registry: JobRegistry | None = None,
) -> models.ImportJob:
    job_registry = registry if job_registry is None else job_registry
    job = await get_job(session, job_id)
    if job.status != "running":
        raise JobStateError(f"Can only pause running jobs. Current status: {job.status}")

    job_registry.request_pause(job_id)
    job.mark_paused()
    await session.commit()
    logger.info(f"Pause requested for import job {job_id}")
    return job


async def resume_job(
    session: AsyncSession,
    job_id: str,
    *,
    resume_from: str = "current",
    parameters: dict | None = None,
    job_registry: JobRegistry | None = None,
) -> models.ImportJob:
    """Mark a paused or failed job as running again.

    The caller schedules execution with ``start_import_job``.
    """
    job_registry = registry if job_registry is None else job_registry
    job = await get_job(session, job_id)
    if job.status not in ("paused", "failed"):
        raise JobStateError(f"Can only resume paused or failed jobs. Current status: {job.status}")
    if job_registry.is_running(job_id):
        raise JobStateError(f"Import job {job_id} is still shutting down, try again shortly")
    if resume_from not in ("current", "beginning"):
        raise JobStateError(f"Invalid resume point: {resume_from}")

    job.mark_resumed(resume_from, parameters)
    await session.commit()
    logger.info(f"Resumed import job {job_id} from {resume_from}")
    return job


async def paused_jobs(
    session: AsyncSession,
    funder_id: int | None = None,
    entity_types: Iterable[str] | None = None,
) -> list[models.ImportJob]:
    query = select(models.ImportJob).where(models.ImportJob.status == "paused")
    if funder_id is not None:
        query = query.where(models.ImportJob.funder_id == funder_id)
    entity_types = list(entity_types or [])
    if entity_types:
        query = query.where(models.ImportJob.entity_type.in_(entity_types))
    result = await session.execute(query.order_by(models.ImportJob.paused_at.desc()))
    return list(result.scalars().all())


async def resume_all_jobs(
    session: AsyncSession,
    *,
    funder_id: int | None = None,
    entity_types: Iterable[str] | None = None,
    resume_from: str = "current",
    parameters: dict | None = None,
    job_registry: JobRegistry | None = None,
) -> tuple[list[models.ImportJob], list[dict]]:
    """Resume every paused job matching the filters.

    Returns:
        (resumed jobs, failures as {job_id, error})
    """
    resumed: list[models.ImportJob] = []
    failures: list[dict] = []
    for job in await paused_jobs(session, funder_id, entity_types):
        try:
            resumed.append(
                await resume_job(
                    session,
                    job.job_id,
                    resume_from=resume_from,
                    parameters=parameters,
                    job_registry=job_registry,
                )
            )
        except JobStateError as e:
            failures.append({"job_id": job.job_id, "error": str(e)})
    return resumed, failures


async def active_jobs(session: AsyncSession) -> list[models.ImportJob]:
    result = await session.execute(
        select(models.ImportJob)
        .where(models.ImportJob.status.in_(models.ACTIVE_JOB_STATUSES))
        .order_by(models.ImportJob.created_at.desc())
    )
    return list(result.scalars().all())


async def jobs_by_funder(session: AsyncSession, funder_id: int, limit: int = 20) -> list[models.ImportJob]:
    result = await session.execute(
        select(models.ImportJob)
        .where(models.ImportJob.funder_id == funder_id)
        .order_by(models.ImportJob.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def job_stats(session: AsyncSession, **filters) -> dict[str, int]:
    """Job counts per status, optionally filtered by column values."""
    query = select(models.ImportJob.status, func.count()).group_by(models.ImportJob.status)
    for column, value in filters.items():
        if value is not None:
            query = query.where(getattr(models.ImportJob, column) == value)
    result = await session.execute(query)
    return {status: count for status, count in result.all()}


async def list_jobs(
    session: AsyncSession,
    *,
    funder_id: int | None = None,
    status: str | None = None,
    entity_type: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    conditions = []
    if funder_id is not None:
        conditions.append(models.ImportJob.funder_id == funder_id)
    if status:
        conditions.append(models.ImportJob.status == status)
    if entity_type:
        conditions.append(models.ImportJob.entity_type == entity_type)

    total = await session.scalar(select(func.count()).select_from(models.ImportJob).where(*conditions))
    result = await session.execute(
        select(models.ImportJob)
        .where(*conditions)
        .order_by(models.ImportJob.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    total = total or 0
    return {
        "jobs": list(result.scalars().all()),
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
        "statistics": await job_stats(session, funder_id=funder_id),
    }


def _brief(job: models.ImportJob | None, *fields: str) -> dict | None:
    if job is None:
        return None
    data = job.to_dict()
    brief = {"job_id": job.job_id, "status": job.status, "created_at": job.created_at}
    for name in fields:
        brief[name] = data[name]
    return brief


async def entity_job_status(session: AsyncSession, funder_id: int, entity_type: str) -> dict:
    """Job overview for one entity type of one funder (drives the import wizard)."""
    if entity_type not in IMPORTABLE_ENTITIES:
        raise JobStateError(f"Invalid entity type: {entity_type}")

    result = await session.execute(
        select(models.ImportJob)
        .where(
            models.ImportJob.funder_id == funder_id,
            models.ImportJob.entity_type == entity_type,
        )
        .order_by(models.ImportJob.created_at.desc())
        .limit(10)
    )
    recent = list(result.scalars().all())

    def first(statuses: tuple[str, ...]) -> models.ImportJob | None:
        return next((job for job in recent if job.status in statuses), None)

    active = first(("pending", "running"))
    paused = first(("paused",))
    last_completed = first(("completed",))
    last_failed = first(("failed", "cancelled"))

    stats_result = await session.execute(
        select(
            models.ImportJob.status,
            func.count(),
            func.max(models.ImportJob.created_at),
            func.sum(models.ImportJob.results_imported),
            func.sum(models.ImportJob.results_updated),
            func.sum(models.ImportJob.results_errors),
        )
        .where(
            models.ImportJob.funder_id == funder_id,
            models.ImportJob.entity_type == entity_type,
        )
        .group_by(models.ImportJob.status)
    )
    detailed = {
        status: {
            "count": count,
            "last_created": last_created,
            "total_imported": imported or 0,
            "total_updated": updated or 0,
            "total_errors": errors or 0,
        }
        for status, count, last_created, imported, updated, errors in stats_result.all()
    }

    def count(status: str) -> int:
        return detailed.get(status, {}).get("count", 0)

    record_count = await session.scalar(
        select(func.count())
        .select_from(models.OrgMeterRecord)
        .where(
            models.OrgMeterRecord.funder_id == funder_id,
            models.OrgMeterRecord.entity_type == entity_type,
        )
    )

    failed_brief = _brief(last_failed, "error", "completed_at")
    if failed_brief is not None:
        failed_brief["can_resume"] = last_failed.status == "failed"
    paused_brief = _brief(paused, "progress", "paused_at")
    if paused_brief is not None:
        paused_brief["can_resume"] = True

    return {
        "entity_type": entity_type,
        "funder_id": funder_id,
        "can_create_new_job": active is None and paused is None,
        "entity_collection": {"total_records": record_count or 0, "entity_type": entity_type},
        "job_summary": {
            "total_jobs": len(recent),
            "completed_jobs": count("completed"),
            "failed_jobs": count("failed") + count("cancelled"),
            "running_jobs": count("running"),
            "pending_jobs": count("pending"),
            "paused_jobs": count("paused"),
            "has_active_jobs": count("running") + count("pending") > 0,
            "has_paused_jobs": count("paused") > 0,
        },
        "active_job": _brief(
            active, "progress", "started_at", "estimated_time_remaining", "last_progress_update"
        ),
        "paused_job": paused_brief,
        "last_completed_job": _brief(last_completed, "results", "completed_at"),
        "last_failed_job": failed_brief,
        "detailed_statistics": detailed,
        "recent_jobs": [_brief(job, "completed_at") for job in recent[:5]],
    }


async def funders_by_api_key(session: AsyncSession, api_key: str) -> dict:
    """Active funders configured with this OrgMeter key, with their job counts."""
    result = await session.execute(
        select(models.Funder)
        .where(
            models.Funder.import_api_key == api_key,
            models.Funder.inactive.is_(False),
        )
        .order_by(models.Funder.created_at.desc())
    )
    funders = list(result.scalars().all())

    details = []
    for funder in funders:
        stats = await job_stats(session, funder_id=funder.id)
        recent = await jobs_by_funder(session, funder.id, limit=5)
        details.append({
            "funder": funder,
            "job_statistics": {
                "total_jobs": sum(stats.values()),
                "active_jobs": stats.get("pending", 0) + stats.get("running", 0),
                "completed_jobs": stats.get("completed", 0),
                "failed_jobs": stats.get("failed", 0),
                "paused_jobs": stats.get("paused", 0),
            },
            "recent_jobs": [_brief(job, "completed_at") for job in recent],
        })

    return {
        "funders": details,
        "summary": {
            "total_funders": len(details),
            "funders_with_active_jobs": sum(1 for d in details if d["job_statistics"]["active_jobs"]),
            "total_active_jobs": sum(d["job_statistics"]["active_jobs"] for d in details),
            "total_completed_jobs": sum(d["job_statistics"]["completed_jobs"] for d in details),
        },
    }


async def purge_finished_jobs(
    session: AsyncSession,
    retention_days: int | None = None,
    now: datetime | None = None,
) -> int:
    """Delete completed, failed and cancelled jobs older than the retention window."""
    retention_days = retention_days or settings.imports.job_retention_days
    cutoff = (now or datetime.utcnow()) - timedelta(days=retention_days)
    result = await session.execute(
        delete(models.ImportJob).where(
            models.ImportJob.status.in_(models.FINISHED_JOB_STATUSES),
            models.ImportJob.completed_at < cutoff,
        )
    )
    await session.commit()
    if result.rowcount:
        logger.info(f"Purged {result.rowcount} finished import jobs older than {retention_days} days")
    return result.rowcount or 0
