from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from crm import models
from crm.crud import NotFoundError
from crm.pipelines import jobs


async def _fresh(session_factory, job_id: str) -> models.ImportJob:
    async with session_factory() as session:
        return await jobs.get_job(session, job_id)


def _job(funder_id: int, status: str, entity_type: str = "merchant", **fields) -> models.ImportJob:
    return models.ImportJob(
        job_id=models.ImportJob.generate_job_id(entity_type),
        entity_type=entity_type,
        status=status,
        funder_id=funder_id,
        api_key="om-key",
        **fields,
    )


async def _run(job_id, session_factory, orgmeter, job_registry) -> None:
    await jobs.execute_import_job(
        job_id,
        session_factory=session_factory,
        client_factory=orgmeter.client_factory,
        job_registry=job_registry,
    )


async def test_create_import_job_validates_input(session, funder) -> None:
    with pytest.raises(jobs.JobStateError, match="Invalid entity type"):
        await jobs.create_import_job(session, entity_type="payment", api_key="om-key", funder_id=funder.id)
    with pytest.raises(NotFoundError):
        await jobs.create_import_job(session, entity_type="merchant", api_key="om-key", funder_id=999)

    job = await jobs.create_import_job(session, entity_type="merchant", api_key="om-key", funder_id=funder.id)
    assert job.status == "pending"
    assert job.batch_size == 20
    assert job.job_id.startswith("import_merchant_")

    with pytest.raises(jobs.JobConflictError, match="already pending"):
        await jobs.create_import_job(session, entity_type="merchant", api_key="om-key", funder_id=funder.id)


async def test_execute_import_job_completes(session, session_factory, funder, orgmeter, job_registry) -> None:
    orgmeter.add("merchant", *[{"id": i, "businessName": f"M{i}"} for i in range(1, 4)])
    job = await jobs.create_import_job(session, entity_type="merchant", api_key="om-key", funder_id=funder.id)

    await _run(job.job_id, session_factory, orgmeter, job_registry)

    job = await _fresh(session_factory, job.job_id)
    assert job.status == "completed"
    assert job.results_imported == 3
    assert job.results_errors == 0
    assert job.progress_processed == 3
    assert job.progress_total == 3
    assert job.progress_percentage == 100
    assert job.current_entity == "M3"
    assert job.results_details["stats"]["total_saved"] == 3
    assert job.started_at is not None and job.completed_at is not None
    assert len(job_registry) == 0


async def test_execute_import_job_records_failure(session, session_factory, funder, orgmeter, job_registry) -> None:
    job = await jobs.create_import_job(session, entity_type="merchant", api_key="bad-key", funder_id=funder.id)

    await _run(job.job_id, session_factory, orgmeter, job_registry)

    job = await _fresh(session_factory, job.job_id)
    assert job.status == "failed"
    assert job.error_message == "Failed to connect to OrgMeter API"
    assert "ImportFailedError" in job.error_stack
    assert job.to_dict()["error"]["message"] == "Failed to connect to OrgMeter API"


async def test_cancelled_job_is_not_executed(session, session_factory, funder, orgmeter, job_registry) -> None:
    orgmeter.add("merchant", {"id": 1})
    job = await jobs.create_import_job(session, entity_type="merchant", api_key="om-key", funder_id=funder.id)
    await jobs.cancel_job(session, job.job_id, job_registry=job_registry)

    await _run(job.job_id, session_factory, orgmeter, job_registry)

    assert (await _fresh(session_factory, job.job_id)).status == "cancelled"
    assert orgmeter.requests == []


async def test_pause_then_resume_from_current(session, session_factory, funder, orgmeter, job_registry) -> None:
    orgmeter.add("merchant", *[{"id": i, "businessName": f"M{i}"} for i in range(1, 5)])
    job = await jobs.create_import_job(session, entity_type="merchant", api_key="om-key", funder_id=funder.id)
    job_id = job.job_id
    paused = []

    def pause_on_second(entity_type: str, entity_id: str) -> None:
        if entity_id == "2" and not paused:
            paused.append(entity_id)
            job_registry.request_pause(job_id)

    orgmeter.on_detail = pause_on_second
    await _run(job_id, session_factory, orgmeter, job_registry)

    # record 2 was committed before the pause took effect
    job = await _fresh(session_factory, job_id)
    assert job.status == "paused"
    assert job.paused_at is not None
    assert job.progress_processed == 2
    assert job.bookmark == {"last_processed_id": "M2", "processed": 2, "total": 4}
    assert job.last_processed_id == "M2"
    assert job.results_imported == 2

    async with session_factory() as resume_session:
        resumed = await jobs.resume_job(
            resume_session, job_id, parameters={"batch_size": 50}, job_registry=job_registry
        )
        assert resumed.status == "running"
        assert resumed.batch_size == 50
        assert resumed.paused_at is None

    await _run(job_id, session_factory, orgmeter, job_registry)

    job = await _fresh(session_factory, job_id)
    assert job.status == "completed"
    assert job.progress_processed == 4
    assert job.results_imported == 4
    assert job.results_updated == 0
    assert job.results_details["stats"]["total_saved"] == 2

    result = await session.execute(
        select(models.OrgMeterRecord.orgmeter_id).where(models.OrgMeterRecord.entity_type == "merchant")
    )
    assert set(result.scalars().all()) == {"1", "2", "3", "4"}


async def test_resume_from_beginning_resets_progress(session, funder, job_registry) -> None:
    job = _job(
        funder.id,
        "failed",
        progress_processed=3,
        progress_percentage=60,
        results_imported=3,
        last_processed_id="M3",
        bookmark={"processed": 3},
    )
    session.add(job)
    await session.commit()

    job = await jobs.resume_job(session, job.job_id, resume_from="beginning", job_registry=job_registry)

    assert job.status == "running"
    assert job.resume_from == "beginning"
    assert job.progress_processed == 0
    assert job.results_imported == 0
    assert job.bookmark is None
    assert job.last_processed_id is None


async def test_job_state_transitions_are_checked(session, funder, job_registry) -> None:
    completed = _job(funder.id, "completed")
    paused = _job(funder.id, "paused", entity_type="iso")
    session.add_all([completed, paused])
    await session.commit()

    with pytest.raises(jobs.JobStateError, match="Cannot cancel"):
        await jobs.cancel_job(session, completed.job_id, job_registry=job_registry)
    with pytest.raises(jobs.JobStateError, match="Can only pause running jobs"):
        await jobs.pause_job(session, paused.job_id, job_registry=job_registry)
    with pytest.raises(jobs.JobStateError, match="Can only resume paused or failed"):
        await jobs.resume_job(session, completed.job_id, job_registry=job_registry)
    with pytest.raises(jobs.JobStateError, match="Invalid resume point"):
        await jobs.resume_job(session, paused.job_id, resume_from="middle", job_registry=job_registry)

    job_registry.register(paused.job_id)
    with pytest.raises(jobs.JobStateError, match="still shutting down"):
        await jobs.resume_job(session, paused.job_id, job_registry=job_registry)

    with pytest.raises(NotFoundError):
        await jobs.get_job(session, "import_missing")


async def test_pause_running_job_sets_registry_flag(session, funder, job_registry) -> None:
    job = _job(funder.id, "running")
    session.add(job)
    await session.commit()
    control = job_registry.register(job.job_id)

    job = await jobs.pause_job(session, job.job_id, job_registry=job_registry)

    assert job.status == "paused"
    assert control.paused is True


async def test_start_import_job_runs_in_background(session, session_factory, funder, orgmeter, job_registry) -> None:
    orgmeter.add("iso", {"id": 4, "name": "Broker"})
    job = await jobs.create_import_job(session, entity_type="iso", api_key="om-key", funder_id=funder.id)

    task = jobs.start_import_job(
        job.job_id,
        session_factory=session_factory,
        client_factory=orgmeter.client_factory,
        job_registry=job_registry,
    )
    assert job_registry.is_running(job.job_id)
    assert not jobs.registry.is_running(job.job_id)
    await task

    assert (await _fresh(session_factory, job.job_id)).status == "completed"
    assert not job_registry.is_running(job.job_id)


async def test_resume_all_jobs_reports_failures(session, funder, job_registry) -> None:
    first = _job(funder.id, "paused", paused_at=datetime.utcnow())
    second = _job(funder.id, "paused", entity_type="iso", paused_at=datetime.utcnow())
    session.add_all([first, second])
    await session.commit()
    job_registry.register(second.job_id)

    resumed, failures = await jobs.resume_all_jobs(session, funder_id=funder.id, job_registry=job_registry)

    assert [job.job_id for job in resumed] == [first.job_id]
    assert failures[0]["job_id"] == second.job_id


async def test_purge_finished_jobs_respects_retention(session, funder) -> None:
    now = datetime(2024, 5, 20, 12, 0)
    old = _job(funder.id, "completed", completed_at=now - timedelta(days=10))
    recent = _job(funder.id, "failed", entity_type="iso", completed_at=now - timedelta(days=1))
    paused = _job(funder.id, "paused", entity_type="lender")
    session.add_all([old, recent, paused])
    await session.commit()
    kept = {recent.job_id, paused.job_id}

    assert await jobs.purge_finished_jobs(session, retention_days=7, now=now) == 1

    remaining = (await session.execute(select(models.ImportJob.job_id))).scalars().all()
    assert set(remaining) == kept


async def test_entity_job_status_summarises_jobs(session, funder) -> None:
    session.add_all([
        _job(funder.id, "completed", results_imported=5, completed_at=datetime.utcnow()),
        _job(funder.id, "paused", paused_at=datetime.utcnow()),
        models.OrgMeterRecord(funder_id=funder.id, entity_type="merchant", orgmeter_id="1", payload={"id": 1}),
    ])
    await session.commit()

    status = await jobs.entity_job_status(session, funder.id, "merchant")

    assert status["can_create_new_job"] is False
    assert status["entity_collection"]["total_records"] == 1
    assert status["job_summary"]["completed_jobs"] == 1
    assert status["job_summary"]["paused_jobs"] == 1
    assert status["job_summary"]["has_paused_jobs"] is True
    assert status["job_summary"]["has_active_jobs"] is False
    assert status["paused_job"]["can_resume"] is True
    assert status["last_completed_job"]["results"]["imported"] == 5
    assert status["detailed_statistics"]["completed"]["total_imported"] == 5
    assert status["active_job"] is None

    with pytest.raises(jobs.JobStateError):
        await jobs.entity_job_status(session, funder.id, "payment")


async def test_list_jobs_paginates_with_statistics(session, funder) -> None:
    other = models.Funder(name="Other Funder")
    session.add(other)
    await session.flush()
    session.add_all([
        _job(funder.id, "completed"),
        _job(funder.id, "completed", entity_type="iso"),
        _job(funder.id, "failed", entity_type="lender"),
        _job(other.id, "completed"),
    ])
    await session.commit()

    result = await jobs.list_jobs(session, funder_id=funder.id, limit=2)

    assert len(result["jobs"]) == 2
    assert result["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
    assert result["statistics"] == {"completed": 2, "failed": 1}

    failed = await jobs.list_jobs(session, funder_id=funder.id, status="failed")
    assert [job.entity_type for job in failed["jobs"]] == ["lender"]


async def test_funders_by_api_key_skips_inactive_funders(session, funder) -> None:
    session.add_all([
        models.Funder(name="Retired", import_api_key="om-key", inactive=True),
        models.Funder(name="Elsewhere", import_api_key="other-key"),
        _job(funder.id, "running"),
    ])
    await session.commit()

    result = await jobs.funders_by_api_key(session, "om-key")

    assert [entry["funder"].name for entry in result["funders"]] == ["Acme Capital"]
    assert result["funders"][0]["job_statistics"]["active_jobs"] == 1
    assert result["summary"]["total_funders"] == 1
    assert result["summary"]["funders_with_active_jobs"] == 1
