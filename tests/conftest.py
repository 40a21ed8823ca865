"""Pytest configuration.

Points the app at SQLite and zeroes the OrgMeter delays before any ``crm``
module is imported, then provides database, fake OrgMeter and API client
fixtures.
"""

import os
import sys
from pathlib import Path

os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ORGMETER_REQUEST_DELAY_MS", "0")
os.environ.setdefault("ORGMETER_COUNT_DELAY_MS", "0")
os.environ.setdefault("ORGMETER_RETRY_MIN_WAIT", "0")
os.environ.setdefault("ORGMETER_RETRY_MAX_WAIT", "0")


def _prepend_sys_path(path: Path) -> None:
    resolved = str(path.resolve())
    if resolved not in sys.path:
        sys.path.insert(0, resolved)


REPO_ROOT = Path(__file__).resolve().parents[1]

# Allow importing `crm` and `config` without installing the project.
_prepend_sys_path(REPO_ROOT)
# Allow importing test helpers such as `fakes`.
_prepend_sys_path(REPO_ROOT / "tests")

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from crm import models  # noqa: E402
from crm.pipelines.jobs import JobRegistry  # noqa: E402
from fakes import FakeOrgMeter  # noqa: E402


@pytest.fixture
async def engine(tmp_path):
    # a file database so the job runner's two sessions see each other's commits
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'crm.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def funder(session) -> models.Funder:
    funder = models.Funder(
        name="Acme Capital",
        import_source="OrgMeter",
        import_api_key="om-key",
    )
    session.add(funder)
    await session.commit()
    return funder


@pytest.fixture
def orgmeter() -> FakeOrgMeter:
    return FakeOrgMeter()


@pytest.fixture
def client_factory(orgmeter):
    return orgmeter.client_factory


@pytest.fixture
def job_registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture
async def api_client(session_factory, client_factory, job_registry):
    from crm.api import app
    from crm.db import get_session
    from crm.import_api import get_client_factory, get_job_registry, get_job_session_factory

    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_client_factory] = lambda: client_factory
    app.dependency_overrides[get_job_session_factory] = lambda: session_factory
    app.dependency_overrides[get_job_registry] = lambda: job_registry

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    app.dependency_overrides.clear()
