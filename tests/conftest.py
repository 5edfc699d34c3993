import os
import tempfile
from collections.abc import AsyncGenerator
from typing import List, Optional

# Point the application at a throwaway SQLite file before it is imported
TEST_DB_PATH = os.path.join(tempfile.gettempdir(), "practice_import_test.db")
os.environ["DATABASE_URL"] = os.getenv("TEST_DATABASE_URL", f"sqlite+aiosqlite:///{TEST_DB_PATH}")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession

from app.main import app
from app.api.v1 import dependencies
from app.db.base import Base
from app.db.repositories.import_jobs import ImportJobRepository
from app.db.repositories.patients import PatientRepository
from app.db.session import engine, async_session_factory
from app.models.import_job import ImportJob, ImportJobRow
from app.schemas.patient import PatientRecord, Sex
from app.schemas.user import User, UserRole
from app.services.imports.locks import TenantLockManager
from app.services.imports.service import ImportService


PRACTICE_USER = User(
    id="user-practice-a",
    tenant_id="practice-a",
    email="secretariat@cabinet-a.fr",
    role=UserRole.ASSISTANT,
)

# Row 1 valid, row 2 has no date of birth, row 3 has an unusable email
SCENARIO_CSV = (
    "Nom;Prénom;Date de naissance;Sexe;Email\n"
    "Dupont;Marie;05/03/1985;F;marie.dupont@example.com\n"
    "Martin;Paul;;M;paul.martin@example.com\n"
    "Durand;Luc;1972-07-12;H;luc.durand@\n"
)

SCENARIO_MAPPING = {
    "Nom": "last_name",
    "Prénom": "first_name",
    "Date de naissance": "birth_date",
    "Sexe": "sex",
    "Email": "email",
}


@pytest_asyncio.fixture()
async def reset_database() -> AsyncGenerator[None, None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    TenantLockManager._locks.clear()
    yield
    TenantLockManager._locks.clear()


@pytest.fixture(autouse=True)
def override_auth():
    app.dependency_overrides[dependencies.get_current_user] = lambda: PRACTICE_USER
    yield
    app.dependency_overrides.clear()


@pytest.fixture()
def other_practice_user() -> User:
    return User(
        id="user-practice-b",
        tenant_id="practice-b",
        email="accueil@cabinet-b.fr",
        role=UserRole.PRACTITIONER,
    )


@pytest.fixture()
def as_user():
    """Switch the authenticated user for the rest of the test."""
    def _as_user(user: User) -> None:
        app.dependency_overrides[dependencies.get_current_user] = lambda: user
    return _as_user


@pytest_asyncio.fixture()
async def async_client(reset_database) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(base_url="http://testserver", transport=transport) as client:
        yield client


@pytest_asyncio.fixture()
async def db_session(reset_database) -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        yield session


@pytest.fixture()
def scenario_csv() -> str:
    return SCENARIO_CSV


@pytest.fixture()
def scenario_mapping() -> dict:
    return dict(SCENARIO_MAPPING)


@pytest.fixture()
def validated_job(reset_database):
    """Factory uploading and validating a file through the import service."""
    async def _create(
        content: str = SCENARIO_CSV,
        mapping: Optional[dict] = None,
        user: User = PRACTICE_USER,
        file_name: str = "patients.csv",
    ) -> str:
        async with ImportService(user) as service:
            upload = await service.upload(content, file_name)
            await service.validate(upload.job_id, mapping or SCENARIO_MAPPING)
        return upload.job_id
    return _create


@pytest.fixture()
def fetch_job(reset_database):
    """Load a job in a fresh session so no cached state leaks into assertions."""
    async def _fetch(job_id: str) -> ImportJob:
        async with async_session_factory() as session:
            return await session.get(ImportJob, job_id)
    return _fetch


@pytest.fixture()
def fetch_rows(reset_database):
    async def _fetch(job_id: str) -> List[ImportJobRow]:
        async with async_session_factory() as session:
            return await ImportJobRepository(session).get_rows(job_id)
    return _fetch


@pytest.fixture()
def count_patients(reset_database):
    async def _count(tenant_id: str = PRACTICE_USER.tenant_id) -> int:
        async with async_session_factory() as session:
            return await PatientRepository(session).count(filters={"tenant_id": tenant_id})
    return _count


@pytest_asyncio.fixture()
async def seed_patient(reset_database):
    """Factory storing a patient directly in the record store."""
    async def _seed(tenant_id: str = PRACTICE_USER.tenant_id, **fields) -> str:
        values = {
            "last_name": "Dupont",
            "first_name": "Marie",
            "birth_date": "1985-03-05",
            "sex": Sex.FEMALE,
        }
        values.update(fields)
        async with async_session_factory() as session:
            patient = await PatientRepository(session).create_patient(tenant_id, PatientRecord(**values))
            await session.commit()
            return patient.id
    return _seed
