'''
Pytest configuration for the FastAPI application.

This file sets up fixtures for:
1. A fresh on-disk SQLite database (aiosqlite) per test, with every table created.
2. A session for seeding and service tests, and the session factory the
   transaction-owning services use.
3. Providing instances of all service classes, pre-injected with the test database.
4. Providing a FastAPI TestClient whose lifespan runs against a seeded database.
'''

import pytest
from typing import AsyncGenerator, Callable

# --- FastAPI & Testing Imports ---
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, async_sessionmaker
from sqlalchemy.orm import Session

# --- Application Imports ---
from lesson_sync_backend.common.config import settings
from lesson_sync_backend.database import models as db_models
from lesson_sync_backend.database.engine import build_engine, build_session_factory, create_all_tables
from lesson_sync_backend.services.relationship_service import RelationshipMirrorService
from lesson_sync_backend.services.schedule_service import ScheduleService
from lesson_sync_backend.services.consistency_service import ConsistencyService
from lesson_sync_backend.services.cascade_service import CascadeDeletionService

from tests.database import factories


@pytest.fixture(scope="session")
def anyio_backend():
    """
    Override the default 'anyio_backend' fixture.
    1. Forces the backend to 'asyncio' (solves 'trio' error).
    2. Promotes the scope to 'session' (solves 'ScopeMismatch').
    """
    return "asyncio"


# --- 1. Database Fixtures ---

@pytest.fixture(scope="function")
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'lesson_sync.db'}")
    await create_all_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest.fixture(scope="function")
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """
    The seeding session. Factories add to it; tests commit before handing
    control to services that open their own transactions.
    """
    session = session_factory()
    factories.test_db_session = session
    try:
        yield session
    finally:
        factories.test_db_session = None
        await session.rollback()
        await session.close()


@pytest.fixture(scope="function")
def fresh_session(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[], AsyncSession]:
    """Opens a new session to read back what another transaction committed."""
    return session_factory


# --- 2. SERVICE FIXTURES ---

@pytest.fixture(scope="function")
def relationship_service(db_session: AsyncSession) -> RelationshipMirrorService:
    return RelationshipMirrorService(db=db_session)

@pytest.fixture(scope="function")
def schedule_service(db_session: AsyncSession, relationship_service: RelationshipMirrorService) -> ScheduleService:
    return ScheduleService(db=db_session, relationships=relationship_service)

@pytest.fixture(scope="function")
def consistency_service(session_factory: async_sessionmaker[AsyncSession]) -> ConsistencyService:
    return ConsistencyService(session_factory=session_factory)

@pytest.fixture(scope="function")
def recorded_sleeps() -> list[float]:
    return []

@pytest.fixture(scope="function")
def cascade_service(session_factory: async_sessionmaker[AsyncSession], recorded_sleeps: list[float]) -> CascadeDeletionService:
    """Retries are not actually slept; the requested delays are recorded instead."""
    async def fake_sleep(delay: float):
        recorded_sleeps.append(delay)

    return CascadeDeletionService(
        session_factory,
        max_retries=3,
        backoff_base_seconds=0.5,
        sleep=fake_sleep
    )


# --- 3. DATA FIXTURES ---

@pytest.fixture(scope="function")
async def test_teacher_orm(db_session: AsyncSession) -> db_models.Teachers:
    teacher = factories.TeacherFactory.create()
    await db_session.commit()
    return teacher

@pytest.fixture(scope="function")
async def test_other_teacher_orm(db_session: AsyncSession) -> db_models.Teachers:
    teacher = factories.TeacherFactory.create()
    await db_session.commit()
    return teacher

@pytest.fixture(scope="function")
async def test_student_orm(db_session: AsyncSession) -> db_models.Students:
    student = factories.StudentFactory.create()
    await db_session.commit()
    return student

@pytest.fixture(scope="function")
async def test_other_student_orm(db_session: AsyncSession) -> db_models.Students:
    student = factories.StudentFactory.create()
    await db_session.commit()
    return student


# --- 4. API Client ---

@pytest.fixture(scope="function")
def api_database(tmp_path, monkeypatch) -> Session:
    """
    Points the app at a fresh SQLite file and yields a plain (sync) session
    to seed it. Seeded rows must be committed before the client is used.
    """
    path = tmp_path / "lesson_sync_api.db"
    monkeypatch.setattr(settings, "TEST_MODE", True)
    monkeypatch.setattr(settings, "DATABASE_URL_TEST", f"sqlite+aiosqlite:///{path}")
    monkeypatch.setattr(settings, "DB_CREATE_ALL", True)
    monkeypatch.setattr(settings, "ORPHAN_CLEANUP_INTERVAL_SECONDS", 0)
    monkeypatch.setattr(settings, "RECONCILIATION_INTERVAL_SECONDS", 0)
    monkeypatch.setattr(settings, "CASCADE_BACKOFF_BASE_SECONDS", 0.01)
    monkeypatch.setattr(settings, "JOB_BACKOFF_BASE_SECONDS", 0.01)

    sync_engine = create_engine(f"sqlite:///{path}")
    db_models.Base.metadata.create_all(sync_engine)
    session = Session(sync_engine, expire_on_commit=False)
    factories.test_db_session = session
    try:
        yield session
    finally:
        factories.test_db_session = None
        session.close()
        sync_engine.dispose()


@pytest.fixture(scope="function")
def client(api_database: Session) -> TestClient:
    """
    Runs the app's lifespan (engine, tables, job processor) against the
    seeded test database.
    """
    from lesson_sync_backend.main import app

    assert settings.TEST_MODE is True, \
        "TEST_MODE was not set to True! Check your .env file or environment."

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
