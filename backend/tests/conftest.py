# tests/conftest.py - Shared test fixtures
import os
import uuid

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["ENVIRONMENT"] = "test"

from audit import OperationContext
from models import Base, User, Standard, Requirement, TaskTemplate, requirement_task_templates, utcnow
from database import get_db_session
from main import app


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory):
    """HTTP test client with overridden DB dependency"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def auditor(db_session):
    """Create the user who runs campaigns"""
    user = User(id=str(uuid.uuid4()), name="Audrey Auditor", email="auditor@compliance.test", role="auditor")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def engineer(db_session):
    """Create a user who owns task instances"""
    user = User(id=str(uuid.uuid4()), name="Eli Engineer", email="engineer@compliance.test", role="user")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def pci(db_session):
    """
    PCI DSS with REQ-1 and REQ-2. "Check Firewall" is linked to both,
    "Check Logs" only to REQ-1. REQ-3 has no templates.
    """
    standard = Standard(id=str(uuid.uuid4()), name="PCI DSS", short_name="PCI", version="4.0")
    db_session.add(standard)
    await db_session.flush()

    reqs = {}
    for ref in ("REQ-1", "REQ-2", "REQ-3"):
        req = Requirement(
            id=str(uuid.uuid4()), standard_id=standard.id,
            control_id_reference=ref, requirement_text=f"{ref} control text",
        )
        db_session.add(req)
        reqs[ref] = req

    firewall = TaskTemplate(
        id=str(uuid.uuid4()), title="Check Firewall", category="Network",
        description="Review firewall rule base", evidence_types_expected=["screenshot"],
    )
    logs = TaskTemplate(id=str(uuid.uuid4()), title="Check Logs", category="Logging")
    db_session.add_all([firewall, logs])
    await db_session.flush()

    await db_session.execute(requirement_task_templates.insert(), [
        {"requirement_id": reqs["REQ-1"].id, "task_template_id": firewall.id, "created_at": utcnow()},
        {"requirement_id": reqs["REQ-2"].id, "task_template_id": firewall.id, "created_at": utcnow()},
        {"requirement_id": reqs["REQ-1"].id, "task_template_id": logs.id, "created_at": utcnow()},
    ])
    await db_session.commit()
    return {
        "standard": standard,
        "REQ-1": reqs["REQ-1"],
        "REQ-2": reqs["REQ-2"],
        "REQ-3": reqs["REQ-3"],
        "firewall": firewall,
        "logs": logs,
    }


def actor_headers(user: User, idempotency_key: str = None) -> dict:
    """Headers identifying the acting user"""
    headers = {"X-User-ID": user.id}
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key
    return headers


def ctx_for(user: User = None, idempotency_key: str = None) -> OperationContext:
    return OperationContext(user_id=user.id if user else None, request_id="test", idempotency_key=idempotency_key)
