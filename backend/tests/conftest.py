# tests/conftest.py — Shared test fixtures
import os
from typing import List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test_sprintboard.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"

import background
from models import Base, Project, Role, User
from auth import AuthService
from database import get_db_session, get_session_factory
from rbac import seed_defaults
from main import app


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        await seed_defaults(session)
    yield engine
    # Background side effects must finish before the schema goes away
    await background.drain()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory):
    """HTTP test client with overridden DB dependencies"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await background.drain()
    app.dependency_overrides.clear()


async def create_user(db_session, email: str, role_names: List[str], password: str = "TestPassword123!") -> User:
    result = await db_session.execute(select(Role).where(Role.name.in_(role_names)))
    user = User(
        email=email,
        display_name=email.split("@")[0],
        password_hash=AuthService.hash_password(password),
        roles=list(result.scalars().all()),
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def admin_user(db_session):
    """Organisation admin: holds every default permission"""
    return await create_user(db_session, "admin@sprintboard.dev", ["org_admin"])


@pytest_asyncio.fixture
async def developer_user(db_session):
    return await create_user(db_session, "dev@sprintboard.dev", ["developer"])


@pytest_asyncio.fixture
async def viewer_user(db_session):
    return await create_user(db_session, "viewer@sprintboard.dev", ["viewer"])


@pytest_asyncio.fixture
async def test_project(db_session, admin_user):
    project = Project(key="SB", name="SprintBoard", created_by=admin_user.id)
    db_session.add(project)
    await db_session.commit()
    await db_session.refresh(project)
    return project


def get_auth_headers(user: User, permissions: Optional[List[str]] = None) -> dict:
    """Generate auth headers for a user; without a permissions claim the gate resolves roles"""
    token_data = {
        "sub": user.id,
        "email": user.email,
        "roles": user.role_names,
    }
    if permissions is not None:
        token_data["permissions"] = permissions
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}
