import os

# Settings are read at import time, so they must be in place before the package loads
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./access_test_default.db")
os.environ["JWT_SECRET"] = "test-secret"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["SUPERUSER_IDS"] = "root-admin"
os.environ["RESOLUTION_RETRY_BACKOFF_SECONDS"] = "0"
os.environ.pop("RATE_LIMIT", None)

from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from access_engine.core.clock import FixedClock
from access_engine.core.database.engine import get_db, get_session_factory, init_db
from access_engine.features.assignments.store import RolePermissionStore, UserPermissionStore
from access_engine.features.permissions.catalog import PermissionCatalog
from access_engine.features.resolution.dependencies import get_clock
from access_engine.features.resolution.engine import ResolutionEngine
from access_engine.features.users.auth import create_access_token
from access_engine.main import app


START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'access.db'}", poolclass=NullPool)
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def catalog(db):
    return PermissionCatalog(db)


@pytest.fixture
def role_store(db, clock):
    return RolePermissionStore(db, clock=clock)


@pytest.fixture
def user_store(db, clock):
    return UserPermissionStore(db, clock=clock)


@pytest.fixture
def resolver(session_factory, clock):
    return ResolutionEngine(session_factory, clock=clock)


@pytest.fixture
def make_permission(catalog):
    """Factory creating catalog entries with sensible defaults."""
    async def _make(code, module=None, action=None, **kwargs):
        prefix, _, suffix = code.partition(".")
        return await catalog.create(
            code=code,
            name=kwargs.pop("name", code.title()),
            module=module or prefix.lower(),
            action=action or (suffix or "read").lower(),
            **kwargs,
        )
    return _make


@pytest.fixture
async def client(session_factory, clock):
    async def override_get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_clock] = lambda: clock

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()


def bearer(user_id):
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def admin_headers():
    return bearer("root-admin")
