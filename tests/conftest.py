"""Shared test fixtures.

Database-backed tests get a fresh SQLite database file (or a wiped PostgreSQL schema
when CITADEL_TEST_DATABASE_URL is set) and an app whose API key cache uses
the in-memory backend. Redis is left unconfigured, so the rate limiter is
skipped unless a test swaps in a fake.
"""

from __future__ import annotations

import os

os.environ["CITADEL_ENVIRONMENT"] = "test"
os.environ["CITADEL_REDIS_URL"] = ""
os.environ["CITADEL_API_KEY_CACHE_BACKEND"] = "memory"
os.environ["CITADEL_JWT_SECRET"] = "test-secret-that-is-long-enough-for-hs256-signing"
os.environ["CITADEL_JWT_ALGORITHM"] = "HS256"
os.environ["CITADEL_LOG_FORMAT"] = "console"
os.environ["CITADEL_LOG_LEVEL"] = "WARNING"

from collections.abc import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from citadel.auth.api_key_cache import ApiKeyCache, build_api_key_cache  # noqa: E402
from citadel.auth.jwt import reset_keys  # noqa: E402
from citadel.auth.providers import get_oauth_exchanger  # noqa: E402
from citadel.auth.roles import Provider, Role  # noqa: E402
from citadel.config import get_settings  # noqa: E402
from citadel.database import close_db, get_engine, get_session_factory, init_db  # noqa: E402
from citadel.db import models  # noqa: E402, F401
from citadel.db.base import Base  # noqa: E402
from citadel.db.models import User  # noqa: E402
from citadel.main import create_app  # noqa: E402
from citadel.setup.service import ensure_setup_row  # noqa: E402
from tests.helpers import FakeExchanger, create_user, seed_api_key  # noqa: E402

get_settings.cache_clear()
reset_keys()


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[None, None]:
    """Fresh schema per test."""
    url = os.environ.get("CITADEL_TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'citadel.db'}"
    await init_db(url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    async with get_session_factory()() as session:
        await ensure_setup_row(session)
        await session.commit()
    yield
    await close_db()


@pytest_asyncio.fixture
async def db_session(database: None) -> AsyncGenerator[AsyncSession, None]:
    """A direct database session for arranging data and asserting on it."""
    async with get_session_factory()() as session:
        yield session


@pytest.fixture
def api_key_cache(database: None) -> ApiKeyCache:
    return build_api_key_cache(get_settings(), get_session_factory())


@pytest.fixture
def fake_exchanger() -> FakeExchanger:
    return FakeExchanger(get_settings())


@pytest.fixture
def app(api_key_cache: ApiKeyCache, fake_exchanger: FakeExchanger) -> FastAPI:
    application = create_app()
    application.state.api_key_cache = api_key_cache
    application.dependency_overrides[get_oauth_exchanger] = lambda: fake_exchanger
    return application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the app (no network, no lifespan)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Users and keys
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def superadmin(db_session: AsyncSession) -> User:
    return await create_user(db_session, email="owner@example.com", role=Role.SUPERADMIN, name="Owner")


@pytest_asyncio.fixture
async def admin(db_session: AsyncSession, superadmin: User) -> User:
    return await create_user(db_session, email="admin@example.com", role=Role.ADMIN, name="Admin")


@pytest_asyncio.fixture
async def regular_user(db_session: AsyncSession, superadmin: User) -> User:
    return await create_user(
        db_session,
        email="user@example.com",
        role=Role.USER,
        name="Regular",
        provider=Provider.APPLE,
    )


@pytest_asyncio.fixture
async def admin_panel_key(db_session: AsyncSession, superadmin: User) -> str:
    """Plaintext of an active ``admin_panel`` key."""
    return await seed_api_key(db_session, "admin_panel", superadmin.id)
