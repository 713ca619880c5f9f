"""
Test configuration and fixtures for the audit orchestrator.

Every test gets its own SQLite file so state never leaks between tests.
DATABASE_URL must be set before ``app`` is imported because settings and
the application engine are created at import time.
"""

import os
import tempfile
from datetime import datetime, timedelta
from typing import Generator

from dotenv import load_dotenv

load_dotenv()

test_db_url = os.getenv("TEST_DATABASE_URL")
if test_db_url:
    if "postgresql://" in test_db_url and "asyncpg" not in test_db_url:
        test_db_url = test_db_url.replace("postgresql://", "postgresql+asyncpg://")
    os.environ["DATABASE_URL"] = test_db_url
else:
    test_db_path = tempfile.mktemp(suffix=".db")
    os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{test_db_path}"

import jwt
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.platform.config import settings
from app.platform.db.models import Base
from app.platform.db.session import get_db


class FakeClock:
    """Settable replacement for ``utcnow`` in services under test."""

    def __init__(self, start: datetime = datetime(2026, 10, 15, 12, 0, 0)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


def make_token(sub: str = "user-1", **claims) -> str:
    payload = {"sub": sub, "exp": datetime.utcnow() + timedelta(hours=1), **claims}
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.ALGORITHM)


def auth_headers(sub: str = "user-1", **claims) -> dict:
    return {"Authorization": f"Bearer {make_token(sub, **claims)}"}


def worker_headers() -> dict:
    return {"Authorization": f"Bearer {settings.RENDER_CALLBACK_TOKEN}"}


def crawler_headers() -> dict:
    return {"Authorization": f"Bearer {settings.CRAWLER_WEBHOOK_TOKEN}"}


@pytest.fixture
def database_url(tmp_path) -> str:
    db_path = tmp_path / "orchestrator.db"
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()
    return f"sqlite+aiosqlite:///{db_path}"


@pytest.fixture
def session_factory(database_url):
    # NullPool: TestClient and pytest-asyncio run on different event loops.
    engine = create_async_engine(database_url, poolclass=NullPool)
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="session")
def test_app():
    """Create FastAPI test application."""
    from app.main import app

    return app


@pytest.fixture(scope="function")
def client(test_app, session_factory) -> Generator[TestClient, None, None]:
    """
    TestClient whose requests use the per-test database.
    """

    async def override_get_db():
        async with session_factory() as session:
            yield session

    test_app.dependency_overrides[get_db] = override_get_db
    with TestClient(test_app) as test_client:
        yield test_client
    test_app.dependency_overrides.clear()


@pytest.fixture
def make_headers():
    """Factory for user/admin bearer headers: ``make_headers("user-2", is_admin=True)``."""
    return auth_headers


@pytest.fixture
def user_headers() -> dict:
    return auth_headers("user-1")


@pytest.fixture
def worker_auth() -> dict:
    return worker_headers()


@pytest.fixture
def crawler_auth() -> dict:
    return crawler_headers()
