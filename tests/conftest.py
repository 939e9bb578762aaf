"""Test fixtures for the DNC Compliance Service test suite."""

import os
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Any
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment variables BEFORE importing app modules
os.environ.update({
    "DATABASE_URL": "sqlite+aiosqlite:///./dnc_test.db",
    "DNC_SWEEP_ENABLED": "false",
    "ENVIRONMENT": "test",
    "LOG_LEVEL": "WARNING",
    "LOG_FORMAT": "text",
})

from app.database import Base, get_session, get_session_factory  # noqa: E402
from app.main import create_app  # noqa: E402
from app.models.enums import DNCSource  # noqa: E402
from app.services.registry_store import utcnow  # noqa: E402


@pytest.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dnc.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session; the file is discarded with tmp_path."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def client(
    db: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client with database session override."""
    app = create_app()

    async def override_get_session():
        yield db
        await db.commit()

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def tenant_headers() -> dict[str, str]:
    return {"X-Tenant-ID": "tenant-a"}


@pytest.fixture
def make_entry():
    """Build a staged suppression entry dict for registry_store writes."""

    def _make(
        phone_number: str = "+12025551234",
        source: DNCSource = DNCSource.NATIONAL,
        tenant_scope: str | None = None,
        state: str | None = None,
        expires_in: timedelta = timedelta(days=31),
        batch_id=None,
    ) -> dict[str, Any]:
        now = utcnow()
        return {
            "phone_number": phone_number,
            "source": source.value,
            "state": state,
            "tenant_scope": tenant_scope,
            "upload_batch_id": batch_id or uuid4(),
            "added_date": now,
            "expiry_date": now + expires_in,
        }

    return _make


class FakeUpload:
    """Minimal async byte stream standing in for an UploadFile."""

    def __init__(self, content: bytes | str, fail_after: int | None = None):
        self._data = content.encode() if isinstance(content, str) else content
        self._offset = 0
        self._fail_after = fail_after
        self.reads = 0

    async def read(self, size: int = -1) -> bytes:
        if self._fail_after is not None and self.reads >= self._fail_after:
            raise ConnectionResetError("client disconnected")
        self.reads += 1
        if size < 0:
            size = len(self._data) - self._offset
        chunk = self._data[self._offset:self._offset + size]
        self._offset += len(chunk)
        return chunk


@pytest.fixture
def fake_upload():
    return FakeUpload
