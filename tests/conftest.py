"""
Pytest configuration for the knowledge backend test suite.

Provides:
- a throwaway SQLite database (aiosqlite) with the full schema
- deterministic fakes for the embedding provider and the iTop record source
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.db import create_engine_for_url, create_schema
from app.services.sources import LogEntry
from app.services.vector_store import VectorStore
from tests.fakes import BASE_TIME, FakeEmbeddingClient, FakeSource


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'knowledge.db'}")
    await create_schema(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_maker) -> VectorStore:
    return VectorStore(session_maker)


@pytest.fixture
def embedder() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def log_entry():
    def _make(message: str, minutes: int = 0) -> LogEntry:
        stamp = BASE_TIME + timedelta(minutes=minutes)
        return LogEntry(date=stamp.strftime("%Y-%m-%d %H:%M:%S"), user_login="jdoe", message=message)
    return _make
