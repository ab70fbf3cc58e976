"""Async engine and session factory for the knowledge tables (Postgres+pgvector or SQLite)."""

from typing import Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from app.config.logger import app_logger
from app.config.settings import settings

_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker] = None

_ASYNC_DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def get_db_url() -> str:
    """Configured database URL rewritten for an async driver.

    asyncpg rejects libpq's ``sslmode`` query argument, so it is dropped.
    """
    url = make_url(settings.effective_database_url)
    url = url.set(drivername=_ASYNC_DRIVERS.get(url.drivername, url.drivername))
    if "sslmode" in url.query:
        url = url.difference_update_query(["sslmode"])
    return url.render_as_string(hide_password=False)


def create_engine_for_url(db_url: str) -> AsyncEngine:
    if db_url.startswith("postgresql"):
        return create_async_engine(
            db_url,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=0,
            pool_pre_ping=True,
        )
    return create_async_engine(db_url)


async def create_schema(engine: AsyncEngine) -> None:
    """Create the pgvector extension (Postgres only) and the knowledge tables."""
    from app.models import document, knowledge_chunk, sync_job  # noqa: F401

    async with engine.begin() as conn:
        if engine.dialect.name == "postgresql":
            await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(SQLModel.metadata.create_all)


async def init_db() -> None:
    """Connect and create tables. Failures are logged; the API then serves 503s."""
    global _engine, _session_maker

    engine = None
    try:
        engine = create_engine_for_url(get_db_url())
        await create_schema(engine)
    except Exception as e:
        app_logger.error(f"Database initialization failed ({type(e).__name__}): {e}")
        app_logger.warning("Knowledge base endpoints are unavailable until the database is reachable")
        if engine is not None:
            await engine.dispose()
        return

    _engine = engine
    _session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    app_logger.info(f"Database ready ({engine.dialect.name})")


async def close_db() -> None:
    global _engine, _session_maker

    if _engine is not None:
        await _engine.dispose()
        app_logger.info("Database connection closed")
    _engine = None
    _session_maker = None


def get_session_maker() -> async_sessionmaker:
    if _session_maker is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_maker


async def ping_database() -> Tuple[bool, str]:
    """Run ``SELECT 1``; returns (healthy, message)."""
    if _session_maker is None:
        return False, "Database not initialized"

    try:
        async with _session_maker() as session:
            value = (await session.execute(text("SELECT 1"))).scalar()
    except Exception as e:
        return False, f"Database query failed: {e}"
    if value != 1:
        return False, f"Unexpected response: {value}"
    return True, "Database connection healthy"
