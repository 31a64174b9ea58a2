"""Engine for the central tenant directory (the platform database, not a tenant's)."""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from app.core.config import settings
from app.models.tenant import Tenant, to_async_url


def create_directory_engine(database_url: str | None = None) -> AsyncEngine:
    # asyncpg does not accept psycopg params like sslmode/channel_binding; to_async_url
    # strips them and SSL is enabled via connect_args instead.
    url = to_async_url(database_url or settings.database_url)
    kwargs: dict[str, Any] = {
        "echo": settings.env == "development" and settings.log_level.upper() == "DEBUG",
        "pool_pre_ping": True,
    }
    if url.get_backend_name() == "postgresql":
        kwargs.update(pool_size=5, max_overflow=10, connect_args={"ssl": True} if settings.tenant_db_ssl else {})
    return create_async_engine(url, **kwargs)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create the directory table if using create_all; prefer Alembic in production."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all, tables=[Tenant.__table__])
