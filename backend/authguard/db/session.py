"""Database engine and session factory for the durable security event store."""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from authguard.core.config import Settings
from authguard.db.base import Base


def create_engine(settings: Settings) -> AsyncEngine:
    url = make_url(settings.DATABASE_URL)
    if url.get_backend_name() == "sqlite":
        # SQLite has no server-side pool to tune
        return create_async_engine(url, echo=settings.DEBUG)

    return create_async_engine(
        url,
        echo=settings.DEBUG,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_timeout=30,  # Seconds to wait before giving up on getting a connection
        pool_recycle=3600,  # Recycle connections after 1 hour
        pool_pre_ping=True,
    )


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create missing tables. Schema migrations are managed outside this service."""
    # Register models on the metadata
    import authguard.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
