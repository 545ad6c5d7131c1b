"""
Database engine and session management
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.engine import make_url
from typing import AsyncGenerator

from core.config import settings
from infrastructure.models import Base


def _build_async_url(database_url: str) -> str:
    """Make sure the database URL uses an async driver"""
    url = make_url(database_url)
    drivername = url.drivername

    if "+" in drivername:
        return database_url

    driver_map = {
        "postgresql": "postgresql+asyncpg",
        "postgres": "postgresql+asyncpg",
        "sqlite": "sqlite+aiosqlite",
    }

    if drivername not in driver_map:
        raise ValueError(f"Unsupported database driver: {drivername}. Use an async driver or update DATABASE__URL")

    return url.set(drivername=driver_map[drivername]).render_as_string(hide_password=False)


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create the async engine; SQLite takes no pool arguments"""
    async_url = _build_async_url(database_url)
    options = {"echo": echo}
    if not async_url.startswith("sqlite"):
        options.update(
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
            pool_pre_ping=True,
        )
    return create_async_engine(async_url, **options)


# async engine
engine = build_engine(settings.database.url, echo=settings.database.echo)

# async session factory
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session (no autocommit, the caller owns the transaction)"""
    async with AsyncSessionLocal() as session:
        yield session


async def create_tables(bind: AsyncEngine = engine):
    """
    Create all tables

    One table per model registered on the declarative base.
    """
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables(bind: AsyncEngine = engine):
    """
    Drop all tables

    Test environments only: this deletes all data.
    """
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
