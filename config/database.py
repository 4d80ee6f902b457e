from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from .base import Settings, get_settings

_engine: AsyncEngine | None = None


def get_database_url(settings: Settings, is_async=False) -> str:
    """Construct the database URL based on environment settings.

    Parameters
    ----------
    settings: Settings
        Application settings object.
    is_async: bool, default=False
        Boolean indicating whether to return an asynchronous URL.

    Returns
    -------
    str
        String representing the database connection URL.
    """
    if settings.database_url:
        return settings.database_url

    if is_async:
        return f"sqlite+aiosqlite:///{settings.base_dir}/db.sqlite3"
    else:
        return f"sqlite:///{settings.base_dir}/db.sqlite3"


async def get_database_engine() -> AsyncEngine:
    """Provide a singleton asynchronous SQLAlchemy database engine.

    Returns
    -------
    AsyncEngine
        Asynchronous SQLAlchemy engine instance.
    """
    global _engine

    if _engine is None:
        settings = get_settings()
        database_url = get_database_url(settings, is_async=True)
        _engine = create_async_engine(database_url, echo=False)

    return _engine


async def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Provide a session factory bound to the singleton engine.

    Repositories open one short-lived session per operation from it, so
    concurrent tenant passes never share a session.
    """
    engine = await get_database_engine()
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def close_database_engine():
    """Dispose of existing database engine."""
    global _engine

    if _engine:
        await _engine.dispose()
        _engine = None


async def create_tables():
    """Asynchronously create all database tables defined in SQLModel metadata."""
    # Registers the table models on SQLModel.metadata
    from notifications.infrastructure import models  # noqa: F401

    engine = await get_database_engine()
    async with engine.begin() as connection:
        await connection.run_sync(SQLModel.metadata.create_all)
