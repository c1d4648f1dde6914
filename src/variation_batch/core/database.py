"""Async engine and sessions shared by the API and the batch worker."""

from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from variation_batch.core.config import Settings, settings


def engine_options(database_url: str, config: Settings = settings) -> dict[str, Any]:
    """Keyword arguments for ``create_async_engine``.

    SQLite keeps SQLAlchemy's default pool (a single shared connection for
    ``:memory:``); server databases get a bounded, pre-pinged pool.
    """
    options: dict[str, Any] = {"echo": config.debug}
    if database_url.startswith("sqlite"):
        return options

    options.update(
        pool_size=config.database_pool_size,
        max_overflow=config.database_max_overflow,
        pool_pre_ping=True,
    )
    return options


def build_engine(database_url: str, config: Settings = settings) -> AsyncEngine:
    return create_async_engine(database_url, **engine_options(database_url, config))


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Jobs and items are read after commits, so keep loaded state
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url)
async_session_factory = build_session_factory(engine)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding one session per request."""
    async with async_session_factory() as session:
        yield session


async def close_database() -> None:
    await engine.dispose()
