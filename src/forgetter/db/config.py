"""Database engine configuration and lifetime management."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from forgetter.core.logging import get_logger

logger = get_logger(__name__)

_ASYNC_DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}

SUPPORTED_DRIVERS = frozenset(_ASYNC_DRIVERS.values())
"""Async drivers a run can open an engine with."""


def normalize_database_url(database_url: str) -> str:
    """Map plain connection strings onto their async driver.

    Job definitions usually carry libpq-style URLs (``postgres://...``);
    SQLAlchemy's asyncio extension needs the driver spelled out.
    """
    scheme, sep, rest = database_url.partition("://")
    if not sep:
        return database_url
    driver = _ASYNC_DRIVERS.get(scheme)
    if driver is None:
        return database_url
    return f"{driver}://{rest}"


def create_engine(database_url: str, *, pool_size: int = 2, echo: bool = False) -> AsyncEngine:
    """Create the async engine used by one erasure run.

    The pool is deliberately small: a run holds at most one relational
    transaction at a time and never shares its connections.

    Args:
        database_url: Connection string (plain or async-driver form)
        pool_size: Maximum connections held by the pool
        echo: Log every SQL statement

    Returns:
        Configured AsyncEngine
    """
    url = make_url(normalize_database_url(database_url))

    kwargs: dict = {}
    if url.get_backend_name() != "sqlite":
        kwargs["pool_size"] = pool_size
        kwargs["max_overflow"] = 0
        kwargs["pool_pre_ping"] = True

    return create_async_engine(url, echo=echo, **kwargs)


@asynccontextmanager
async def open_engine(
    database_url: str,
    *,
    pool_size: int = 2,
    echo: bool = False,
) -> AsyncIterator[AsyncEngine]:
    """Engine scoped to a block; connections are released on every exit path.

    Usage:
        async with open_engine(settings.get_db_url()) as engine:
            await purge_relational(engine, ...)
    """
    engine = create_engine(database_url, pool_size=pool_size, echo=echo)
    try:
        yield engine
    finally:
        await engine.dispose()
        logger.debug("database_engine_disposed")

