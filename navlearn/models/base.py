"""Base model and async engine setup for the navlearn learning store."""

import asyncio
import logging
from urllib.parse import urlparse

from sqlalchemy import Integer, MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

logger = logging.getLogger(__name__)

# Naming convention for constraints (helps Alembic generate clean migrations)
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base declarative model with an autoincrement integer primary key."""

    metadata = MetaData(naming_convention=convention)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)


def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for *url*.

    Connection pool sizing only applies to server databases; SQLite uses
    SQLAlchemy's default pool for aiosqlite.
    """
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=5,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine, retries: int = 3, delay: float = 0.5) -> None:
    """Create all learning tables and indexes.

    Retries the connection with exponential backoff to handle a database
    that is still starting up.  Re-raises the last error once all retries
    are exhausted; callers decide whether that is fatal.
    """
    logger.info("Learning database: %s", _safe_url(str(engine.url)))

    for attempt in range(1, retries + 1):
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Learning database initialized successfully.")
            return
        except Exception as exc:
            if attempt == retries:
                logger.error(
                    "Failed to initialize learning database after %d attempts: %s",
                    retries,
                    exc,
                )
                raise
            wait = delay * (2 ** (attempt - 1))
            logger.warning(
                "Database connection attempt %d/%d failed (%s). Retrying in %.1fs...",
                attempt, retries, exc, wait,
            )
            await asyncio.sleep(wait)


def _safe_url(url: str) -> str:
    """Return the database location of a URL for logging (no credentials)."""
    parsed = urlparse(url)
    if parsed.scheme.startswith("sqlite"):
        return parsed.path.lstrip("/") or ":memory:"
    return f"{parsed.hostname}:{parsed.port}"
